"""Coordination detection layer - pairwise similarity and group detection."""

from polymarket_coordination.detector.batch import BatchAnalyzer
from polymarket_coordination.detector.cache import CacheKey, ResultCache
from polymarket_coordination.detector.coordination import CoordinatedTradingDetector
from polymarket_coordination.detector.events import (
    CoordinationEvent,
    CoordinationEventType,
    EventBus,
    RedisStreamPublisher,
)
from polymarket_coordination.detector.groups import GroupDetector, UnionFind
from polymarket_coordination.detector.models import (
    BatchCoordinationResult,
    CoordinationAnalysisResult,
    CoordinationConfidence,
    CoordinationFlag,
    CoordinationGroup,
    CoordinationPatternType,
    CoordinationRiskLevel,
    CoordinationSummary,
    PairSimilarity,
)
from polymarket_coordination.detector.similarity import PairSimilarityEngine

__all__ = [
    "BatchAnalyzer",
    "BatchCoordinationResult",
    "CacheKey",
    "CoordinatedTradingDetector",
    "CoordinationAnalysisResult",
    "CoordinationConfidence",
    "CoordinationEvent",
    "CoordinationEventType",
    "CoordinationFlag",
    "CoordinationGroup",
    "CoordinationPatternType",
    "CoordinationRiskLevel",
    "CoordinationSummary",
    "EventBus",
    "GroupDetector",
    "PairSimilarity",
    "PairSimilarityEngine",
    "RedisStreamPublisher",
    "ResultCache",
    "UnionFind",
]
