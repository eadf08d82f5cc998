"""Data models for the coordinated-trading detector."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class CoordinationFlag(str, Enum):
    """Named signal that fired for a wallet pair."""

    TIMING_CORRELATION = "TIMING_CORRELATION"
    SIZE_SIMILARITY = "SIZE_SIMILARITY"
    MARKET_OVERLAP = "MARKET_OVERLAP"
    DIRECTION_ALIGNMENT = "DIRECTION_ALIGNMENT"
    OPPOSITE_DIRECTIONS = "OPPOSITE_DIRECTIONS"
    WIN_RATE_SIMILARITY = "WIN_RATE_SIMILARITY"
    SEQUENTIAL_TIMING = "SEQUENTIAL_TIMING"
    BOT_INDICATORS = "BOT_INDICATORS"


class CoordinationPatternType(str, Enum):
    """Kind of coordination a pair or group most resembles."""

    UNKNOWN = "UNKNOWN"
    SIMULTANEOUS = "SIMULTANEOUS"
    COUNTER_PARTY = "COUNTER_PARTY"
    ORDER_SPLITTING = "ORDER_SPLITTING"
    COPY_TRADING = "COPY_TRADING"
    RELAY_TRADING = "RELAY_TRADING"
    MULTI_PATTERN = "MULTI_PATTERN"


class CoordinationRiskLevel(str, Enum):
    """Risk tier of a coordination group, ordered NONE < ... < CRITICAL."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_RISK_ORDER = {
    CoordinationRiskLevel.NONE: 0,
    CoordinationRiskLevel.LOW: 1,
    CoordinationRiskLevel.MEDIUM: 2,
    CoordinationRiskLevel.HIGH: 3,
    CoordinationRiskLevel.CRITICAL: 4,
}


def highest_risk(levels: list[CoordinationRiskLevel] | tuple[CoordinationRiskLevel, ...]) -> CoordinationRiskLevel:
    """Return the most severe level, NONE for an empty sequence."""
    return max(levels, key=lambda level: level.rank, default=CoordinationRiskLevel.NONE)


class CoordinationConfidence(str, Enum):
    """Confidence in a detected group."""

    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


@dataclass(frozen=True)
class PairSimilarity:
    """Multi-signal similarity between two wallets over a time window.

    Attributes:
        wallet_a: First wallet (the orientation used for timing correlation).
        wallet_b: Second wallet.
        similarity_score: Weighted composite score (0-100).
        market_overlap: Jaccard overlap of traded markets (0-100).
        direction_alignment: Share of matched trade pairs on the same side
            (0-1, 0.5 when nothing matched).
        size_similarity: Mean ``1 - |a-b|/max(a,b)`` over matched pairs (0-1).
        timing_correlation: Matched pairs over wallet_a's trades in shared
            markets (0-1).
        win_rate_similarity: ``1 - |wr_a - wr_b|`` (0.5 when unknown).
        flags: Signals that fired.
        is_likely_coordinated: Score cleared the threshold with a strong signal.
        simultaneous_trade_count: Number of matched trade pairs.
        overlapping_markets: Number of markets both wallets traded.
        total_trades_analyzed: Trades of both wallets inside the window.
        mean_lag_seconds: Mean |dt| over matched pairs (None when unmatched).
        pattern: Coordination pattern the pair resembles.
    """

    wallet_a: str
    wallet_b: str
    similarity_score: float
    market_overlap: float
    direction_alignment: float
    size_similarity: float
    timing_correlation: float
    win_rate_similarity: float
    flags: frozenset[CoordinationFlag]
    is_likely_coordinated: bool
    simultaneous_trade_count: int = 0
    overlapping_markets: int = 0
    total_trades_analyzed: int = 0
    mean_lag_seconds: float | None = None
    pattern: CoordinationPatternType = CoordinationPatternType.UNKNOWN

    @property
    def wallets(self) -> frozenset[str]:
        return frozenset((self.wallet_a, self.wallet_b))

    def counterparty(self, wallet: str) -> str:
        """Return the other wallet of the pair."""
        if wallet == self.wallet_a:
            return self.wallet_b
        if wallet == self.wallet_b:
            return self.wallet_a
        raise ValueError(f"{wallet} is not part of this pair")

    def has_flag(self, flag: CoordinationFlag) -> bool:
        return flag in self.flags

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for event publishing."""
        return {
            "wallet_a": self.wallet_a,
            "wallet_b": self.wallet_b,
            "similarity_score": self.similarity_score,
            "market_overlap": self.market_overlap,
            "direction_alignment": self.direction_alignment,
            "size_similarity": self.size_similarity,
            "timing_correlation": self.timing_correlation,
            "win_rate_similarity": self.win_rate_similarity,
            "flags": sorted(f.value for f in self.flags),
            "is_likely_coordinated": self.is_likely_coordinated,
            "simultaneous_trade_count": self.simultaneous_trade_count,
            "overlapping_markets": self.overlapping_markets,
            "total_trades_analyzed": self.total_trades_analyzed,
            "mean_lag_seconds": self.mean_lag_seconds,
            "pattern": self.pattern.value,
        }


@dataclass(frozen=True)
class CoordinationGroup:
    """Connected cluster of wallets whose pairwise behavior crossed the threshold.

    Groups are connected components of the coordinated-pair graph, so every
    member is linked to at least one other member but not necessarily to all.
    """

    group_id: str
    members: tuple[str, ...]
    coordination_score: float
    risk_level: CoordinationRiskLevel
    flags: frozenset[CoordinationFlag]
    confidence: CoordinationConfidence
    pattern: CoordinationPatternType
    pair_similarities: tuple[PairSimilarity, ...] = ()
    total_trades: int = 0
    total_volume_usd: float = 0.0
    markets_traded: tuple[str, ...] = ()
    common_markets: tuple[str, ...] = ()
    activity_start: datetime | None = None
    activity_end: datetime | None = None
    flag_reasons: tuple[str, ...] = ()
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def member_set(self) -> frozenset[str]:
        return frozenset(self.members)

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in (CoordinationRiskLevel.HIGH, CoordinationRiskLevel.CRITICAL)

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for event publishing."""
        return {
            "group_id": self.group_id,
            "members": list(self.members),
            "member_count": self.member_count,
            "coordination_score": self.coordination_score,
            "risk_level": self.risk_level.value,
            "confidence": self.confidence.value,
            "pattern": self.pattern.value,
            "flags": sorted(f.value for f in self.flags),
            "flag_reasons": list(self.flag_reasons),
            "total_trades": self.total_trades,
            "total_volume_usd": self.total_volume_usd,
            "markets_traded": list(self.markets_traded),
            "common_markets": list(self.common_markets),
            "activity_start": self.activity_start.isoformat() if self.activity_start else None,
            "activity_end": self.activity_end.isoformat() if self.activity_end else None,
            "pair_similarities": [p.to_dict() for p in self.pair_similarities],
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass(frozen=True)
class ConnectedWallet:
    """A counterpart wallet coordinated with the analyzed wallet."""

    address: str
    similarity_score: float
    pattern: CoordinationPatternType

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "similarity_score": self.similarity_score,
            "pattern": self.pattern.value,
        }


@dataclass(frozen=True)
class CoordinationAnalysisResult:
    """Result of analyzing one wallet against every plausible counterpart."""

    wallet_address: str
    groups: tuple[CoordinationGroup, ...]
    highest_risk_level: CoordinationRiskLevel
    connected_wallets: tuple[ConnectedWallet, ...]
    wallets_compared: int
    failed_pairs: int = 0
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def is_coordinated(self) -> bool:
        return bool(self.groups)

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_address": self.wallet_address,
            "groups": [g.to_dict() for g in self.groups],
            "group_count": self.group_count,
            "is_coordinated": self.is_coordinated,
            "highest_risk_level": self.highest_risk_level.value,
            "connected_wallets": [c.to_dict() for c in self.connected_wallets],
            "wallets_compared": self.wallets_compared,
            "failed_pairs": self.failed_pairs,
            "analyzed_at": self.analyzed_at.isoformat(),
        }


@dataclass(frozen=True)
class BatchCoordinationResult:
    """Result of a batch run over many wallets.

    ``is_complete`` is False when the time budget ran out before every
    candidate pair was scored; groups then reflect only the scored pairs.
    """

    wallets_analyzed: int
    groups: tuple[CoordinationGroup, ...]
    coordinated_wallet_count: int
    results_by_wallet: dict[str, CoordinationGroup | None]
    processing_time_ms: float
    is_complete: bool = True
    pairs_computed: int = 0
    pairs_skipped: int = 0
    failed_pairs: int = 0
    failed_wallets: tuple[str, ...] = ()
    groups_by_risk: dict[CoordinationRiskLevel, int] = field(default_factory=dict)
    groups_by_pattern: dict[CoordinationPatternType, int] = field(default_factory=dict)
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def highest_risk_level(self) -> CoordinationRiskLevel:
        return highest_risk([g.risk_level for g in self.groups])

    def to_dict(self) -> dict[str, object]:
        return {
            "wallets_analyzed": self.wallets_analyzed,
            "groups": [g.to_dict() for g in self.groups],
            "coordinated_wallet_count": self.coordinated_wallet_count,
            "results_by_wallet": {
                wallet: (group.group_id if group else None) for wallet, group in self.results_by_wallet.items()
            },
            "processing_time_ms": self.processing_time_ms,
            "is_complete": self.is_complete,
            "pairs_computed": self.pairs_computed,
            "pairs_skipped": self.pairs_skipped,
            "failed_pairs": self.failed_pairs,
            "failed_wallets": list(self.failed_wallets),
            "groups_by_risk": {k.value: v for k, v in self.groups_by_risk.items()},
            "groups_by_pattern": {k.value: v for k, v in self.groups_by_pattern.items()},
            "highest_risk_level": self.highest_risk_level.value,
            "analyzed_at": self.analyzed_at.isoformat(),
        }


@dataclass(frozen=True)
class CacheStats:
    """Result cache counters."""

    size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate": self.hit_rate,
        }


@dataclass(frozen=True)
class MostConnectedWallet:
    address: str
    group_count: int
    avg_coordination_score: float


@dataclass(frozen=True)
class CoordinationSummary:
    """Totals across the detector's lifetime."""

    total_wallets: int
    total_trades: int
    detected_groups: int
    groups_by_risk: dict[CoordinationRiskLevel, int]
    groups_by_pattern: dict[CoordinationPatternType, int]
    coordinated_wallet_count: int
    high_risk_groups: tuple[CoordinationGroup, ...]
    most_connected_wallets: tuple[MostConnectedWallet, ...]
    cache_stats: CacheStats
    last_analysis_at: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "total_wallets": self.total_wallets,
            "total_trades": self.total_trades,
            "detected_groups": self.detected_groups,
            "groups_by_risk": {k.value: v for k, v in self.groups_by_risk.items()},
            "groups_by_pattern": {k.value: v for k, v in self.groups_by_pattern.items()},
            "coordinated_wallet_count": self.coordinated_wallet_count,
            "high_risk_groups": [g.group_id for g in self.high_risk_groups],
            "most_connected_wallets": [
                {
                    "address": w.address,
                    "group_count": w.group_count,
                    "avg_coordination_score": w.avg_coordination_score,
                }
                for w in self.most_connected_wallets
            ],
            "cache_stats": self.cache_stats.to_dict(),
            "last_analysis_at": self.last_analysis_at.isoformat() if self.last_analysis_at else None,
        }


def empty_risk_counts() -> dict[CoordinationRiskLevel, int]:
    return {level: 0 for level in CoordinationRiskLevel}


def empty_pattern_counts() -> dict[CoordinationPatternType, int]:
    return {pattern: 0 for pattern in CoordinationPatternType}


_PATTERN_DESCRIPTIONS = {
    CoordinationPatternType.UNKNOWN: "Unknown coordination pattern",
    CoordinationPatternType.SIMULTANEOUS: "Wallets trading same markets at the same time",
    CoordinationPatternType.COUNTER_PARTY: "Wallets trading opposite sides (potential wash trading)",
    CoordinationPatternType.ORDER_SPLITTING: "Large order split across multiple wallets",
    CoordinationPatternType.COPY_TRADING: "Wallets copying trades with delay",
    CoordinationPatternType.RELAY_TRADING: "Wallets trading in repeated sequence",
    CoordinationPatternType.MULTI_PATTERN: "Multiple coordination patterns detected",
}

_RISK_DESCRIPTIONS = {
    CoordinationRiskLevel.NONE: "No significant coordination risk",
    CoordinationRiskLevel.LOW: "Low risk - may be coincidental",
    CoordinationRiskLevel.MEDIUM: "Medium risk - warrants monitoring",
    CoordinationRiskLevel.HIGH: "High risk - likely coordinated activity",
    CoordinationRiskLevel.CRITICAL: "Critical - strong manipulation indicators",
}

_CONFIDENCE_DESCRIPTIONS = {
    CoordinationConfidence.VERY_LOW: "Very low confidence - minimal data",
    CoordinationConfidence.LOW: "Low confidence",
    CoordinationConfidence.MEDIUM: "Medium confidence",
    CoordinationConfidence.HIGH: "High confidence",
    CoordinationConfidence.VERY_HIGH: "Very high confidence - strong evidence",
}

_FLAG_DESCRIPTIONS = {
    CoordinationFlag.TIMING_CORRELATION: "Trades occur at similar times",
    CoordinationFlag.SIZE_SIMILARITY: "Similar trade sizes",
    CoordinationFlag.MARKET_OVERLAP: "Trading same markets",
    CoordinationFlag.DIRECTION_ALIGNMENT: "Consistently same direction trades",
    CoordinationFlag.OPPOSITE_DIRECTIONS: "Opposite direction trades (wash trading indicator)",
    CoordinationFlag.WIN_RATE_SIMILARITY: "Similar win rates",
    CoordinationFlag.SEQUENTIAL_TIMING: "Repeated near-simultaneous trades",
    CoordinationFlag.BOT_INDICATORS: "Bot-like precision",
}


def describe_pattern(pattern: CoordinationPatternType) -> str:
    return _PATTERN_DESCRIPTIONS[pattern]


def describe_risk_level(level: CoordinationRiskLevel) -> str:
    return _RISK_DESCRIPTIONS[level]


def describe_confidence(confidence: CoordinationConfidence) -> str:
    return _CONFIDENCE_DESCRIPTIONS[confidence]


def describe_flag(flag: CoordinationFlag) -> str:
    return _FLAG_DESCRIPTIONS[flag]
