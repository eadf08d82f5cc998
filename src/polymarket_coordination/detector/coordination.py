"""Coordinated-trading detector.

Ties the trade store, similarity engine, result cache, group detector and
batch analyzer together behind one object, keeps a bounded registry of the
groups found so far and reports changes to subscribed observers.

Every dependency is passed in or built here; there is no process-wide
instance. Two detectors never share state unless they are given the same
store or cache.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import numpy as np

from polymarket_coordination.config import CoordinationSettings
from polymarket_coordination.detector.batch import BatchAnalyzer
from polymarket_coordination.detector.cache import CacheKey, ResultCache
from polymarket_coordination.detector.events import (
    CoordinationEventType,
    EventBus,
    EventListener,
)
from polymarket_coordination.detector.groups import GroupDetector
from polymarket_coordination.detector.models import (
    BatchCoordinationResult,
    CacheStats,
    CoordinationAnalysisResult,
    CoordinationConfidence,
    CoordinationFlag,
    CoordinationGroup,
    CoordinationPatternType,
    CoordinationRiskLevel,
    CoordinationSummary,
    MostConnectedWallet,
    PairSimilarity,
    describe_confidence,
    describe_flag,
    describe_pattern,
    describe_risk_level,
    empty_pattern_counts,
    empty_risk_counts,
)
from polymarket_coordination.detector.similarity import PairSimilarityEngine
from polymarket_coordination.ingestor.models import Trade, normalize_address
from polymarket_coordination.storage.trade_store import IngestReport, TradeStore

logger = logging.getLogger(__name__)

# Wallets listed in the summary's most-connected ranking.
MOST_CONNECTED_LIMIT = 10


class CoordinatedTradingDetector:
    """Detects groups of wallets that trade in a coordinated way.

    Example:
        ```python
        detector = CoordinatedTradingDetector(get_settings().coordination)
        detector.add_trades(trades)
        result = detector.analyze("0xabc...")
        if result.is_coordinated:
            for group in result.groups:
                print(group.group_id, group.risk_level, group.members)
        ```

    Args:
        settings: Detector thresholds; defaults are used when omitted.
        store: Trade store to analyze; a fresh one is created when omitted.
        cache: Result cache; built from ``settings`` when omitted.
        observers: Callbacks registered for detector events.
        enable_events: When False no events are emitted at all.
    """

    def __init__(
        self,
        settings: CoordinationSettings | None = None,
        *,
        store: TradeStore | None = None,
        cache: ResultCache | None = None,
        observers: Iterable[EventListener] = (),
        enable_events: bool = True,
    ) -> None:
        self._settings = settings or CoordinationSettings()
        self._store = store if store is not None else TradeStore()
        if cache is None:
            cache = ResultCache(
                ttl_seconds=self._settings.cache_ttl_seconds,
                max_entries=self._settings.cache_max_entries,
                enabled=self._settings.cache_enabled,
            )
        self._cache = cache
        self._engine = PairSimilarityEngine(self._settings, cache=self._cache)
        self._groups = GroupDetector(self._engine)
        self._batch = BatchAnalyzer(self._groups)
        self._events = EventBus(enabled=enable_events)
        for observer in observers:
            self._events.subscribe(observer)

        self._registry_lock = threading.Lock()
        self._detected_groups: list[CoordinationGroup] = []
        self._last_analysis_at: datetime | None = None

    @property
    def settings(self) -> CoordinationSettings:
        return self._settings

    @property
    def store(self) -> TradeStore:
        return self._store

    @property
    def config_version(self) -> int:
        return self._engine.config_version

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def add_trades(self, trades: Iterable[Trade | dict[str, Any]]) -> IngestReport:
        """Ingest trades and drop cached results of every affected wallet."""
        report = self._store.add_trades(trades)
        invalidated = self._cache.invalidate_many(report.wallets)
        if report.accepted:
            logger.debug(
                "Ingested %d trades for %d wallets (%d cache entries invalidated)",
                report.accepted,
                len(report.wallets),
                invalidated,
            )
        self._events.emit(
            CoordinationEventType.TRADES_ADDED,
            count=report.accepted,
            rejected=report.rejected,
            duplicates=report.duplicates,
            wallets=sorted(report.wallets),
        )
        return report

    def get_trades(
        self,
        wallet_address: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Trade, ...]:
        return self._store.trades_for_wallet(wallet_address, start, end)

    def tracked_wallets(self) -> list[str]:
        return self._store.wallets()

    def clear_trades(self, wallet_address: str) -> int:
        """Forget every trade of one wallet; returns how many were removed."""
        wallet = normalize_address(wallet_address)
        removed = self._store.clear_wallet(wallet)
        self._cache.invalidate(wallet)
        self._events.emit(CoordinationEventType.TRADES_CLEARED, wallet=wallet, removed=removed)
        return removed

    def clear_all_trades(self) -> None:
        self._store.clear()
        self._cache.clear()
        self._events.emit(CoordinationEventType.TRADES_CLEARED, wallet=None)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_pair(
        self,
        wallet_a: str,
        wallet_b: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        bypass_cache: bool = False,
    ) -> PairSimilarity | None:
        """Similarity of two wallets, or None when either lacks trades.

        Raises:
            InvalidWalletAddressError: If either address is malformed.
        """
        a = normalize_address(wallet_a)
        b = normalize_address(wallet_b)
        return self._engine.analyze_pair(
            self._store.snapshot(),
            a,
            b,
            start=start,
            end=end,
            market_filter=market_filter,
            bypass_cache=bypass_cache,
        )

    def analyze(
        self,
        wallet_address: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        wallet_filter: Iterable[str] | None = None,
        bypass_cache: bool = False,
    ) -> CoordinationAnalysisResult:
        """Find the coordination groups ``wallet_address`` belongs to.

        The wallet is compared with every wallet it shares a market with in
        the window (or only with ``wallet_filter`` when given). The analysis
        runs against one store snapshot, so trades ingested meanwhile are not
        seen half-way.

        A result served from the cache is registered and announced like a
        fresh one; its ``analysis_complete`` event carries ``cached=True``.

        Raises:
            InvalidWalletAddressError: If an address is malformed.
        """
        wallet = normalize_address(wallet_address)
        wallets = sorted({normalize_address(w) for w in wallet_filter}) if wallet_filter is not None else None
        markets = frozenset(market_filter) if market_filter else None
        snapshot = self._store.snapshot()

        candidates = self._groups.candidates_for(
            snapshot,
            wallet,
            start=start,
            end=end,
            market_filter=markets,
            wallet_filter=wallets,
        )
        key = CacheKey.build(
            "analysis",
            (wallet, *candidates),
            snapshot,
            start=start,
            end=end,
            market_filter=markets,
            config_version=self._engine.config_version,
        )
        result = None if bypass_cache else self._cache.get(key)
        cached = result is not None
        if result is None:
            result = self._groups.detect_for_wallet(
                snapshot,
                wallet,
                start=start,
                end=end,
                market_filter=markets,
                candidates=candidates,
                bypass_cache=bypass_cache,
            )
            self._cache.put(key, result)
            self._last_analysis_at = result.analyzed_at
        else:
            self._last_analysis_at = datetime.now(UTC)
        self._register(result.groups)

        self._events.emit(
            CoordinationEventType.ANALYSIS_COMPLETE,
            wallet=wallet,
            group_count=result.group_count,
            highest_risk_level=result.highest_risk_level.value,
            wallets_compared=result.wallets_compared,
            cached=cached,
        )
        self._emit_high_risk(result.groups)
        return result

    def batch_analyze(
        self,
        wallet_addresses: Iterable[str],
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        bypass_cache: bool = False,
        deadline_seconds: float | None = None,
        max_workers: int | None = None,
        within_inputs: bool = False,
    ) -> BatchCoordinationResult:
        """Analyze many wallets at once; invalid addresses are reported, not raised."""
        result = self._batch.analyze(
            self._store.snapshot(),
            wallet_addresses,
            start=start,
            end=end,
            market_filter=market_filter,
            bypass_cache=bypass_cache,
            deadline_seconds=deadline_seconds,
            max_workers=max_workers,
            within_inputs=within_inputs,
        )
        self._register(result.groups)
        self._last_analysis_at = result.analyzed_at

        self._events.emit(
            CoordinationEventType.BATCH_ANALYSIS_COMPLETE,
            wallets_analyzed=result.wallets_analyzed,
            groups_detected=len(result.groups),
            is_complete=result.is_complete,
            processing_time_ms=result.processing_time_ms,
        )
        self._emit_high_risk(result.groups)
        return result

    def _emit_high_risk(self, groups: Iterable[CoordinationGroup]) -> None:
        for group in groups:
            if group.is_high_risk:
                logger.warning(
                    "High-risk coordination group %s: %d wallets, score %.2f (%s)",
                    group.group_id,
                    group.member_count,
                    group.coordination_score,
                    group.risk_level.value,
                )
                self._events.emit(CoordinationEventType.HIGH_RISK_GROUP_DETECTED, group=group.to_dict())

    # ------------------------------------------------------------------
    # Group registry
    # ------------------------------------------------------------------

    def _register(self, groups: Iterable[CoordinationGroup]) -> None:
        with self._registry_lock:
            for group in groups:
                for i, existing in enumerate(self._detected_groups):
                    if existing.member_set == group.member_set:
                        self._detected_groups[i] = group
                        break
                else:
                    self._detected_groups.append(group)
            overflow = len(self._detected_groups) - self._settings.max_groups
            if overflow > 0:
                del self._detected_groups[:overflow]

    def detected_groups(self) -> list[CoordinationGroup]:
        with self._registry_lock:
            return list(self._detected_groups)

    def is_coordinated(self, wallet_address: str) -> bool:
        return bool(self.groups_for_wallet(wallet_address))

    def groups_for_wallet(self, wallet_address: str) -> list[CoordinationGroup]:
        wallet = normalize_address(wallet_address)
        return [g for g in self.detected_groups() if wallet in g.member_set]

    def high_risk_groups(self) -> list[CoordinationGroup]:
        return [g for g in self.detected_groups() if g.is_high_risk]

    def groups_by_pattern(self, pattern: CoordinationPatternType) -> list[CoordinationGroup]:
        return [g for g in self.detected_groups() if g.pattern is pattern]

    def groups_by_risk_level(self, risk_level: CoordinationRiskLevel) -> list[CoordinationGroup]:
        return [g for g in self.detected_groups() if g.risk_level is risk_level]

    # ------------------------------------------------------------------
    # Configuration, cache, observers
    # ------------------------------------------------------------------

    def update_thresholds(self, **changes: Any) -> CoordinationSettings:
        """Apply validated setting changes.

        Cache entries computed under the previous settings are never served
        again. Cache sizing (TTL, capacity) stays as constructed.

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid; the
                current settings are left untouched.
        """
        settings = self._settings.with_changes(**changes)
        self._settings = settings
        self._engine.update_settings(settings)
        logger.info("Coordination settings updated: %s", ", ".join(sorted(changes)))
        self._events.emit(
            CoordinationEventType.CONFIG_UPDATED,
            changed=sorted(changes),
            config_version=self._engine.config_version,
        )
        return settings

    def clear_cache(self) -> None:
        self._cache.clear()
        self._events.emit(CoordinationEventType.CACHE_CLEARED)

    def prune_cache(self) -> int:
        """Drop expired cache entries; returns how many were removed."""
        removed = self._cache.prune()
        if removed:
            logger.debug("Pruned %d expired cache entries", removed)
        return removed

    def cache_stats(self) -> CacheStats:
        return self._cache.stats

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    def unsubscribe(self, listener: EventListener) -> bool:
        return self._events.unsubscribe(listener)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def get_summary(self) -> CoordinationSummary:
        groups = self.detected_groups()

        groups_by_risk = empty_risk_counts()
        groups_by_pattern = empty_pattern_counts()
        membership: Counter[str] = Counter()
        scores: dict[str, list[float]] = defaultdict(list)
        for group in groups:
            groups_by_risk[group.risk_level] += 1
            groups_by_pattern[group.pattern] += 1
            for member in group.members:
                membership[member] += 1
                scores[member].append(group.coordination_score)

        ranked = sorted(membership, key=lambda w: (-membership[w], -float(np.mean(scores[w])), w))
        most_connected = tuple(
            MostConnectedWallet(
                address=wallet,
                group_count=membership[wallet],
                avg_coordination_score=round(float(np.mean(scores[wallet])), 2),
            )
            for wallet in ranked[:MOST_CONNECTED_LIMIT]
        )

        return CoordinationSummary(
            total_wallets=len(self._store.wallets()),
            total_trades=self._store.trade_count,
            detected_groups=len(groups),
            groups_by_risk=groups_by_risk,
            groups_by_pattern=groups_by_pattern,
            coordinated_wallet_count=len(membership),
            high_risk_groups=tuple(g for g in groups if g.is_high_risk),
            most_connected_wallets=most_connected,
            cache_stats=self._cache.stats,
            last_analysis_at=self._last_analysis_at,
        )

    # ------------------------------------------------------------------
    # Descriptions
    # ------------------------------------------------------------------

    @staticmethod
    def describe_pattern(pattern: CoordinationPatternType) -> str:
        return describe_pattern(pattern)

    @staticmethod
    def describe_risk_level(level: CoordinationRiskLevel) -> str:
        return describe_risk_level(level)

    @staticmethod
    def describe_confidence(confidence: CoordinationConfidence) -> str:
        return describe_confidence(confidence)

    @staticmethod
    def describe_flag(flag: CoordinationFlag) -> str:
        return describe_flag(flag)
