"""Coordination group detection.

Groups are connected components of the graph whose edges are the wallet pairs
the similarity engine called coordinated. Components are found with a
union-find over those edges, so the result does not depend on the order in
which pairs were scored.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

import numpy as np

from polymarket_coordination.config import (
    ConfidenceThresholds,
    CoordinationSettings,
    RiskThresholds,
)
from polymarket_coordination.detector.models import (
    ConnectedWallet,
    CoordinationAnalysisResult,
    CoordinationConfidence,
    CoordinationFlag,
    CoordinationGroup,
    CoordinationPatternType,
    CoordinationRiskLevel,
    PairSimilarity,
    highest_risk,
)
from polymarket_coordination.detector.similarity import PairSimilarityEngine
from polymarket_coordination.storage.trade_store import TradeStoreSnapshot

logger = logging.getLogger(__name__)

# Connected wallets reported per analysis result.
MAX_CONNECTED_WALLETS = 10


class UnionFind:
    """Disjoint-set forest over wallet addresses."""

    def __init__(self) -> None:
        self.parent: dict[str, str] = {}
        self.rank: dict[str, int] = {}

    def find(self, x: str) -> str:
        """Return the representative of ``x``'s set, compressing the path."""
        if x not in self.parent:
            self.parent[x] = x
            self.rank[x] = 0
            return x
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: str, b: str) -> None:
        """Merge the sets containing a and b (union by rank)."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1

    def components(self) -> list[list[str]]:
        """All sets as sorted member lists, ordered by their first member."""
        members: dict[str, list[str]] = {}
        for x in self.parent:
            members.setdefault(self.find(x), []).append(x)
        return sorted((sorted(m) for m in members.values()), key=lambda m: m[0])


def classify_risk(score: float, thresholds: RiskThresholds) -> CoordinationRiskLevel:
    """Map a coordination score to a risk tier (lower bounds inclusive)."""
    if score >= thresholds.critical:
        return CoordinationRiskLevel.CRITICAL
    if score >= thresholds.high:
        return CoordinationRiskLevel.HIGH
    if score >= thresholds.medium:
        return CoordinationRiskLevel.MEDIUM
    if score >= thresholds.low:
        return CoordinationRiskLevel.LOW
    return CoordinationRiskLevel.NONE


def classify_confidence(score: float, thresholds: ConfidenceThresholds) -> CoordinationConfidence:
    if score >= thresholds.very_high:
        return CoordinationConfidence.VERY_HIGH
    if score >= thresholds.high:
        return CoordinationConfidence.HIGH
    if score >= thresholds.medium:
        return CoordinationConfidence.MEDIUM
    if score >= thresholds.low:
        return CoordinationConfidence.LOW
    return CoordinationConfidence.VERY_LOW


def dominant_pattern(pairs: Sequence[PairSimilarity]) -> CoordinationPatternType:
    """Most common known pair pattern; MULTI_PATTERN when several tie for first."""
    counts = Counter(p.pattern for p in pairs if p.pattern is not CoordinationPatternType.UNKNOWN)
    if not counts:
        return CoordinationPatternType.UNKNOWN
    ranked = counts.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return CoordinationPatternType.MULTI_PATTERN
    return ranked[0][0]


def group_id_for(members: Iterable[str]) -> str:
    """Deterministic id: the same member set always yields the same id."""
    material = "|".join(sorted(set(members))).encode("utf-8")
    digest = hashlib.sha256(material).hexdigest()
    return f"cgroup_{digest[:24]}"


def flag_reasons(flags: frozenset[CoordinationFlag], pairs: Sequence[PairSimilarity]) -> tuple[str, ...]:
    """Human-readable reasons for a group's flags, in a fixed order."""
    timing = float(np.mean([p.timing_correlation for p in pairs])) if pairs else 0.0
    sizes = float(np.mean([p.size_similarity for p in pairs])) if pairs else 0.0
    overlap = float(np.mean([p.market_overlap for p in pairs])) if pairs else 0.0

    reasons: list[str] = []
    if CoordinationFlag.TIMING_CORRELATION in flags:
        reasons.append(f"Trades occur at similar times ({round(timing * 100)}% timing correlation)")
    if CoordinationFlag.SIZE_SIMILARITY in flags:
        reasons.append(f"Similar trade sizes ({round(sizes * 100)}% size similarity)")
    if CoordinationFlag.MARKET_OVERLAP in flags:
        reasons.append(f"Trading same markets ({round(overlap)}% market overlap)")
    if CoordinationFlag.DIRECTION_ALIGNMENT in flags:
        reasons.append("Consistently trading same direction in shared markets")
    if CoordinationFlag.OPPOSITE_DIRECTIONS in flags:
        reasons.append("Trading opposite directions in same markets (potential wash trading)")
    if CoordinationFlag.WIN_RATE_SIMILARITY in flags:
        reasons.append("Suspiciously similar win rates")
    if CoordinationFlag.SEQUENTIAL_TIMING in flags:
        reasons.append("Repeated near-simultaneous trades in shared markets")
    if CoordinationFlag.BOT_INDICATORS in flags:
        reasons.append("Bot-like timing precision across many trades")
    return tuple(reasons)


class GroupDetector:
    """Builds coordination groups from scored wallet pairs.

    Example:
        ```python
        detector = GroupDetector(PairSimilarityEngine(settings))
        result = detector.detect_for_wallet(store.snapshot(), wallet)
        for group in result.groups:
            print(group.group_id, group.risk_level)
        ```
    """

    def __init__(self, engine: PairSimilarityEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> PairSimilarityEngine:
        return self._engine

    @property
    def settings(self) -> CoordinationSettings:
        return self._engine.settings

    def candidates_for(
        self,
        snapshot: TradeStoreSnapshot,
        wallet: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        wallet_filter: Iterable[str] | None = None,
    ) -> list[str]:
        """Wallets sharing at least one market with ``wallet`` inside the window.

        Capped at ``max_pairs_per_wallet``; when capped, the wallets sharing
        the most markets are kept (ties broken by address). ``wallet_filter``
        restricts the candidates to an explicit set of normalized addresses.
        """
        markets = snapshot.markets_for_wallet(wallet, start, end)
        if market_filter:
            markets = markets & frozenset(market_filter)

        shared: Counter[str] = Counter()
        for market_id in markets:
            for other in snapshot.wallets_for_market(market_id, start, end):
                if other != wallet:
                    shared[other] += 1

        if wallet_filter is not None:
            allowed = frozenset(wallet_filter)
            shared = Counter({w: n for w, n in shared.items() if w in allowed})

        ranked = sorted(shared, key=lambda w: (-shared[w], w))
        limit = self.settings.max_pairs_per_wallet
        if len(ranked) > limit:
            logger.debug(
                "Capping candidates for %s at %d (of %d)",
                wallet,
                limit,
                len(ranked),
            )
            ranked = ranked[:limit]
        return sorted(ranked)

    def detect_for_wallet(
        self,
        snapshot: TradeStoreSnapshot,
        wallet: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        wallet_filter: Iterable[str] | None = None,
        candidates: list[str] | None = None,
        bypass_cache: bool = False,
    ) -> CoordinationAnalysisResult:
        """Score ``wallet`` against every candidate and group the coordinated ones.

        ``candidates`` may be passed when the caller already computed them.
        A pair that raises is logged and counted in ``failed_pairs``; the
        remaining pairs still contribute.
        """
        if candidates is None:
            candidates = self.candidates_for(
                snapshot,
                wallet,
                start=start,
                end=end,
                market_filter=market_filter,
                wallet_filter=wallet_filter,
            )

        pairs: list[PairSimilarity] = []
        failed = 0
        for other in candidates:
            try:
                pair = self._engine.analyze_pair(
                    snapshot,
                    wallet,
                    other,
                    start=start,
                    end=end,
                    market_filter=market_filter,
                    bypass_cache=bypass_cache,
                )
            except Exception:
                logger.exception("Failed to score pair %s / %s", wallet, other)
                failed += 1
                continue
            if pair is not None:
                pairs.append(pair)

        coordinated = sorted(
            (p for p in pairs if p.is_likely_coordinated),
            key=lambda p: (-p.similarity_score, p.counterparty(wallet)),
        )
        groups = tuple(g for g in self.build_groups(coordinated, snapshot, start=start, end=end) if wallet in g.member_set)
        connected = tuple(
            ConnectedWallet(address=p.counterparty(wallet), similarity_score=p.similarity_score, pattern=p.pattern)
            for p in coordinated[:MAX_CONNECTED_WALLETS]
        )

        if groups:
            logger.info(
                "Wallet %s coordinated with %d wallet(s), risk %s",
                wallet,
                len(coordinated),
                groups[0].risk_level.value,
            )

        return CoordinationAnalysisResult(
            wallet_address=wallet,
            groups=groups,
            highest_risk_level=highest_risk([g.risk_level for g in groups]),
            connected_wallets=connected,
            wallets_compared=len(candidates),
            failed_pairs=failed,
        )

    def build_groups(
        self,
        pairs: Iterable[PairSimilarity],
        snapshot: TradeStoreSnapshot,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CoordinationGroup]:
        """Connected components of the coordinated pairs, as groups.

        Non-coordinated pairs are ignored. Components smaller than
        ``min_group_size`` are dropped; components larger than
        ``max_group_size`` keep their best-connected members.

        Returns:
            Groups ordered by descending score, then group id.
        """
        edges = [p for p in pairs if p.is_likely_coordinated]
        uf = UnionFind()
        for pair in edges:
            uf.union(pair.wallet_a, pair.wallet_b)

        cfg = self.settings
        groups: list[CoordinationGroup] = []
        for members in uf.components():
            if len(members) < cfg.min_group_size:
                continue
            if len(members) > cfg.max_group_size:
                members = self._best_members(members, edges, cfg.max_group_size)
            member_set = frozenset(members)
            group_edges = [p for p in edges if p.wallet_a in member_set and p.wallet_b in member_set]
            if not group_edges:
                continue
            groups.append(self._build_group(members, group_edges, snapshot, start=start, end=end))

        groups.sort(key=lambda g: (-g.coordination_score, g.group_id))
        return groups

    @staticmethod
    def _best_members(members: list[str], edges: Sequence[PairSimilarity], limit: int) -> list[str]:
        best: dict[str, float] = {}
        member_set = set(members)
        for pair in edges:
            if pair.wallet_a not in member_set:
                continue
            for wallet in (pair.wallet_a, pair.wallet_b):
                best[wallet] = max(best.get(wallet, 0.0), pair.similarity_score)
        logger.warning("Truncating coordination component of %d wallets to %d", len(members), limit)
        return sorted(sorted(members, key=lambda w: (-best.get(w, 0.0), w))[:limit])

    def _build_group(
        self,
        members: list[str],
        edges: list[PairSimilarity],
        snapshot: TradeStoreSnapshot,
        *,
        start: datetime | None,
        end: datetime | None,
    ) -> CoordinationGroup:
        cfg = self.settings
        score = round(float(np.mean([p.similarity_score for p in edges])), 2)
        flags = frozenset(f for p in edges for f in p.flags)

        total_trades = 0
        volume = 0.0
        first: float | None = None
        last: float | None = None
        market_counts: Counter[str] = Counter()
        for wallet in members:
            trades = snapshot.trades_for_wallet(wallet, start, end)
            if not trades:
                continue
            total_trades += len(trades)
            volume += sum(t.size_usd for t in trades)
            market_counts.update({t.market_id for t in trades})
            first = trades[0].epoch_seconds if first is None else min(first, trades[0].epoch_seconds)
            last = trades[-1].epoch_seconds if last is None else max(last, trades[-1].epoch_seconds)

        ordered_edges = tuple(sorted(edges, key=lambda p: (-p.similarity_score, p.wallet_a, p.wallet_b)))
        return CoordinationGroup(
            group_id=group_id_for(members),
            members=tuple(members),
            coordination_score=score,
            risk_level=classify_risk(score, cfg.risk_thresholds),
            flags=flags,
            confidence=classify_confidence(score, cfg.confidence_thresholds),
            pattern=dominant_pattern(edges),
            pair_similarities=ordered_edges,
            total_trades=total_trades,
            total_volume_usd=round(volume, 2),
            markets_traded=tuple(sorted(market_counts)),
            common_markets=tuple(sorted(m for m, n in market_counts.items() if n == len(members))),
            activity_start=datetime.fromtimestamp(first, tz=UTC) if first is not None else None,
            activity_end=datetime.fromtimestamp(last, tz=UTC) if last is not None else None,
            flag_reasons=flag_reasons(flags, edges),
        )
