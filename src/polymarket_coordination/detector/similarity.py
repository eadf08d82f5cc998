"""Pairwise wallet similarity scoring.

Five independent signals are computed for a pair of wallets and folded into a
0-100 composite:

- market overlap: Jaccard overlap of the markets each wallet traded
- timing correlation: share of wallet A's shared-market trades that have a
  wallet B counterpart in the same market within the simultaneous window
- direction alignment: share of those matched pairs on the same side
- size similarity: mean ``1 - |a-b|/max(a,b)`` over the matched pairs
- win-rate similarity: ``1 - |wr_a - wr_b|`` over resolved trades

A pair is only called coordinated when the composite clears the threshold and
at least one strong signal fired on top of a substantial market overlap. Two
wallets that happen to trade the same popular market therefore do not qualify
on overlap alone.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from polymarket_coordination.config import CoordinationSettings
from polymarket_coordination.detector.cache import CacheKey, ResultCache
from polymarket_coordination.detector.models import (
    CoordinationFlag,
    CoordinationPatternType,
    PairSimilarity,
)
from polymarket_coordination.ingestor.models import Trade, TradeOutcome
from polymarket_coordination.storage.trade_store import TradeStoreSnapshot

logger = logging.getLogger(__name__)

# Neutral values used when a signal has no evidence either way.
NEUTRAL_DIRECTION_ALIGNMENT = 0.5
NEUTRAL_WIN_RATE_SIMILARITY = 0.5

# Fixed flag cut points on the 0-1 signals.
TIMING_FLAG_THRESHOLD = 0.5
ALIGNED_FLAG_THRESHOLD = 0.8
OPPOSITE_FLAG_THRESHOLD = 0.2
BOT_TIMING_THRESHOLD = 0.9
BOT_MIN_MATCHED_TRADES = 5


@dataclass(frozen=True)
class MatchedTrade:
    """A trade of wallet A paired with a trade of wallet B in the same market."""

    trade_a: Trade
    trade_b: Trade

    @property
    def lag_seconds(self) -> float:
        return abs(self.trade_b.epoch_seconds - self.trade_a.epoch_seconds)

    @property
    def same_side(self) -> bool:
        return self.trade_a.side == self.trade_b.side

    @property
    def size_similarity(self) -> float:
        a, b = self.trade_a.size_usd, self.trade_b.size_usd
        return 1.0 - abs(a - b) / max(a, b)


def market_overlap(markets_a: frozenset[str], markets_b: frozenset[str]) -> float:
    """Jaccard overlap of two market sets scaled to 0-100."""
    if not markets_a or not markets_b:
        return 0.0
    return len(markets_a & markets_b) / len(markets_a | markets_b) * 100.0


def match_trades(
    trades_a: Sequence[Trade],
    trades_b: Sequence[Trade],
    window_seconds: float,
) -> list[MatchedTrade]:
    """Pair trades of A and B in the same market within ``window_seconds``.

    Candidate pairs are accepted greedily from the smallest time gap upward and
    each trade is used at most once. The tie-break key does not depend on which
    wallet is A, so swapping the arguments yields the same pairs.
    """
    b_by_market: dict[str, list[Trade]] = defaultdict(list)
    for trade in trades_b:
        b_by_market[trade.market_id].append(trade)

    b_index: dict[str, tuple[list[Trade], np.ndarray]] = {}
    for market_id, items in b_by_market.items():
        items.sort(key=lambda t: (t.epoch_seconds, t.trade_id))
        b_index[market_id] = (items, np.array([t.epoch_seconds for t in items], dtype=float))

    candidates: list[tuple[tuple[float, float, str, str], Trade, Trade]] = []
    for a in trades_a:
        indexed = b_index.get(a.market_id)
        if indexed is None:
            continue
        items, ts = indexed
        ta = a.epoch_seconds
        lo = int(np.searchsorted(ts, ta - window_seconds, side="left"))
        hi = int(np.searchsorted(ts, ta + window_seconds, side="right"))
        for b in items[lo:hi]:
            tb = b.epoch_seconds
            ids = (a.trade_id, b.trade_id) if a.trade_id <= b.trade_id else (b.trade_id, a.trade_id)
            candidates.append(((abs(ta - tb), ta + tb, ids[0], ids[1]), a, b))

    candidates.sort(key=lambda c: c[0])
    used_a: set[str] = set()
    used_b: set[str] = set()
    matches: list[MatchedTrade] = []
    for _key, a, b in candidates:
        if a.trade_id in used_a or b.trade_id in used_b:
            continue
        used_a.add(a.trade_id)
        used_b.add(b.trade_id)
        matches.append(MatchedTrade(trade_a=a, trade_b=b))
    return matches


def direction_alignment(matches: Sequence[MatchedTrade]) -> float:
    """Share of matched pairs on the same side; neutral 0.5 without matches."""
    if not matches:
        return NEUTRAL_DIRECTION_ALIGNMENT
    return sum(1 for m in matches if m.same_side) / len(matches)


def size_similarity(matches: Sequence[MatchedTrade]) -> float:
    """Mean per-pair size similarity; 0 without matches."""
    if not matches:
        return 0.0
    return float(np.mean([m.size_similarity for m in matches]))


def win_rate(trades: Iterable[Trade]) -> float | None:
    """Fraction of resolved trades that won; None when nothing resolved."""
    resolved = [t for t in trades if t.is_resolved]
    if not resolved:
        return None
    return sum(1 for t in resolved if t.outcome is TradeOutcome.WIN) / len(resolved)


def win_rate_similarity(trades_a: Sequence[Trade], trades_b: Sequence[Trade]) -> tuple[float, bool]:
    """Return (similarity, known). Unknown win rates score the neutral 0.5."""
    wr_a = win_rate(trades_a)
    wr_b = win_rate(trades_b)
    if wr_a is None or wr_b is None:
        return NEUTRAL_WIN_RATE_SIMILARITY, False
    return 1.0 - abs(wr_a - wr_b), True


class PairSimilarityEngine:
    """Computes and caches PairSimilarity results.

    Example:
        ```python
        engine = PairSimilarityEngine(settings, cache=ResultCache())
        result = engine.analyze_pair(store.snapshot(), wallet_a, wallet_b)
        if result is not None and result.is_likely_coordinated:
            print(result.flags)
        ```
    """

    def __init__(
        self,
        settings: CoordinationSettings | None = None,
        *,
        cache: ResultCache | None = None,
    ) -> None:
        self._settings = settings or CoordinationSettings()
        self._cache = cache
        self._config_version = 0

    @property
    def settings(self) -> CoordinationSettings:
        return self._settings

    @property
    def config_version(self) -> int:
        return self._config_version

    def update_settings(self, settings: CoordinationSettings) -> None:
        """Swap in new settings; cache entries built under the old ones stop matching."""
        self._settings = settings
        self._config_version += 1

    def analyze_pair(
        self,
        snapshot: TradeStoreSnapshot,
        wallet_a: str,
        wallet_b: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        bypass_cache: bool = False,
    ) -> PairSimilarity | None:
        """Cached ``compute``; ``bypass_cache`` forces a fresh computation."""
        markets = frozenset(market_filter) if market_filter else None
        key: CacheKey | None = None
        if self._cache is not None and self._cache.enabled:
            key = CacheKey.build(
                "pair",
                (wallet_a, wallet_b),
                snapshot,
                start=start,
                end=end,
                market_filter=markets,
                config_version=self._config_version,
            )
            if not bypass_cache:
                cached = self._cache.get(key)
                if cached is not None:
                    return cached

        result = self.compute(snapshot, wallet_a, wallet_b, start=start, end=end, market_filter=markets)
        if result is not None and key is not None:
            self._cache.put(key, result)  # type: ignore[union-attr]
        return result

    def compute(
        self,
        snapshot: TradeStoreSnapshot,
        wallet_a: str,
        wallet_b: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
    ) -> PairSimilarity | None:
        """Score two wallets over ``[start, end]``.

        Returns:
            PairSimilarity, or None when the wallets are identical or either
            has fewer than ``min_trades_per_wallet`` trades in range.
        """
        if wallet_a == wallet_b:
            return None

        cfg = self._settings
        trades_a = snapshot.trades_for_wallet(wallet_a, start, end)
        trades_b = snapshot.trades_for_wallet(wallet_b, start, end)
        if market_filter:
            allowed = frozenset(market_filter)
            trades_a = tuple(t for t in trades_a if t.market_id in allowed)
            trades_b = tuple(t for t in trades_b if t.market_id in allowed)

        if len(trades_a) < cfg.min_trades_per_wallet or len(trades_b) < cfg.min_trades_per_wallet:
            return None

        markets_a = frozenset(t.market_id for t in trades_a)
        markets_b = frozenset(t.market_id for t in trades_b)
        shared = markets_a & markets_b
        overlap = market_overlap(markets_a, markets_b)

        shared_a = [t for t in trades_a if t.market_id in shared]
        shared_b = [t for t in trades_b if t.market_id in shared]
        matches = match_trades(shared_a, shared_b, cfg.simultaneous_window_seconds)

        timing = len(matches) / len(shared_a) if shared_a else 0.0
        direction = direction_alignment(matches)
        sizes = size_similarity(matches)
        win_rates, win_rates_known = win_rate_similarity(trades_a, trades_b)
        mean_lag = float(np.mean([m.lag_seconds for m in matches])) if matches else None

        score = self._composite_score(
            timing=timing,
            overlap=overlap,
            sizes=sizes,
            direction=direction,
            win_rates=win_rates,
        )
        flags = self._determine_flags(
            timing=timing,
            overlap=overlap,
            sizes=sizes,
            direction=direction,
            win_rates=win_rates,
            win_rates_known=win_rates_known,
            matched=len(matches),
        )
        coordinated = score >= cfg.min_similarity_score and self._has_strong_signal(
            timing=timing,
            overlap=overlap,
            sizes=sizes,
            direction=direction,
            matched=len(matches),
        )

        return PairSimilarity(
            wallet_a=wallet_a,
            wallet_b=wallet_b,
            similarity_score=score,
            market_overlap=round(overlap, 4),
            direction_alignment=round(direction, 6),
            size_similarity=round(sizes, 6),
            timing_correlation=round(timing, 6),
            win_rate_similarity=round(win_rates, 6),
            flags=flags,
            is_likely_coordinated=coordinated,
            simultaneous_trade_count=len(matches),
            overlapping_markets=len(shared),
            total_trades_analyzed=len(trades_a) + len(trades_b),
            mean_lag_seconds=round(mean_lag, 3) if mean_lag is not None else None,
            pattern=self._determine_pattern(flags, sizes=sizes, mean_lag=mean_lag),
        )

    def _composite_score(
        self,
        *,
        timing: float,
        overlap: float,
        sizes: float,
        direction: float,
        win_rates: float,
    ) -> float:
        # Direction counts by how decisive it is: all-same (mirror) and
        # all-opposite (wash) both score, a coin-flip mix scores nothing.
        w = self._settings.score_weights
        raw = (
            w.timing_correlation * timing
            + w.market_overlap * (overlap / 100.0)
            + w.size_similarity * sizes
            + w.direction_alignment * abs(direction - 0.5) * 2.0
            + w.win_rate_similarity * win_rates
        )
        return round(min(100.0, raw * 100.0), 2)

    def _has_strong_signal(
        self,
        *,
        timing: float,
        overlap: float,
        sizes: float,
        direction: float,
        matched: int,
    ) -> bool:
        cfg = self._settings
        if overlap < cfg.strong_market_overlap:
            return False
        if timing >= cfg.strong_timing_correlation:
            return True
        if matched < cfg.min_simultaneous_trades:
            return False
        extreme = cfg.extreme_direction_alignment
        return direction >= extreme or direction <= 1.0 - extreme or sizes >= cfg.extreme_size_similarity

    def _determine_flags(
        self,
        *,
        timing: float,
        overlap: float,
        sizes: float,
        direction: float,
        win_rates: float,
        win_rates_known: bool,
        matched: int,
    ) -> frozenset[CoordinationFlag]:
        cfg = self._settings
        flags: set[CoordinationFlag] = set()

        if timing > TIMING_FLAG_THRESHOLD:
            flags.add(CoordinationFlag.TIMING_CORRELATION)
        if matched >= cfg.min_simultaneous_trades:
            flags.add(CoordinationFlag.SEQUENTIAL_TIMING)
        if overlap >= cfg.min_market_overlap:
            flags.add(CoordinationFlag.MARKET_OVERLAP)
        if matched:
            if sizes > 1.0 - cfg.size_similarity_tolerance:
                flags.add(CoordinationFlag.SIZE_SIMILARITY)
            if direction > ALIGNED_FLAG_THRESHOLD:
                flags.add(CoordinationFlag.DIRECTION_ALIGNMENT)
            elif direction < OPPOSITE_FLAG_THRESHOLD:
                flags.add(CoordinationFlag.OPPOSITE_DIRECTIONS)
        if win_rates_known and win_rates > 1.0 - cfg.win_rate_similarity_tolerance:
            flags.add(CoordinationFlag.WIN_RATE_SIMILARITY)
        if timing > BOT_TIMING_THRESHOLD and matched > BOT_MIN_MATCHED_TRADES:
            flags.add(CoordinationFlag.BOT_INDICATORS)

        return frozenset(flags)

    def _determine_pattern(
        self,
        flags: frozenset[CoordinationFlag],
        *,
        sizes: float,
        mean_lag: float | None,
    ) -> CoordinationPatternType:
        if CoordinationFlag.OPPOSITE_DIRECTIONS in flags:
            return CoordinationPatternType.COUNTER_PARTY
        timed = CoordinationFlag.TIMING_CORRELATION in flags
        if timed and CoordinationFlag.DIRECTION_ALIGNMENT in flags:
            if mean_lag is not None and mean_lag > self._settings.mirror_max_lag_seconds:
                return CoordinationPatternType.COPY_TRADING
            return CoordinationPatternType.SIMULTANEOUS
        if timed and CoordinationFlag.SIZE_SIMILARITY in flags and sizes >= self._settings.extreme_size_similarity:
            return CoordinationPatternType.ORDER_SPLITTING
        if CoordinationFlag.SEQUENTIAL_TIMING in flags:
            return CoordinationPatternType.RELAY_TRADING
        return CoordinationPatternType.UNKNOWN
