"""Tests for pairwise wallet similarity scoring."""

from __future__ import annotations

import time
from datetime import timedelta
from unittest import mock

import pytest
from conftest import (
    BASE_TIME,
    copy_scenario,
    independent_scenario,
    make_trade,
    mirror_scenario,
    wallet,
    wash_scenario,
)

from polymarket_coordination.config import CoordinationSettings
from polymarket_coordination.detector.cache import ResultCache
from polymarket_coordination.detector.models import CoordinationFlag, CoordinationPatternType
from polymarket_coordination.detector.similarity import (
    PairSimilarityEngine,
    market_overlap,
    match_trades,
)
from polymarket_coordination.ingestor.models import Trade, TradeOutcome
from polymarket_coordination.storage.trade_store import TradeStore, TradeStoreSnapshot


def _snapshot(trades: list[Trade]) -> TradeStoreSnapshot:
    store = TradeStore()
    store.add_trades(trades)
    return store.snapshot()


def _copy_with(matched: int, same_side: int = 15) -> list[Trade]:
    """Leader with 15 trades; the first ``matched`` are followed within 30s."""
    leader, follower = wallet(500), wallet(501)
    trades: list[Trade] = []
    for i in range(15):
        t = i * 600
        market = f"mono-{i % 5}"
        trades.append(make_trade(f"l-{i}", leader, market, seconds=t, side="BUY", size_usd=100.0))
        follow_at = t + 30 if i < matched else 25_200 + i * 600
        side = "BUY" if i < same_side else "SELL"
        trades.append(make_trade(f"f-{i}", follower, market, seconds=follow_at, side=side, size_usd=100.0))
    return trades


class TestSignalHelpers:
    def test_market_overlap_is_jaccard(self) -> None:
        assert market_overlap(frozenset({"a", "b"}), frozenset({"b", "c"})) == pytest.approx(100 / 3)
        assert market_overlap(frozenset(), frozenset({"a"})) == 0.0
        assert market_overlap(frozenset({"a"}), frozenset({"a"})) == 100.0

    def test_match_trades_is_one_to_one(self) -> None:
        a = [make_trade("a1", wallet(1), "m", seconds=0), make_trade("a2", wallet(1), "m", seconds=1)]
        b = [make_trade("b1", wallet(2), "m", seconds=0.5)]

        matches = match_trades(a, b, 60.0)

        assert len(matches) == 1
        assert matches[0].trade_b.trade_id == "b1"

    def test_match_trades_ignores_other_markets_and_far_trades(self) -> None:
        a = [make_trade("a1", wallet(1), "m1", seconds=0), make_trade("a2", wallet(1), "m2", seconds=0)]
        b = [make_trade("b1", wallet(2), "m1", seconds=61), make_trade("b2", wallet(2), "m3", seconds=0)]

        assert match_trades(a, b, 60.0) == []

    def test_window_bound_is_inclusive(self) -> None:
        a = [make_trade("a1", wallet(1), "m1", seconds=0)]
        b = [make_trade("b1", wallet(2), "m1", seconds=60)]

        assert len(match_trades(a, b, 60.0)) == 1


class TestScenarios:
    def test_mirror_trading(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(mirror_scenario())

        result = engine.compute(snapshot, wallet(100), wallet(101))

        assert result is not None
        assert result.is_likely_coordinated
        assert result.similarity_score > 60
        assert result.market_overlap == 100.0
        assert result.timing_correlation == 1.0
        assert result.direction_alignment == 1.0
        assert {CoordinationFlag.TIMING_CORRELATION, CoordinationFlag.MARKET_OVERLAP} <= result.flags
        assert result.pattern is CoordinationPatternType.SIMULTANEOUS

    def test_wash_trading(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(wash_scenario())

        result = engine.compute(snapshot, wallet(200), wallet(201))

        assert result is not None
        assert result.has_flag(CoordinationFlag.OPPOSITE_DIRECTIONS)
        assert not result.has_flag(CoordinationFlag.DIRECTION_ALIGNMENT)
        assert result.direction_alignment == 0.0
        assert result.size_similarity == 1.0
        assert result.simultaneous_trade_count == 20
        assert result.is_likely_coordinated
        assert result.pattern is CoordinationPatternType.COUNTER_PARTY

    def test_copy_trading(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(copy_scenario())

        result = engine.compute(snapshot, wallet(300), wallet(301))

        assert result is not None
        assert result.market_overlap == 100.0
        assert result.direction_alignment == 1.0
        assert result.is_likely_coordinated
        assert result.mean_lag_seconds == pytest.approx(30.0)
        assert result.pattern is CoordinationPatternType.COPY_TRADING
        assert result.has_flag(CoordinationFlag.BOT_INDICATORS)
        assert result.has_flag(CoordinationFlag.SEQUENTIAL_TIMING)

    def test_independent_traders_not_flagged(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(independent_scenario())

        result = engine.compute(snapshot, wallet(400), wallet(401))

        assert result is not None
        assert not result.is_likely_coordinated
        assert result.market_overlap == pytest.approx(20.0)
        assert result.timing_correlation == 0.0
        assert result.direction_alignment == 0.5
        assert result.size_similarity == 0.0
        assert result.win_rate_similarity == 0.0
        assert result.similarity_score == pytest.approx(4.0)
        assert result.flags == frozenset()

    def test_mirror_scoring_is_fast(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(mirror_scenario())

        started = time.perf_counter()
        for a, b in ((100, 101), (100, 102), (101, 102)):
            engine.compute(snapshot, wallet(a), wallet(b))
        assert time.perf_counter() - started < 0.5


class TestProperties:
    def test_symmetric_signals(self, settings: CoordinationSettings) -> None:
        a, b = wallet(1), wallet(2)
        snapshot = _snapshot(
            [
                make_trade("a0", a, "m1", seconds=0, side="BUY", size_usd=100.0),
                make_trade("a1", a, "m1", seconds=10, side="SELL", size_usd=300.0),
                make_trade("a2", a, "m1", seconds=20, side="BUY", size_usd=50.0),
                make_trade("a3", a, "m2", seconds=30, side="BUY", size_usd=75.0),
                make_trade("b0", b, "m1", seconds=5, side="SELL", size_usd=120.0),
                make_trade("b1", b, "m1", seconds=15, side="BUY", size_usd=280.0),
                make_trade("b2", b, "m3", seconds=40, side="SELL", size_usd=10.0),
            ]
        )
        engine = PairSimilarityEngine(settings)

        ab = engine.compute(snapshot, a, b)
        ba = engine.compute(snapshot, b, a)

        assert ab is not None and ba is not None
        assert ab.market_overlap == ba.market_overlap
        assert ab.size_similarity == ba.size_similarity
        assert ab.direction_alignment == ba.direction_alignment
        assert ab.simultaneous_trade_count == ba.simultaneous_trade_count

    def test_idempotent(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        snapshot = _snapshot(copy_scenario())

        first = engine.compute(snapshot, wallet(300), wallet(301))
        second = engine.compute(snapshot, wallet(300), wallet(301))

        assert first == second

    def test_score_monotone_in_timing(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        scores = []
        for matched in range(0, 16, 3):
            result = engine.compute(_snapshot(_copy_with(matched)), wallet(500), wallet(501))
            assert result is not None
            scores.append(result.similarity_score)

        assert scores == sorted(scores)
        assert scores[0] < scores[-1]

    def test_score_monotone_in_direction_decisiveness(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings)
        scores = []
        for same_side in range(8, 16):
            result = engine.compute(_snapshot(_copy_with(15, same_side=same_side)), wallet(500), wallet(501))
            assert result is not None
            scores.append(result.similarity_score)

        assert scores == sorted(scores)
        assert scores[0] < scores[-1]

    def test_score_is_bounded(self, settings: CoordinationSettings) -> None:
        trades = [
            make_trade(f"a{i}", wallet(1), "m1", seconds=i * 600, outcome=TradeOutcome.WIN) for i in range(6)
        ] + [
            make_trade(f"b{i}", wallet(2), "m1", seconds=i * 600, outcome=TradeOutcome.WIN) for i in range(6)
        ]
        result = PairSimilarityEngine(settings).compute(_snapshot(trades), wallet(1), wallet(2))

        assert result is not None
        assert result.similarity_score == 100.0


class TestEdgeCases:
    def test_same_wallet_returns_none(self, settings: CoordinationSettings) -> None:
        snapshot = _snapshot(copy_scenario())
        assert PairSimilarityEngine(settings).compute(snapshot, wallet(300), wallet(300)) is None

    def test_wallet_without_trades_returns_none(self, settings: CoordinationSettings) -> None:
        snapshot = _snapshot(copy_scenario())
        assert PairSimilarityEngine(settings).compute(snapshot, wallet(300), wallet(999)) is None

    def test_min_trades_per_wallet(self) -> None:
        settings = CoordinationSettings(min_trades_per_wallet=20)
        snapshot = _snapshot(copy_scenario())
        assert PairSimilarityEngine(settings).compute(snapshot, wallet(300), wallet(301)) is None

    def test_disjoint_markets(self, settings: CoordinationSettings) -> None:
        snapshot = _snapshot(
            [
                make_trade("a", wallet(1), "m1", seconds=0),
                make_trade("b", wallet(2), "m2", seconds=0),
            ]
        )
        result = PairSimilarityEngine(settings).compute(snapshot, wallet(1), wallet(2))

        assert result is not None
        assert result.market_overlap == 0.0
        assert result.direction_alignment == 0.5
        assert result.overlapping_markets == 0
        assert not result.is_likely_coordinated

    def test_time_window_limits_trades(self, settings: CoordinationSettings) -> None:
        snapshot = _snapshot(copy_scenario())
        end = BASE_TIME + timedelta(seconds=4 * 600 + 30)

        result = PairSimilarityEngine(settings).compute(snapshot, wallet(300), wallet(301), end=end)

        assert result is not None
        assert result.total_trades_analyzed == 10

    def test_market_filter(self, settings: CoordinationSettings) -> None:
        snapshot = _snapshot(copy_scenario())

        result = PairSimilarityEngine(settings).compute(
            snapshot, wallet(300), wallet(301), market_filter=["market-copy-0"]
        )

        assert result is not None
        assert result.overlapping_markets == 1
        assert result.total_trades_analyzed == 6

    def test_win_rate_flag_requires_resolved_trades(self, settings: CoordinationSettings) -> None:
        trades = [
            make_trade(f"a{i}", wallet(1), "m1", seconds=i * 600, outcome=TradeOutcome.WIN) for i in range(4)
        ] + [
            make_trade(f"b{i}", wallet(2), "m1", seconds=i * 600 + 2, outcome=TradeOutcome.WIN) for i in range(4)
        ]
        engine = PairSimilarityEngine(settings)

        resolved = engine.compute(_snapshot(trades), wallet(1), wallet(2))
        unresolved = engine.compute(_snapshot(mirror_scenario()), wallet(100), wallet(101))

        assert resolved is not None and unresolved is not None
        assert resolved.win_rate_similarity == 1.0
        assert resolved.has_flag(CoordinationFlag.WIN_RATE_SIMILARITY)
        assert unresolved.win_rate_similarity == 0.5
        assert not unresolved.has_flag(CoordinationFlag.WIN_RATE_SIMILARITY)


class TestPatterns:
    def test_order_splitting_for_mixed_direction_equal_sizes(self, settings: CoordinationSettings) -> None:
        trades: list[Trade] = []
        for i in range(10):
            market = f"split-{i % 2}"
            trades.append(make_trade(f"a{i}", wallet(1), market, seconds=i * 600, side="BUY", size_usd=400.0))
            side = "BUY" if i % 2 else "SELL"
            trades.append(make_trade(f"b{i}", wallet(2), market, seconds=i * 600 + 1, side=side, size_usd=400.0))

        result = PairSimilarityEngine(settings).compute(_snapshot(trades), wallet(1), wallet(2))

        assert result is not None
        assert result.direction_alignment == 0.5
        assert result.pattern is CoordinationPatternType.ORDER_SPLITTING

    def test_relay_trading_for_sparse_repeated_matches(self, settings: CoordinationSettings) -> None:
        trades: list[Trade] = []
        for i in range(10):
            trades.append(make_trade(f"a{i}", wallet(1), "relay", seconds=i * 600, side="BUY", size_usd=100.0))
        for i, side in enumerate(("BUY", "SELL", "BUY")):
            trades.append(make_trade(f"b{i}", wallet(2), "relay", seconds=i * 600 + 20, side=side, size_usd=900.0))
        trades.append(make_trade("b3", wallet(2), "relay", seconds=1520, side="BUY", size_usd=900.0))

        result = PairSimilarityEngine(settings).compute(_snapshot(trades), wallet(1), wallet(2))

        assert result is not None
        assert result.timing_correlation == pytest.approx(0.3)
        assert result.has_flag(CoordinationFlag.SEQUENTIAL_TIMING)
        assert result.pattern is CoordinationPatternType.RELAY_TRADING


class TestCaching:
    def test_second_call_hits_cache(self, settings: CoordinationSettings) -> None:
        cache = ResultCache()
        engine = PairSimilarityEngine(settings, cache=cache)
        snapshot = _snapshot(copy_scenario())

        with mock.patch.object(engine, "compute", wraps=engine.compute) as compute:
            first = engine.analyze_pair(snapshot, wallet(300), wallet(301))
            second = engine.analyze_pair(snapshot, wallet(300), wallet(301))

        assert first is second
        assert compute.call_count == 1
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1

    def test_bypass_cache_recomputes(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings, cache=ResultCache())
        snapshot = _snapshot(copy_scenario())

        with mock.patch.object(engine, "compute", wraps=engine.compute) as compute:
            engine.analyze_pair(snapshot, wallet(300), wallet(301))
            engine.analyze_pair(snapshot, wallet(300), wallet(301), bypass_cache=True)

        assert compute.call_count == 2

    def test_new_trades_change_the_key(self, settings: CoordinationSettings) -> None:
        store = TradeStore()
        store.add_trades(copy_scenario())
        engine = PairSimilarityEngine(settings, cache=ResultCache())
        before = engine.analyze_pair(store.snapshot(), wallet(300), wallet(301))

        store.add_trades([make_trade("extra", wallet(301), "market-copy-0", seconds=99_999)])
        after = engine.analyze_pair(store.snapshot(), wallet(300), wallet(301))

        assert before is not None and after is not None
        assert after.total_trades_analyzed == before.total_trades_analyzed + 1

    def test_settings_update_invalidates_by_version(self, settings: CoordinationSettings) -> None:
        engine = PairSimilarityEngine(settings, cache=ResultCache())
        snapshot = _snapshot(copy_scenario())
        before = engine.analyze_pair(snapshot, wallet(300), wallet(301))

        engine.update_settings(settings.with_changes(min_similarity_score=99.0))
        after = engine.analyze_pair(snapshot, wallet(300), wallet(301))

        assert before is not None and after is not None
        assert before.is_likely_coordinated
        assert not after.is_likely_coordinated
        assert engine.config_version == 1
