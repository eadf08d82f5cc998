"""Tests for the in-memory trade store."""

from __future__ import annotations

import heapq
from dataclasses import replace
from datetime import datetime, timedelta
from unittest import mock

import pytest
from conftest import BASE_TIME, make_trade, wallet

from polymarket_coordination.ingestor.models import InvalidWalletAddressError
from polymarket_coordination.storage.trade_store import TradeStore, WalletFingerprint


class TestAddTrades:
    def test_indexes_by_wallet_and_market(self) -> None:
        store = TradeStore()
        report = store.add_trades(
            [
                make_trade("t1", wallet(1), "m1", seconds=0),
                make_trade("t2", wallet(1), "m2", seconds=10),
                make_trade("t3", wallet(2), "m1", seconds=5),
            ]
        )

        assert report.accepted == 3
        assert report.wallets == frozenset({wallet(1), wallet(2)})
        assert report.markets == frozenset({"m1", "m2"})
        assert store.trade_count == 3
        assert store.wallets() == [wallet(1), wallet(2)]
        assert [t.trade_id for t in store.trades_for_market("m1")] == ["t1", "t3"]
        assert store.markets_for_wallet(wallet(1)) == frozenset({"m1", "m2"})
        assert store.wallets_for_market("m1") == frozenset({wallet(1), wallet(2)})

    def test_rejects_invalid_and_keeps_rest(self, caplog: pytest.LogCaptureFixture) -> None:
        store = TradeStore()
        report = store.add_trades(
            [
                make_trade("ok", wallet(1), "m1"),
                make_trade("zero", wallet(1), "m1", size_usd=0.0),
                {
                    "trade_id": "bad-wallet",
                    "wallet_address": "0x12",
                    "market_id": "m1",
                    "side": "BUY",
                    "size_usd": 10,
                    "timestamp": 1709294400,
                },
            ]
        )

        assert report.accepted == 1
        assert report.rejected == 2
        assert len(report.errors) == 2
        assert store.trade_count == 1
        assert "Rejected trade" in caplog.text

    def test_drops_duplicate_ids(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1")])
        report = store.add_trades([make_trade("t1", wallet(1), "m1"), make_trade("t2", wallet(1), "m1", seconds=1)])

        assert report.accepted == 1
        assert report.duplicates == 1
        assert store.trade_count == 2

    def test_accepts_dict_records(self) -> None:
        store = TradeStore()
        report = store.add_trades(
            [
                {
                    "tradeId": "d1",
                    "walletAddress": "0x" + "AA" * 20,
                    "marketId": "m1",
                    "side": "buy",
                    "sizeUsd": 12.5,
                    "timestamp": "2024-03-01T12:00:00Z",
                }
            ]
        )
        assert report.accepted == 1
        assert store.wallets() == ["0x" + "aa" * 20]

    def test_out_of_order_batches_stay_sorted(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("late", wallet(1), "m1", seconds=100)])
        store.add_trades([make_trade("early", wallet(1), "m1", seconds=50), make_trade("last", wallet(1), "m1", seconds=200)])

        assert [t.trade_id for t in store.trades_for_wallet(wallet(1))] == ["early", "late", "last"]

    @pytest.mark.parametrize("timestamp", [1e20, -1e20, float("nan"), float("inf"), "1e30"])
    def test_unrepresentable_timestamp_rejects_only_that_record(self, timestamp: object) -> None:
        store = TradeStore()
        record = {
            "trade_id": "bad-ts",
            "wallet_address": wallet(2),
            "market_id": "m1",
            "side": "BUY",
            "size_usd": 10,
            "timestamp": timestamp,
        }

        report = store.add_trades([make_trade("a", wallet(1), "m1"), record, make_trade("b", wallet(1), "m1", seconds=1)])

        assert report.accepted == 2
        assert report.rejected == 1
        assert "timestamp" in report.errors[0]
        assert store.wallets() == [wallet(1)]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"size_usd": "oops"},
            {"size_usd": None},
            {"size_usd": float("inf")},
            {"price": "0.5"},
            {"timestamp": 1709294400},
            {"trade_id": 7},
        ],
    )
    def test_mistyped_trade_rejects_only_that_record(self, overrides: dict[str, object]) -> None:
        store = TradeStore()
        bad = replace(make_trade("bad", wallet(2), "m1"), **overrides)

        report = store.add_trades([make_trade("a", wallet(1), "m1"), bad, make_trade("b", wallet(1), "m1", seconds=1)])

        assert report.accepted == 2
        assert report.rejected == 1
        assert [t.trade_id for t in store.trades_for_market("m1")] == ["a", "b"]

    def test_unsupported_record_is_rejected(self) -> None:
        store = TradeStore()

        report = store.add_trades([None, make_trade("a", wallet(1), "m1")])  # type: ignore[list-item]

        assert report.accepted == 1
        assert report.rejected == 1


class TestWindowQueries:
    @pytest.fixture
    def store(self) -> TradeStore:
        store = TradeStore()
        store.add_trades([make_trade(f"t{i}", wallet(1), "m1", seconds=i * 60) for i in range(10)])
        return store

    def test_bounds_are_inclusive(self, store: TradeStore) -> None:
        trades = store.trades_for_wallet(
            wallet(1),
            start=BASE_TIME + timedelta(seconds=120),
            end=BASE_TIME + timedelta(seconds=240),
        )
        assert [t.trade_id for t in trades] == ["t2", "t3", "t4"]

    def test_open_ended_windows(self, store: TradeStore) -> None:
        assert len(store.trades_for_wallet(wallet(1), start=BASE_TIME + timedelta(seconds=480))) == 2
        assert len(store.trades_for_wallet(wallet(1), end=BASE_TIME)) == 1

    def test_empty_window(self, store: TradeStore) -> None:
        assert store.trades_for_wallet(wallet(1), start=BASE_TIME + timedelta(days=1)) == ()
        assert store.trades_for_wallet(wallet(99)) == ()
        assert store.trades_for_market("unknown") == ()

    def test_naive_bounds_rejected(self, store: TradeStore) -> None:
        with pytest.raises(ValueError):
            store.trades_for_wallet(wallet(1), start=datetime(2024, 3, 1))

    def test_address_is_normalized(self, store: TradeStore) -> None:
        assert len(store.trades_for_wallet(f"  {wallet(1)}  ")) == 10

    def test_malformed_address_raises(self, store: TradeStore) -> None:
        with pytest.raises(InvalidWalletAddressError):
            store.trades_for_wallet("nope")


class TestSnapshots:
    def test_snapshot_is_not_affected_by_later_writes(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1")])
        snapshot = store.snapshot()

        store.add_trades([make_trade("t2", wallet(1), "m1", seconds=5)])

        assert len(snapshot.trades_for_wallet(wallet(1))) == 1
        assert len(store.trades_for_wallet(wallet(1))) == 2

    def test_snapshot_is_reused_until_next_write(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1")])
        first = store.snapshot()

        assert store.snapshot() is first
        store.add_trades([make_trade("t2", wallet(1), "m1", seconds=1)])
        assert store.snapshot() is not first

    def test_streamed_trades_keep_earlier_snapshots_stable(self) -> None:
        store = TradeStore()
        snapshots = []
        for i in range(200):
            store.add_trades([make_trade(f"t{i}", wallet(i % 3), "m1", seconds=i)])
            if i % 50 == 0:
                snapshots.append((i + 1, store.snapshot()))

        assert [t.trade_id for t in store.trades_for_market("m1")] == [f"t{i}" for i in range(200)]
        for count, snapshot in snapshots:
            trades = snapshot.trades_for_market("m1")
            assert [t.trade_id for t in trades] == [f"t{i}" for i in range(count)]
            assert snapshot.trade_count == count
            late = snapshot.trades_for_market("m1", start=BASE_TIME + timedelta(seconds=count - 1))
            assert [t.trade_id for t in late] == [f"t{count - 1}"]

    def test_in_order_streaming_never_resorts(self) -> None:
        store = TradeStore()
        with mock.patch.object(heapq, "merge", wraps=heapq.merge) as merge:
            for i in range(100):
                store.add_trades([make_trade(f"t{i}", wallet(1), "m1", seconds=i)])
            assert merge.call_count == 0

            store.add_trades([make_trade("early", wallet(1), "m1", seconds=-1)])

        assert merge.call_count == 2
        assert store.trades_for_wallet(wallet(1))[0].trade_id == "early"

    def test_out_of_order_insert_leaves_snapshot_intact(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade(f"t{i}", wallet(1), "m1", seconds=i * 10) for i in range(5)])
        snapshot = store.snapshot()

        store.add_trades([make_trade("between", wallet(1), "m1", seconds=15)])

        assert [t.trade_id for t in snapshot.trades_for_wallet(wallet(1))] == ["t0", "t1", "t2", "t3", "t4"]
        assert [t.trade_id for t in store.trades_for_wallet(wallet(1))] == ["t0", "t1", "between", "t2", "t3", "t4"]
        assert snapshot.fingerprint(wallet(1)).trade_count == 5

    def test_clear_wallet_leaves_snapshot_intact(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1"), make_trade("t2", wallet(2), "m1", seconds=1)])
        snapshot = store.snapshot()

        store.clear_wallet(wallet(1))

        assert snapshot.wallets_for_market("m1") == frozenset({wallet(1), wallet(2)})
        assert store.wallets_for_market("m1") == frozenset({wallet(2)})

    def test_fingerprint_tracks_count_and_latest(self) -> None:
        store = TradeStore()
        assert store.fingerprint(wallet(1)) == WalletFingerprint(trade_count=0, latest_timestamp=None)

        store.add_trades([make_trade("t1", wallet(1), "m1", seconds=0), make_trade("t2", wallet(1), "m1", seconds=30)])

        fp = store.fingerprint(wallet(1))
        assert fp.trade_count == 2
        assert fp.latest_timestamp == (BASE_TIME + timedelta(seconds=30)).timestamp()


class TestClear:
    def test_clear_wallet(self) -> None:
        store = TradeStore()
        store.add_trades(
            [
                make_trade("t1", wallet(1), "m1"),
                make_trade("t2", wallet(2), "m1", seconds=1),
                make_trade("t3", wallet(1), "m2", seconds=2),
            ]
        )

        assert store.clear_wallet(wallet(1)) == 2
        assert store.wallets() == [wallet(2)]
        assert store.wallets_for_market("m1") == frozenset({wallet(2)})
        assert store.trades_for_market("m2") == ()
        assert store.trade_count == 1
        assert store.clear_wallet(wallet(1)) == 0

    def test_cleared_ids_can_be_ingested_again(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1")])
        store.clear_wallet(wallet(1))

        assert store.add_trades([make_trade("t1", wallet(1), "m1")]).accepted == 1

    def test_clear(self) -> None:
        store = TradeStore()
        store.add_trades([make_trade("t1", wallet(1), "m1")])
        store.clear()

        assert store.trade_count == 0
        assert store.wallets() == []
        assert store.add_trades([make_trade("t1", wallet(1), "m1")]).accepted == 1
