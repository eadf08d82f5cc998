"""In-memory trade index keyed by wallet and by market.

Writers are serialized by a lock. Each per-wallet / per-market series is
append-only: positions already handed to a reader are never rewritten, and an
out-of-order insert or a wallet purge builds a replacement series instead of
editing the old one. A snapshot pins the length of every series it covers, so
readers keep a consistent view for as long as they hold it and an analysis
started before an ingest never sees half of a batch.
"""

from __future__ import annotations

import heapq
import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np

from polymarket_coordination.ingestor.models import (
    Trade,
    TradeValidationError,
    normalize_address,
)

logger = logging.getLogger(__name__)

_EMPTY: tuple[Trade, ...] = ()
_MIN_CAPACITY = 8


def _sort_key(trade: Trade) -> tuple[float, str]:
    return (trade.epoch_seconds, trade.trade_id)


def _bound(ts: datetime | None, default: float) -> float:
    if ts is None:
        return default
    if ts.tzinfo is None:
        raise ValueError("time window bounds must be timezone-aware")
    return ts.timestamp()


@dataclass(frozen=True)
class WalletFingerprint:
    """Cheap content summary of a wallet's trades used to detect stale cache entries.

    Two different trade sets with the same count and the same latest timestamp
    share a fingerprint; explicit invalidation on ingest covers that case.
    """

    trade_count: int
    latest_timestamp: float | None


class _Series:
    """Timestamp-ordered trades plus a parallel epoch-seconds buffer.

    The buffer grows by doubling. Only the writer holding the store lock calls
    ``extend``, and it fills the buffer before the trades list so a published
    length never points past written timestamps.
    """

    __slots__ = ("trades", "_timestamps")

    def __init__(self, trades: list[Trade] | None = None) -> None:
        self.trades: list[Trade] = trades if trades is not None else []
        n = len(self.trades)
        self._timestamps = np.empty(max(n, _MIN_CAPACITY), dtype=float)
        self._timestamps[:n] = np.fromiter((t.epoch_seconds for t in self.trades), dtype=float, count=n)

    def __len__(self) -> int:
        return len(self.trades)

    def timestamps(self, length: int) -> np.ndarray:
        return self._timestamps[:length]

    def accepts(self, trade: Trade) -> bool:
        return not self.trades or _sort_key(trade) >= _sort_key(self.trades[-1])

    def extend(self, new_trades: list[Trade]) -> None:
        n = len(self.trades)
        needed = n + len(new_trades)
        if needed > len(self._timestamps):
            grown = np.empty(max(needed, 2 * len(self._timestamps)), dtype=float)
            grown[:n] = self._timestamps[:n]
            self._timestamps = grown
        self._timestamps[n:needed] = [t.epoch_seconds for t in new_trades]
        self.trades.extend(new_trades)


@dataclass(frozen=True)
class _View:
    """The first ``length`` trades of a series as of one snapshot."""

    series: _Series
    length: int

    def window(self, start: datetime | None, end: datetime | None) -> tuple[Trade, ...]:
        if start is None and end is None:
            return tuple(self.series.trades[: self.length])
        timestamps = self.series.timestamps(self.length)
        lo = int(np.searchsorted(timestamps, _bound(start, -np.inf), side="left"))
        hi = int(np.searchsorted(timestamps, _bound(end, np.inf), side="right"))
        if hi <= lo:
            return _EMPTY
        return tuple(self.series.trades[lo:hi])

    @property
    def latest_timestamp(self) -> float:
        return float(self.series.timestamps(self.length)[-1])


_EMPTY_VIEW = _View(_Series(), 0)


@dataclass(frozen=True)
class IngestReport:
    """Outcome of an ``add_trades`` call."""

    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0
    wallets: frozenset[str] = field(default_factory=frozenset)
    markets: frozenset[str] = field(default_factory=frozenset)
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "wallets": sorted(self.wallets),
            "markets": sorted(self.markets),
            "errors": list(self.errors),
        }


class TradeStoreSnapshot:
    """Immutable point-in-time view of the trade store.

    Wallet addresses passed to a snapshot are expected to be normalized
    already; the owning TradeStore normalizes on its public methods.
    """

    def __init__(
        self,
        by_wallet: Mapping[str, _View] | None = None,
        by_market: Mapping[str, _View] | None = None,
        trade_count: int = 0,
    ) -> None:
        self._by_wallet: Mapping[str, _View] = by_wallet or {}
        self._by_market: Mapping[str, _View] = by_market or {}
        self.trade_count = trade_count

    def wallets(self) -> list[str]:
        """Tracked wallets in sorted order."""
        return sorted(self._by_wallet)

    def markets(self) -> list[str]:
        return sorted(self._by_market)

    def has_wallet(self, address: str) -> bool:
        return address in self._by_wallet

    def trades_for_wallet(
        self,
        address: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Trade, ...]:
        return self._by_wallet.get(address, _EMPTY_VIEW).window(start, end)

    def trades_for_market(
        self,
        market_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Trade, ...]:
        return self._by_market.get(market_id, _EMPTY_VIEW).window(start, end)

    def markets_for_wallet(
        self,
        address: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> frozenset[str]:
        return frozenset(t.market_id for t in self.trades_for_wallet(address, start, end))

    def wallets_for_market(
        self,
        market_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> frozenset[str]:
        return frozenset(t.wallet_address for t in self.trades_for_market(market_id, start, end))

    def fingerprint(self, address: str) -> WalletFingerprint:
        view = self._by_wallet.get(address)
        if view is None or not view.length:
            return WalletFingerprint(trade_count=0, latest_timestamp=None)
        return WalletFingerprint(trade_count=view.length, latest_timestamp=view.latest_timestamp)


class TradeStore:
    """Thread-safe in-memory index of trades.

    Ingestion costs amortized O(1) per trade while batches arrive in timestamp
    order. Snapshots are built lazily: the first ``snapshot()`` after a write
    pins the current length of every series, later calls reuse it until the
    next write.

    Example:
        ```python
        store = TradeStore()
        report = store.add_trades(trades)
        recent = store.trades_for_wallet(wallet, start=window_start)
        ```
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._trade_ids: set[str] = set()
        self._by_wallet: dict[str, _Series] = {}
        self._by_market: dict[str, _Series] = {}
        self._trade_count = 0
        self._snapshot: TradeStoreSnapshot | None = TradeStoreSnapshot()

    def snapshot(self) -> TradeStoreSnapshot:
        """Return a consistent view of everything ingested so far."""
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._lock:
            if self._snapshot is None:
                self._snapshot = TradeStoreSnapshot(
                    {wallet: _View(s, len(s)) for wallet, s in self._by_wallet.items()},
                    {market_id: _View(s, len(s)) for market_id, s in self._by_market.items()},
                    self._trade_count,
                )
            return self._snapshot

    @property
    def trade_count(self) -> int:
        return self._trade_count

    def add_trades(self, trades: Iterable[Trade | dict[str, Any]]) -> IngestReport:
        """Validate and index a batch of trades.

        Invalid records (non-positive size, malformed wallet, bad price,
        unparseable or naive timestamp) are rejected with a logged warning; the
        rest of the batch is still ingested. Duplicate trade ids are dropped.

        Returns:
            IngestReport with counts and the set of affected wallets.
        """
        valid: list[Trade] = []
        errors: list[str] = []
        rejected = 0
        for raw in trades:
            try:
                if isinstance(raw, dict):
                    trade = Trade.from_dict(raw)
                elif isinstance(raw, Trade):
                    trade = raw.validate()
                else:
                    raise TradeValidationError(f"Unsupported trade record: {raw!r}")
            except TradeValidationError as e:
                rejected += 1
                errors.append(str(e))
                logger.warning("Rejected trade: %s", e)
                continue
            valid.append(trade)

        duplicates = 0
        with self._lock:
            fresh: list[Trade] = []
            for trade in valid:
                if trade.trade_id in self._trade_ids:
                    duplicates += 1
                    continue
                self._trade_ids.add(trade.trade_id)
                fresh.append(trade)

            if fresh:
                self._index(fresh)

        if duplicates:
            logger.debug("Dropped %d duplicate trades", duplicates)

        return IngestReport(
            accepted=len(fresh),
            rejected=rejected,
            duplicates=duplicates,
            wallets=frozenset(t.wallet_address for t in fresh),
            markets=frozenset(t.market_id for t in fresh),
            errors=tuple(errors),
        )

    def _index(self, fresh: list[Trade]) -> None:
        new_by_wallet: dict[str, list[Trade]] = defaultdict(list)
        new_by_market: dict[str, list[Trade]] = defaultdict(list)
        for trade in fresh:
            new_by_wallet[trade.wallet_address].append(trade)
            new_by_market[trade.market_id].append(trade)

        for wallet, items in new_by_wallet.items():
            self._by_wallet[wallet] = _appended(self._by_wallet.get(wallet), items)
        for market_id, items in new_by_market.items():
            self._by_market[market_id] = _appended(self._by_market.get(market_id), items)

        self._trade_count += len(fresh)
        self._snapshot = None

    def clear_wallet(self, address: str) -> int:
        """Drop every trade of ``address``; returns how many were removed."""
        wallet = normalize_address(address)
        with self._lock:
            series = self._by_wallet.pop(wallet, None)
            if series is None:
                return 0

            for market_id in {t.market_id for t in series.trades}:
                remaining = [t for t in self._by_market[market_id].trades if t.wallet_address != wallet]
                if remaining:
                    self._by_market[market_id] = _Series(remaining)
                else:
                    del self._by_market[market_id]

            for trade in series.trades:
                self._trade_ids.discard(trade.trade_id)
            removed = len(series)
            self._trade_count -= removed
            self._snapshot = None
        return removed

    def clear(self) -> None:
        with self._lock:
            self._trade_ids.clear()
            self._by_wallet = {}
            self._by_market = {}
            self._trade_count = 0
            self._snapshot = TradeStoreSnapshot()

    def wallets(self) -> list[str]:
        return self.snapshot().wallets()

    def trades_for_wallet(
        self,
        address: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Trade, ...]:
        """Trades of ``address`` with ``start <= timestamp <= end``, oldest first."""
        return self.snapshot().trades_for_wallet(normalize_address(address), start, end)

    def trades_for_market(
        self,
        market_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> tuple[Trade, ...]:
        """Trades in ``market_id`` with ``start <= timestamp <= end``, oldest first."""
        return self.snapshot().trades_for_market(market_id, start, end)

    def markets_for_wallet(
        self,
        address: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> frozenset[str]:
        return self.snapshot().markets_for_wallet(normalize_address(address), start, end)

    def wallets_for_market(
        self,
        market_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> frozenset[str]:
        return self.snapshot().wallets_for_market(market_id, start, end)

    def fingerprint(self, address: str) -> WalletFingerprint:
        return self.snapshot().fingerprint(normalize_address(address))


def _appended(series: _Series | None, items: list[Trade]) -> _Series:
    """Add ``items`` to ``series`` in place, or return a re-sorted replacement."""
    items.sort(key=_sort_key)
    if series is None:
        return _Series(items)
    if series.accepts(items[0]):
        series.extend(items)
        return series
    return _Series(list(heapq.merge(series.trades, items, key=_sort_key)))
