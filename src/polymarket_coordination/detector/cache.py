"""Result cache for pairwise and per-wallet analysis results.

Keys carry a content fingerprint (trade count + latest timestamp per wallet),
so a wallet that gains trades stops matching its old entries even if nobody
calls ``invalidate``. The fingerprint is an approximation: a change that keeps
both count and latest timestamp identical is not detected by the key alone.
The detector therefore also invalidates explicitly on ingest, and callers can
pass ``bypass_cache`` to force a fresh computation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from polymarket_coordination.detector.models import CacheStats
from polymarket_coordination.storage.trade_store import TradeStoreSnapshot, WalletFingerprint

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 300.0  # 5 minutes
DEFAULT_CACHE_MAX_ENTRIES = 50_000


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached computation."""

    kind: str
    wallets: tuple[str, ...]
    start: float | None
    end: float | None
    markets: tuple[str, ...]
    fingerprints: tuple[WalletFingerprint, ...]
    config_version: int

    @classmethod
    def build(
        cls,
        kind: str,
        wallets: Iterable[str],
        snapshot: TradeStoreSnapshot,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        market_filter: Iterable[str] | None = None,
        config_version: int = 0,
    ) -> CacheKey:
        ordered = tuple(wallets)
        return cls(
            kind=kind,
            wallets=ordered,
            start=start.timestamp() if start is not None else None,
            end=end.timestamp() if end is not None else None,
            markets=tuple(sorted(set(market_filter))) if market_filter else (),
            fingerprints=tuple(snapshot.fingerprint(w) for w in ordered),
            config_version=config_version,
        )


class ResultCache:
    """Thread-safe TTL + LRU cache with per-wallet invalidation.

    Example:
        ```python
        cache = ResultCache(ttl_seconds=300)
        result = cache.get(key)
        if result is None:
            result = compute()
            cache.put(key, result)
        ```
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_CACHE_MAX_ENTRIES,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[CacheKey, tuple[Any, float]] = OrderedDict()
        self._by_wallet: dict[str, set[CacheKey]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> Any | None:
        """Return the cached value, or None on a miss or expired entry."""
        if not self._enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._remove(key)
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return value

    def put(self, key: CacheKey, value: Any) -> None:
        if not self._enabled:
            return
        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._entries[key] = (value, self._clock() + self._ttl)
            for wallet in key.wallets:
                self._by_wallet.setdefault(wallet, set()).add(key)
            while len(self._entries) > self._max_entries:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self._evictions += 1

    def invalidate(self, wallet: str) -> int:
        """Drop every entry whose key references ``wallet``."""
        with self._lock:
            keys = self._by_wallet.pop(wallet, set())
            for key in keys:
                self._remove(key)
            self._invalidations += len(keys)
        if keys:
            logger.debug("Invalidated %d cache entries for %s", len(keys), wallet)
        return len(keys)

    def invalidate_many(self, wallets: Iterable[str]) -> int:
        return sum(self.invalidate(w) for w in wallets)

    def prune(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_value, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                self._remove(key)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_wallet.clear()

    @property
    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                invalidations=self._invalidations,
            )

    def _remove(self, key: CacheKey) -> None:
        # Caller holds the lock.
        self._entries.pop(key, None)
        for wallet in key.wallets:
            keys = self._by_wallet.get(wallet)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._by_wallet[wallet]
