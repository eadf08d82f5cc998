"""Storage layer - In-memory trade index."""

from polymarket_coordination.storage.trade_store import (
    IngestReport,
    TradeStore,
    TradeStoreSnapshot,
    WalletFingerprint,
)

__all__ = [
    "IngestReport",
    "TradeStore",
    "TradeStoreSnapshot",
    "WalletFingerprint",
]
