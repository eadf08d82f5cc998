"""Data models for trade records supplied by the ingestion feed."""

from __future__ import annotations

import contextlib
import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


class TradeValidationError(ValueError):
    """Raised when a trade record violates the trade invariants."""


class InvalidWalletAddressError(TradeValidationError):
    """Raised when a wallet address does not have the expected shape."""


class TradeOutcome(str, Enum):
    """Resolution of the position a trade opened."""

    WIN = "WIN"
    LOSS = "LOSS"
    PENDING = "PENDING"


def normalize_address(address: str) -> str:
    """Lower-case a wallet address and check its basic shape.

    Checksums are the ingestion collaborator's concern; only ``0x`` followed by
    40 hex characters is required here.

    Raises:
        InvalidWalletAddressError: If the address is not a 20-byte hex string.
    """
    if not isinstance(address, str):
        raise InvalidWalletAddressError(f"Invalid wallet address: {address!r}")
    normalized = address.strip().lower()
    if not _ADDRESS_RE.match(normalized):
        raise InvalidWalletAddressError(f"Invalid wallet address: {address!r}")
    return normalized


def _parse_timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo is not None else raw.replace(tzinfo=UTC)
    if isinstance(raw, bool):
        raise TradeValidationError(f"Invalid trade timestamp: {raw!r}")
    if isinstance(raw, (int, float)):
        try:
            ts_f = float(raw)
            if not math.isfinite(ts_f):
                raise ValueError("not a finite number")
            if ts_f > 1e12:
                ts_f /= 1000.0
            return datetime.fromtimestamp(ts_f, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise TradeValidationError(f"Invalid trade timestamp: {raw!r}") from e
    if isinstance(raw, str):
        with contextlib.suppress(ValueError):
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
        with contextlib.suppress(ValueError):
            return _parse_timestamp(float(raw))
    raise TradeValidationError(f"Invalid trade timestamp: {raw!r}")


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_outcome(data: dict[str, Any]) -> TradeOutcome | None:
    raw = data.get("outcome")
    if raw is None:
        is_win = data.get("is_win")
        if is_win is None:
            return None
        return TradeOutcome.WIN if bool(is_win) else TradeOutcome.LOSS
    try:
        return TradeOutcome(str(raw).upper())
    except ValueError as e:
        raise TradeValidationError(f"Invalid trade outcome: {raw!r}") from e


@dataclass(frozen=True)
class Trade:
    """A single executed trade attributed to a wallet.

    Trades are immutable. The ingestion feed creates them; once submitted to
    the trade store they are owned by it and only ever superseded by newer
    trades carrying new ids.
    """

    trade_id: str
    wallet_address: str
    market_id: str
    side: Literal["BUY", "SELL"]
    size_usd: float
    timestamp: datetime
    price: float | None = None
    outcome: TradeOutcome | None = None
    market_category: str | None = None

    @property
    def epoch_seconds(self) -> float:
        return self.timestamp.timestamp()

    @property
    def is_resolved(self) -> bool:
        return self.outcome in (TradeOutcome.WIN, TradeOutcome.LOSS)

    def validate(self) -> Trade:
        """Check the invariants and return a copy with a normalized wallet.

        Raises:
            TradeValidationError: If size, price, side or timestamp is invalid.
            InvalidWalletAddressError: If the wallet address is malformed.
        """
        wallet = normalize_address(self.wallet_address)
        if not isinstance(self.trade_id, str) or not self.trade_id:
            raise TradeValidationError("trade_id must be non-empty")
        if not isinstance(self.market_id, str) or not self.market_id:
            raise TradeValidationError(f"Trade {self.trade_id}: market_id must be non-empty")
        if self.side not in ("BUY", "SELL"):
            raise TradeValidationError(f"Trade {self.trade_id}: side must be BUY or SELL (got {self.side!r})")
        if not _is_number(self.size_usd) or not 0 < self.size_usd < math.inf:
            raise TradeValidationError(f"Trade {self.trade_id}: size_usd must be > 0 (got {self.size_usd!r})")
        if self.price is not None and (not _is_number(self.price) or not 0.0 <= self.price <= 1.0):
            raise TradeValidationError(f"Trade {self.trade_id}: price must be within [0, 1] (got {self.price!r})")
        if not isinstance(self.timestamp, datetime):
            raise TradeValidationError(f"Trade {self.trade_id}: timestamp must be a datetime (got {self.timestamp!r})")
        if self.timestamp.tzinfo is None:
            raise TradeValidationError(f"Trade {self.trade_id}: timestamp must be timezone-aware")
        if wallet == self.wallet_address:
            return self
        return Trade(
            trade_id=self.trade_id,
            wallet_address=wallet,
            market_id=self.market_id,
            side=self.side,
            size_usd=self.size_usd,
            timestamp=self.timestamp,
            price=self.price,
            outcome=self.outcome,
            market_category=self.market_category,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Trade:
        """Create a Trade from an ingestion-feed dictionary.

        Accepts camelCase or snake_case keys, epoch seconds/milliseconds or
        ISO-8601 timestamps, and a legacy ``is_win`` flag in place of
        ``outcome``.

        Raises:
            TradeValidationError: If the record is missing fields or invalid.
        """
        try:
            trade_id = str(data.get("trade_id", data.get("tradeId", "")))
            wallet = str(data.get("wallet_address", data.get("walletAddress", "")))
            market_id = str(data.get("market_id", data.get("marketId", "")))
            side = str(data.get("side", "")).upper()
            size_usd = float(data.get("size_usd", data.get("sizeUsd", 0.0)))
            raw_price = data.get("price")
            price = float(raw_price) if raw_price is not None else None
        except (TypeError, ValueError) as e:
            raise TradeValidationError(f"Malformed trade record: {e}") from e

        category = data.get("market_category", data.get("marketCategory"))
        trade = cls(
            trade_id=trade_id,
            wallet_address=wallet,
            market_id=market_id,
            side=side,  # type: ignore[arg-type]
            size_usd=size_usd,
            timestamp=_parse_timestamp(data.get("timestamp")),
            price=price,
            outcome=_parse_outcome(data),
            market_category=str(category) if category is not None else None,
        )
        return trade.validate()

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for event publishing."""
        return {
            "trade_id": self.trade_id,
            "wallet_address": self.wallet_address,
            "market_id": self.market_id,
            "side": self.side,
            "size_usd": self.size_usd,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value if self.outcome else None,
            "market_category": self.market_category,
        }
