"""Trade records supplied by the ingestion feed."""

from polymarket_coordination.ingestor.models import (
    InvalidWalletAddressError,
    Trade,
    TradeOutcome,
    TradeValidationError,
    normalize_address,
)

__all__ = [
    "InvalidWalletAddressError",
    "Trade",
    "TradeOutcome",
    "TradeValidationError",
    "normalize_address",
]
