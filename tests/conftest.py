"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from polymarket_coordination.config import CoordinationSettings, clear_settings_cache
from polymarket_coordination.ingestor.models import Trade, TradeOutcome

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def wallet(n: int) -> str:
    return f"0x{n:040x}"


def make_trade(
    trade_id: str,
    wallet_address: str,
    market_id: str,
    *,
    seconds: float = 0.0,
    side: str = "BUY",
    size_usd: float = 1000.0,
    outcome: TradeOutcome | None = None,
) -> Trade:
    return Trade(
        trade_id=trade_id,
        wallet_address=wallet_address,
        market_id=market_id,
        side=side,  # type: ignore[arg-type]
        size_usd=size_usd,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
        outcome=outcome,
    )


def mirror_scenario(wallet_count: int = 3, rounds: int = 15) -> list[Trade]:
    """Wallets buying the same market within half a second, once an hour."""
    trades: list[Trade] = []
    for r in range(rounds):
        market = f"market-{r % 5}"
        for w in range(wallet_count):
            trades.append(
                make_trade(
                    f"mirror-{r}-{w}",
                    wallet(100 + w),
                    market,
                    seconds=r * 3600 + w * 0.2,
                    size_usd=1000.0 + 10.0 * w,
                )
            )
    return trades


def wash_scenario(rounds: int = 20) -> list[Trade]:
    """Two wallets taking opposite sides of identical trades in one market."""
    trades: list[Trade] = []
    for r in range(rounds):
        t = r * 600
        trades.append(make_trade(f"wash-a-{r}", wallet(200), "market-wash", seconds=t, side="BUY", size_usd=500.0))
        trades.append(make_trade(f"wash-b-{r}", wallet(201), "market-wash", seconds=t + 1, side="SELL", size_usd=500.0))
    return trades


def copy_scenario(trades_count: int = 15, lag_seconds: float = 30.0) -> list[Trade]:
    """A follower repeating a leader's trades ``lag_seconds`` later across 5 markets."""
    trades: list[Trade] = []
    for i in range(trades_count):
        t = i * 600
        market = f"market-copy-{i % 5}"
        side = "BUY" if i % 3 else "SELL"
        size = 250.0 + 50.0 * i
        trades.append(make_trade(f"lead-{i}", wallet(300), market, seconds=t, side=side, size_usd=size))
        trades.append(make_trade(f"follow-{i}", wallet(301), market, seconds=t + lag_seconds, side=side, size_usd=size))
    return trades


def independent_scenario() -> list[Trade]:
    """Two unrelated wallets that both trade one popular market, hours apart."""
    a, b = wallet(400), wallet(401)
    return [
        make_trade("ind-a-0", a, "market-popular", seconds=0, side="BUY", size_usd=120.0, outcome=TradeOutcome.WIN),
        make_trade("ind-a-1", a, "market-x1", seconds=7200, side="SELL", size_usd=80.0, outcome=TradeOutcome.WIN),
        make_trade("ind-a-2", a, "market-x2", seconds=14400, side="BUY", size_usd=45.0, outcome=TradeOutcome.WIN),
        make_trade("ind-b-0", b, "market-popular", seconds=10800, side="SELL", size_usd=4000.0, outcome=TradeOutcome.LOSS),
        make_trade("ind-b-1", b, "market-y1", seconds=21600, side="BUY", size_usd=2500.0, outcome=TradeOutcome.LOSS),
        make_trade("ind-b-2", b, "market-y2", seconds=28800, side="SELL", size_usd=900.0, outcome=TradeOutcome.LOSS),
    ]


@pytest.fixture
def settings() -> CoordinationSettings:
    """Default detector settings."""
    return CoordinationSettings()


@pytest.fixture
def sample_market_id() -> str:
    """Sample market ID for testing."""
    return "0x1234567890abcdef1234567890abcdef12345678"


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    clear_settings_cache()
    yield
    clear_settings_cache()
