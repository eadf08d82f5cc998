"""Configuration management service with Pydantic Settings.

This module provides centralized configuration for the coordinated-trading
detection engine. Every numeric threshold the engine uses (timing windows,
similarity cut points, score weights, risk-level boundaries) lives here so
the engine stays tunable without code changes.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

# Allowed drift when checking that score weights sum to 1.0.
WEIGHT_SUM_TOLERANCE = 1e-6


class ConfigurationError(ValueError):
    """Raised when a threshold or weight configuration is rejected."""


class ScoreWeights(BaseModel):
    """Weights of each pairwise signal in the composite similarity score."""

    model_config = {"frozen": True}

    timing_correlation: float = Field(default=0.25, ge=0.0, le=1.0)
    market_overlap: float = Field(default=0.20, ge=0.0, le=1.0)
    size_similarity: float = Field(default=0.15, ge=0.0, le=1.0)
    direction_alignment: float = Field(default=0.25, ge=0.0, le=1.0)
    win_rate_similarity: float = Field(default=0.15, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_sum(self) -> ScoreWeights:
        """Weights must sum to 1.0 so the composite stays within 0-100."""
        total = (
            self.timing_correlation
            + self.market_overlap
            + self.size_similarity
            + self.direction_alignment
            + self.win_rate_similarity
        )
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"score weights must sum to 1.0 (got {total:.6f})")
        return self


class RiskThresholds(BaseModel):
    """Inclusive lower bounds (coordination score) of each risk tier."""

    model_config = {"frozen": True}

    low: float = Field(default=40.0, gt=0.0, le=100.0)
    medium: float = Field(default=60.0, gt=0.0, le=100.0)
    high: float = Field(default=75.0, gt=0.0, le=100.0)
    critical: float = Field(default=90.0, gt=0.0, le=100.0)

    @model_validator(mode="after")
    def validate_order(self) -> RiskThresholds:
        if not (self.low < self.medium < self.high < self.critical):
            raise ValueError("risk thresholds must be strictly increasing: low < medium < high < critical")
        return self


class ConfidenceThresholds(BaseModel):
    """Inclusive lower bounds (coordination score) of each confidence tier."""

    model_config = {"frozen": True}

    low: float = Field(default=35.0, gt=0.0, le=100.0)
    medium: float = Field(default=50.0, gt=0.0, le=100.0)
    high: float = Field(default=70.0, gt=0.0, le=100.0)
    very_high: float = Field(default=85.0, gt=0.0, le=100.0)

    @model_validator(mode="after")
    def validate_order(self) -> ConfidenceThresholds:
        if not (self.low < self.medium < self.high < self.very_high):
            raise ValueError("confidence thresholds must be strictly increasing")
        return self


class CoordinationSettings(BaseSettings):
    """Coordinated-trading detector configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COORDINATION_",
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    simultaneous_window_seconds: float = Field(
        default=60.0,
        alias="COORDINATION_SIMULTANEOUS_WINDOW_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Max |dt| between two trades in the same market to count as a matched pair",
    )
    mirror_max_lag_seconds: float = Field(
        default=5.0,
        alias="COORDINATION_MIRROR_MAX_LAG_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Mean matched-pair lag at or below which aligned trading is 'simultaneous' rather than copying",
    )
    min_similarity_score: float = Field(
        default=70.0,
        alias="COORDINATION_MIN_SIMILARITY_SCORE",
        ge=0.0,
        le=100.0,
        description="Composite score needed (with a strong signal) to call a pair coordinated",
    )
    min_market_overlap: float = Field(
        default=30.0,
        alias="COORDINATION_MIN_MARKET_OVERLAP",
        ge=0.0,
        le=100.0,
        description="Market overlap (%) that raises the MARKET_OVERLAP flag",
    )
    strong_market_overlap: float = Field(
        default=50.0,
        alias="COORDINATION_STRONG_MARKET_OVERLAP",
        ge=0.0,
        le=100.0,
        description="Market overlap (%) required before any signal counts as strong",
    )
    strong_timing_correlation: float = Field(
        default=0.7,
        alias="COORDINATION_STRONG_TIMING_CORRELATION",
        ge=0.0,
        le=1.0,
        description="Timing correlation treated as a strong coordination signal",
    )
    extreme_direction_alignment: float = Field(
        default=0.9,
        alias="COORDINATION_EXTREME_DIRECTION_ALIGNMENT",
        ge=0.5,
        le=1.0,
        description="Alignment >= x (mirror) or <= 1-x (wash) is a strong signal",
    )
    extreme_size_similarity: float = Field(
        default=0.9,
        alias="COORDINATION_EXTREME_SIZE_SIMILARITY",
        ge=0.0,
        le=1.0,
        description="Size similarity treated as a strong coordination signal",
    )
    min_simultaneous_trades: int = Field(
        default=3,
        alias="COORDINATION_MIN_SIMULTANEOUS_TRADES",
        ge=1,
        le=10_000,
        description="Matched pairs needed before direction/size extremes count as strong",
    )
    min_trades_per_wallet: int = Field(
        default=1,
        alias="COORDINATION_MIN_TRADES_PER_WALLET",
        ge=1,
        le=10_000,
        description="Wallets with fewer trades in range are not compared",
    )
    size_similarity_tolerance: float = Field(
        default=0.3,
        alias="COORDINATION_SIZE_SIMILARITY_TOLERANCE",
        ge=0.0,
        le=1.0,
        description="SIZE_SIMILARITY fires when size similarity > 1 - tolerance",
    )
    win_rate_similarity_tolerance: float = Field(
        default=0.15,
        alias="COORDINATION_WIN_RATE_SIMILARITY_TOLERANCE",
        ge=0.0,
        le=1.0,
        description="WIN_RATE_SIMILARITY fires when win-rate similarity > 1 - tolerance",
    )
    min_group_size: int = Field(
        default=2,
        alias="COORDINATION_MIN_GROUP_SIZE",
        ge=2,
        le=1000,
        description="Smallest connected component reported as a group",
    )
    max_group_size: int = Field(
        default=50,
        alias="COORDINATION_MAX_GROUP_SIZE",
        ge=2,
        le=10_000,
        description="Largest group reported; bigger components keep their best-scoring members",
    )
    max_pairs_per_wallet: int = Field(
        default=100,
        alias="COORDINATION_MAX_PAIRS_PER_WALLET",
        ge=1,
        le=100_000,
        description="Cap on candidate counterparts per focal wallet",
    )
    max_groups: int = Field(
        default=500,
        alias="COORDINATION_MAX_GROUPS",
        ge=1,
        le=1_000_000,
        description="Detected groups retained in the in-process registry",
    )
    cache_enabled: bool = Field(
        default=True,
        alias="COORDINATION_CACHE_ENABLED",
        description="Memoize pair and analysis results",
    )
    cache_ttl_seconds: float = Field(
        default=300.0,
        alias="COORDINATION_CACHE_TTL_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="Lifetime of a cached result",
    )
    cache_max_entries: int = Field(
        default=50_000,
        alias="COORDINATION_CACHE_MAX_ENTRIES",
        ge=1,
        le=10_000_000,
        description="LRU bound on cached results",
    )
    batch_max_workers: int = Field(
        default=4,
        alias="COORDINATION_BATCH_MAX_WORKERS",
        ge=1,
        le=256,
        description="Worker threads used for batch pairwise scoring (1 = inline)",
    )
    batch_deadline_seconds: float | None = Field(
        default=None,
        alias="COORDINATION_BATCH_DEADLINE_SECONDS",
        ge=0.0,
        description="Optional time budget for a batch run; partial results are returned when exceeded",
    )

    score_weights: ScoreWeights = Field(
        default_factory=ScoreWeights,
        alias="COORDINATION_SCORE_WEIGHTS",
    )
    risk_thresholds: RiskThresholds = Field(
        default_factory=RiskThresholds,
        alias="COORDINATION_RISK_THRESHOLDS",
    )
    confidence_thresholds: ConfidenceThresholds = Field(
        default_factory=ConfidenceThresholds,
        alias="COORDINATION_CONFIDENCE_THRESHOLDS",
    )

    @model_validator(mode="after")
    def validate_relations(self) -> CoordinationSettings:
        if self.max_group_size < self.min_group_size:
            raise ValueError("COORDINATION_MAX_GROUP_SIZE must be >= COORDINATION_MIN_GROUP_SIZE")
        if self.strong_market_overlap < self.min_market_overlap:
            raise ValueError("COORDINATION_STRONG_MARKET_OVERLAP must be >= COORDINATION_MIN_MARKET_OVERLAP")
        return self

    def with_changes(self, **changes: object) -> CoordinationSettings:
        """Return a validated copy with ``changes`` applied.

        Nested groups (``score_weights``, ``risk_thresholds``,
        ``confidence_thresholds``) may be given as partial dicts and are
        merged into the current values.

        Raises:
            ConfigurationError: If a key is unknown or the result is invalid.
        """
        current = self.model_dump()
        unknown = sorted(set(changes) - set(current))
        if unknown:
            raise ConfigurationError(f"Unknown coordination setting(s): {', '.join(unknown)}")

        merged: dict[str, object] = dict(current)
        for key, value in changes.items():
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if isinstance(value, dict) and isinstance(current[key], dict):
                merged[key] = {**current[key], **value}
            else:
                merged[key] = value

        try:
            return CoordinationSettings.model_validate(merged)
        except ValueError as e:
            raise ConfigurationError(f"Invalid coordination settings: {e}") from e


class EventSettings(BaseSettings):
    """Optional Redis stream publishing of detector notifications."""

    model_config = SettingsConfigDict(env_prefix="EVENTS_", extra="ignore", populate_by_name=True)

    redis_url: str | None = Field(
        default=None,
        alias="EVENTS_REDIS_URL",
        description="Redis connection string; publishing is disabled when unset",
    )
    stream_name: str = Field(
        default="polymarket:coordination:events",
        alias="EVENTS_STREAM_NAME",
        description="Redis stream key that receives detector events",
    )
    stream_maxlen: int = Field(
        default=10_000,
        alias="EVENTS_STREAM_MAXLEN",
        ge=1,
        le=10_000_000,
        description="Approximate max length of the events stream",
    )

    @field_validator("redis_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("EVENTS_REDIS_URL must start with redis://")
        return v

    @property
    def enabled(self) -> bool:
        return self.redis_url is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files.

    Example:
        ```python
        from polymarket_coordination.config import get_settings

        settings = get_settings()
        print(settings.coordination.min_similarity_score)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    coordination: CoordinationSettings = Field(
        default_factory=lambda: CoordinationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    events: EventSettings = Field(
        default_factory=lambda: EventSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        c = self.coordination
        return {
            "coordination": {
                "simultaneous_window_seconds": str(c.simultaneous_window_seconds),
                "min_similarity_score": str(c.min_similarity_score),
                "strong_market_overlap": str(c.strong_market_overlap),
                "score_weights": str(c.score_weights.model_dump()),
                "risk_thresholds": str(c.risk_thresholds.model_dump()),
                "cache_enabled": str(c.cache_enabled),
                "cache_ttl_seconds": str(c.cache_ttl_seconds),
                "batch_max_workers": str(c.batch_max_workers),
            },
            "events_redis_url": self._redact_url(self.events.redis_url) if self.events.redis_url else "(not set)",
            "events_stream_name": self.events.stream_name,
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
