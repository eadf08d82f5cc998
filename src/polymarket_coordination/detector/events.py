"""Detector notifications.

The detector reports lifecycle changes (trades ingested, analysis finished,
high-risk group found, config changed) to registered observers. A failing
observer is logged and skipped; it never breaks the detector call that
triggered the notification.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis import Redis

logger = logging.getLogger(__name__)


class CoordinationEventType(str, Enum):
    TRADES_ADDED = "trades_added"
    TRADES_CLEARED = "trades_cleared"
    ANALYSIS_COMPLETE = "analysis_complete"
    BATCH_ANALYSIS_COMPLETE = "batch_analysis_complete"
    HIGH_RISK_GROUP_DETECTED = "high_risk_group_detected"
    CACHE_CLEARED = "cache_cleared"
    CONFIG_UPDATED = "config_updated"


@dataclass(frozen=True)
class CoordinationEvent:
    """A single notification emitted by the detector."""

    type: CoordinationEventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary for Redis stream publishing."""
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


EventListener = Callable[[CoordinationEvent], None]


class EventBus:
    """Synchronous fan-out of events to registered listeners."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = threading.Lock()
        self._listeners: list[EventListener] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: EventListener) -> bool:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
        return True

    def emit(self, event_type: CoordinationEventType, **payload: Any) -> CoordinationEvent | None:
        if not self._enabled:
            return None
        event = CoordinationEvent(type=event_type, payload=payload)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event_type.value)
        return event


class RedisStreamPublisher:
    """Event listener that appends events to a Redis stream.

    Example:
        ```python
        publisher = RedisStreamPublisher(Redis.from_url(settings.events.redis_url))
        detector.subscribe(publisher)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        stream_name: str = "polymarket:coordination:events",
        maxlen: int = 10_000,
    ) -> None:
        self._redis = redis
        self._stream_name = stream_name
        self._maxlen = maxlen

    @classmethod
    def from_url(cls, url: str, *, stream_name: str, maxlen: int) -> RedisStreamPublisher:
        return cls(Redis.from_url(url), stream_name=stream_name, maxlen=maxlen)

    def __call__(self, event: CoordinationEvent) -> None:
        try:
            self._redis.xadd(
                self._stream_name,
                {"type": event.type.value, "data": json.dumps(event.to_dict(), default=str)},
                maxlen=self._maxlen,
                approximate=True,
            )
        except Exception as e:
            logger.warning("Failed to publish %s to %s: %s", event.type.value, self._stream_name, e)
