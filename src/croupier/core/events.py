"""
Event bus implementation using Redis pub/sub.

Settlement outcomes are published here for operator tooling and monitoring.
Publishing is fire-and-forget from the pipeline's point of view: the ledger
is the record of truth, so a publish failure is logged and never fails a
settlement operation.
"""
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import redis.asyncio as redis
import structlog

log = structlog.get_logger()


class EventEncoder(json.JSONEncoder):
    """Custom JSON encoder for event payloads."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        return super().default(obj)


class EventBus:
    """Redis-backed event publisher.

    Usage:
        bus = EventBus(redis_url="redis://localhost:6379")
        await bus.connect()
        await bus.publish("settlement.completed", {"request_id": 42})
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel_prefix: str = "",
        metrics_emitter: Optional[Any] = None,
    ) -> None:
        """Initialize EventBus.

        Args:
            redis_url: Redis connection URL
            channel_prefix: Prepended to every channel name (e.g. "croupier.")
            metrics_emitter: Optional MetricsEmitter counting published events
        """
        self._metrics = metrics_emitter
        self._redis_url = redis_url
        self._prefix = channel_prefix
        self._redis: Optional[redis.Redis] = None
        self._log = log.bind(component="event_bus")

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._redis.ping()
        self._log.info("event_bus_connected", url=self._redis_url)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
        self._redis = None

    @property
    def is_connected(self) -> bool:
        """Check if connected to Redis."""
        return self._redis is not None

    async def publish(self, channel: str, event: dict[str, Any] | Any) -> None:
        """Publish event to channel.

        Args:
            channel: Channel name (e.g., "settlement.completed")
            event: Event data (dict or dataclass)
        """
        if not self._redis:
            raise RuntimeError("EventBus not connected")

        if is_dataclass(event) and not isinstance(event, type):
            event = asdict(event)

        data = json.dumps(event, cls=EventEncoder)
        try:
            await self._redis.publish(self._prefix + channel, data)
        except (redis.RedisError, OSError) as e:
            self._log.warning("event_publish_failed", channel=channel, error=str(e))
        else:
            if self._metrics:
                self._metrics.record_event_bus_message(channel)


async def publish_if_connected(
    event_bus: Optional[EventBus],
    channel: str,
    event: dict[str, Any] | Any,
) -> bool:
    """Publish when an event bus is configured and connected.

    Returns:
        True if the event was handed to the bus.
    """
    if event_bus is None or not event_bus.is_connected:
        return False
    if hasattr(event, "to_dict"):
        event = event.to_dict()
    await event_bus.publish(channel, event)
    return True
