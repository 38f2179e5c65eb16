"""Receipt status fan-out using Redis pub/sub."""

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import redis
import redis.asyncio as aioredis

from src.config import get_settings

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)
settings = get_settings()


class ReceiptEventType(StrEnum):
    """Event types for receipt updates."""

    STATUS_CHANGED = "status_changed"
    COMPLETED = "completed"
    UPDATED = "updated"


# publisher(receipt_id, event_type, status, data)
ReceiptPublisher = Callable[[str, ReceiptEventType, str | None, dict | None], None]


def receipt_channel(receipt_id: str) -> str:
    """Redis channel carrying events for one receipt."""
    return f"receipt:{receipt_id}"


# Synchronous Redis client for publishing from API endpoints and workers
_sync_redis: redis.Redis | None = None


def get_sync_redis() -> redis.Redis:
    """Get synchronous Redis client for publishing."""
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.from_url(settings.redis_url)
    return _sync_redis


def publish_receipt_event(
    receipt_id: str,
    event_type: ReceiptEventType,
    status: str | None = None,
    data: dict | None = None,
) -> None:
    """Publish an event to a receipt's Redis channel.

    Subscribers treat the event as a wake-up and re-read the receipt store,
    so a lost message only delays delivery until their next poll.

    Args:
        receipt_id: The receipt the event is about
        event_type: Type of event (status_changed, completed, updated)
        status: Receipt status after the change
        data: Optional event payload
    """
    try:
        redis_client = get_sync_redis()
        channel = receipt_channel(receipt_id)
        message = {
            "type": event_type,
            "receipt_id": receipt_id,
            "status": status,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data or {},
        }
        redis_client.publish(channel, json.dumps(message, default=str))
        logger.debug(f"Published {event_type} to {channel}")
    except Exception as e:
        # Don't fail the caller if pub/sub fails
        logger.error(f"Failed to publish receipt event: {e}")


class RealtimeService:
    """Async Redis pub/sub subscription for streaming connections."""

    def __init__(self) -> None:
        self._redis: aioredis.Redis | None = None
        self._pubsub: PubSub | None = None
        self._channels: list[str] = []

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(settings.redis_url)
        return self._redis

    async def subscribe(self, channels: list[str]) -> None:
        """Subscribe to one or more Redis channels."""
        redis_conn = await self._get_redis()
        self._pubsub = redis_conn.pubsub(ignore_subscribe_messages=True)
        self._channels = list(channels)
        if self._channels:
            await self._pubsub.subscribe(*self._channels)

    async def get_message(self, timeout: float) -> dict[str, Any] | None:
        """Wait up to ``timeout`` seconds for the next event.

        Returns None on timeout or on a message that is not valid JSON.
        """
        if self._pubsub is None or not self._channels:
            raise RuntimeError("subscribe() must be called before get_message()")
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if message is None or message["type"] != "message":
            return None
        try:
            return json.loads(message["data"])
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON in pub/sub message: {message['data']}")
            return None

    async def cleanup(self) -> None:
        """Unsubscribe and close Redis connections."""
        if self._pubsub:
            if self._channels:
                await self._pubsub.unsubscribe(*self._channels)
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
