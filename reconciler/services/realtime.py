"""Realtime status fan-out to connected clients over Redis pub/sub."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Event types understood by the client-side realtime listener
EVENT_GENERATION_STATUS_CHANGED = "generation_status_changed"
EVENT_MODEL_STATUS_CHANGED = "model_status_changed"


class RealtimePublisher:
    """
    Publish per-user events to ``{channel_prefix}:{owner_id}``.

    Delivery is fire-and-forget: a subscriber that is not connected simply
    misses the event. Connection errors propagate to the caller, which
    decides whether they matter.
    """

    def __init__(self, redis_url: Optional[str], channel_prefix: str = "realtime:user"):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self._client: Optional[redis.Redis] = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def client(self) -> redis.Redis:
        """Lazy initialization of the Redis client."""
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def channel_for(self, owner_id: str) -> str:
        return f"{self.channel_prefix}:{owner_id}"

    async def publish(self, owner_id: str, event_type: str, payload: dict[str, Any]) -> int:
        """
        Publish one event for a user.

        Returns:
            Number of subscribers that received it (0 when publishing is disabled)
        """
        if not self.enabled:
            logger.debug(f"Realtime disabled, dropping {event_type} owner={owner_id}")
            return 0

        message = json.dumps(
            {
                "type": event_type,
                "payload": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        receivers = await self.client.publish(self.channel_for(owner_id), message)
        logger.debug(f"Published {event_type} owner={owner_id} receivers={receivers}")
        return receivers

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(await self.client.ping())
        except redis.RedisError:
            return False

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
