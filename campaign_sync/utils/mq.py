"""
Redis Pub/Sub publisher for sync run events.

One pooled redis.asyncio client per publisher, created lazily on first
publish. Transient Redis errors are retried a few times before surfacing.

Usage:
    async with RedisPublisher.from_settings(settings) as publisher:
        await publisher.publish(settings.REDIS_CHANNEL_SYNCED, event.model_dump(mode="json"))
"""

import logging
from typing import Any, Optional

import orjson
import redis.asyncio as redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from campaign_sync.utils.config import Settings

logger = logging.getLogger(__name__)

PUBLISH_ATTEMPTS = 3


class RedisPublisher:
    """Publishes JSON events to Redis channels."""

    def __init__(
        self,
        redis_url: str,
        max_connections: int = 10,
        client: Optional[redis.Redis] = None,
    ) -> None:
        """
        Args:
            redis_url: Redis connection URL
            max_connections: Upper bound of the client's connection pool
            client: Pre-built client; one is created from redis_url if omitted
        """
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisPublisher":
        return cls(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)

    async def __aenter__(self) -> "RedisPublisher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _client(self) -> redis.Redis:
        if self.client is None:
            # orjson produces bytes, so responses stay undecoded
            self.client = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                decode_responses=False,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(redis.RedisError),
        stop=stop_after_attempt(PUBLISH_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Publish one message.

        Returns:
            Number of subscribers that received it

        Raises:
            redis.RedisError: If every attempt failed
        """
        receivers = await self._client().publish(channel, orjson.dumps(message, default=str))
        logger.debug("Event published", extra={"channel": channel, "receivers": receivers})
        return receivers

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
