"""
Redis Pub/Sub Messaging

JSON (orjson) messages over Redis channels:

- RedisPublisher.publish retries connection errors and timeouts with the
  shared RetryPolicy
- RedisSubscriber.subscribe polls the subscribed channels and awaits the
  handler for every decodable message, in arrival order

Undecodable messages are logged and skipped; handler exceptions propagate and
end the subscription loop.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import orjson
import redis.asyncio as redis

from utils.config import settings
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

REDIS_TRANSIENT_ERRORS = (redis.ConnectionError, redis.TimeoutError, asyncio.TimeoutError)

POLL_TIMEOUT = 1.0


def _connect(redis_url: str) -> redis.Redis:
    # Raw bytes in and out; orjson does the (de)serialisation
    return redis.from_url(
        redis_url,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=False,
        socket_connect_timeout=settings.REDIS_TIMEOUT,
    )


class RedisPublisher:
    """Publishes JSON payloads, reusing one pooled connection."""

    def __init__(self, redis_url: Optional[str] = None, retry_policy: Optional[RetryPolicy] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.retry_policy = retry_policy or RetryPolicy.from_settings(attempt_timeout=settings.REDIS_TIMEOUT)
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self.client is None:
            self.client = _connect(self.redis_url)

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """
        Publish ``message`` on ``channel``.

        Returns:
            Number of subscribers that received the message

        Raises:
            redis.RedisError: If publishing still fails once retries are exhausted
        """
        await self.connect()
        payload = orjson.dumps(message)

        return await self.retry_policy.call(
            lambda: self.client.publish(channel, payload),
            retry_on=REDIS_TRANSIENT_ERRORS,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


class RedisSubscriber:
    """Delivers messages from a fixed set of channels to an async handler."""

    def __init__(self, channels: list[str], redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.channels = channels
        self.client: Optional[redis.Redis] = None
        self.pubsub: Optional[redis.client.PubSub] = None
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        if self.client is None:
            self.client = _connect(self.redis_url)

        self.pubsub = self.client.pubsub()
        await self.pubsub.subscribe(*self.channels)

    @staticmethod
    def _decode(message: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        try:
            return message["channel"].decode("utf-8"), orjson.loads(message["data"])
        except (orjson.JSONDecodeError, UnicodeDecodeError, KeyError) as e:
            logger.warning(
                "Skipping undecodable message",
                extra={"error": str(e), "raw_data": message.get("data")},
            )
            return None

    async def subscribe(self, handler: MessageHandler) -> None:
        """Poll until stop() is called, awaiting ``handler(channel, payload)`` per message."""
        if self.pubsub is None:
            await self.connect()

        while not self._stop_event.is_set():
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=POLL_TIMEOUT)
            except redis.RedisError as e:
                logger.error("Redis error while polling, retrying in 1s", extra={"error": str(e)})
                await asyncio.sleep(1)
                continue

            if message is None or message["type"] != "message":
                await asyncio.sleep(0.01)
                continue

            decoded = self._decode(message)
            if decoded is not None:
                await handler(*decoded)

    def stop(self) -> None:
        self._stop_event.set()

    async def close(self) -> None:
        try:
            if self.pubsub is not None:
                await self.pubsub.unsubscribe(*self.channels)
                await self.pubsub.aclose()
                self.pubsub = None
        finally:
            if self.client is not None:
                await self.client.aclose()
                self.client = None
