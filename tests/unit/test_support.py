"""
Tests for the retry policy, publish timeouts and structured logging helpers.
"""

import asyncio
import logging

import orjson
import pytest

from utils.logging import JsonFormatter
from utils.mq import RedisPublisher
from utils.retry import RetryPolicy


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_retries_listed_errors_then_succeeds(self, fast_retry):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("boom")
            return "ok"

        assert await fast_retry.call(flaky, retry_on=(ConnectionError,)) == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, fast_retry):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ConnectionError("boom")

        with pytest.raises(ConnectionError):
            await fast_retry.call(broken, retry_on=(ConnectionError,))
        assert len(attempts) == fast_retry.max_attempts

    @pytest.mark.asyncio
    async def test_unlisted_errors_are_not_retried(self, fast_retry):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError("permanent")

        with pytest.raises(ValueError):
            await fast_retry.call(broken, retry_on=(ConnectionError,))
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout(self):
        policy = RetryPolicy(max_attempts=2, initial_delay=0, multiplier=1, max_delay=0, attempt_timeout=0.01)
        attempts = []

        async def slow():
            attempts.append(1)
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await policy.call(slow, retry_on=(asyncio.TimeoutError,))
        assert len(attempts) == 2


class TestJsonFormatter:
    def test_includes_extra_fields(self):
        record = logging.LogRecord("apps.test", logging.INFO, __file__, 1, "Processed %d", (3,), None)
        record.file_path = "/data/raw/records_1.jsonl"

        payload = orjson.loads(JsonFormatter().format(record))

        assert payload["message"] == "Processed 3"
        assert payload["level"] == "INFO"
        assert payload["file_path"] == "/data/raw/records_1.jsonl"


class _HangingRedis:
    """Redis client whose first publish never completes."""

    def __init__(self):
        self.calls = 0

    async def publish(self, channel, payload):
        self.calls += 1
        if self.calls == 1:
            await asyncio.Event().wait()
        return 1


class TestRedisPublisher:
    @pytest.mark.asyncio
    async def test_hanging_publish_times_out_and_is_retried(self):
        policy = RetryPolicy(max_attempts=3, initial_delay=0, multiplier=1, max_delay=0, attempt_timeout=0.05)
        publisher = RedisPublisher(redis_url="redis://unused", retry_policy=policy)
        publisher.client = _HangingRedis()

        receivers = await asyncio.wait_for(publisher.publish("files.manifests", {"type": "ping"}), timeout=5)

        assert receivers == 1
        assert publisher.client.calls == 2

    def test_default_policy_bounds_each_attempt(self):
        assert RedisPublisher(redis_url="redis://unused").retry_policy.attempt_timeout is not None
