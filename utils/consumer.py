"""
Channel Consumer - Shared Redis Pub/Sub Service Loop

Base class for the long-running stage services. Subclasses name their
channel, implement ``handle_message`` and optionally ``prepare``/``cleanup``;
this class owns the subscription, the SIGINT/SIGTERM handling and the
RUN_ONCE behaviour:

    prepare() → subscribe → wait for shutdown or a crashed loop → cleanup()

A crashed subscription loop is re-raised from start(); run_service() turns
it into exit status 1.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Any, Callable, Dict

from utils.config import settings
from utils.logging import setup_logging
from utils.mq import RedisSubscriber

logger = logging.getLogger(__name__)


def run_once_from_env() -> bool:
    return os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")


class ChannelConsumer:
    """Subscribes to one channel and feeds every message to handle_message."""

    def __init__(self, channel: str, run_once: bool = False) -> None:
        self.channel = channel
        self.run_once = run_once
        self.subscriber: RedisSubscriber | None = None
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0

        logger.info(
            "%s initialized",
            type(self).__name__,
            extra={"run_once": run_once, "target_channel": channel},
        )

    async def handle_message(self, channel: str, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def prepare(self) -> None:
        """Build dependencies before subscribing; errors abort start()."""

    async def cleanup(self) -> None:
        """Release resources acquired in prepare()."""

    def mark_processed(self) -> None:
        """Count a handled event; in RUN_ONCE mode this also requests shutdown."""
        self._processed_count += 1
        if self.run_once:
            logger.info("RUN_ONCE mode: signaling shutdown after processing event")
            self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """Process messages until a shutdown signal (or one event in RUN_ONCE mode)."""
        self.setup_signal_handlers()
        logger.info("Starting %s", type(self).__name__)

        await self.prepare()
        self.subscriber = RedisSubscriber(channels=[self.channel])

        try:
            await self.subscriber.connect()
            logger.info("Subscribed to channel", extra={"channel": self.channel})

            subscription = asyncio.create_task(self.subscriber.subscribe(self.handle_message))
            shutdown = asyncio.create_task(self.shutdown_event.wait())

            done, pending = await asyncio.wait(
                [shutdown, subscription], return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if subscription in done:
                subscription.result()

            logger.info("Consumer shutdown complete", extra={"processed_events": self._processed_count})

        except Exception as e:
            logger.error("Consumer failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            self.subscriber.stop()
            await self.subscriber.close()
            await self.cleanup()
            logger.info("Redis subscriber connection closed")


async def run_service(factory: Callable[[bool], ChannelConsumer]) -> None:
    """Process entry point: configure logging, build the consumer, exit 1 on failure."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    consumer = factory(run_once_from_env())

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Consumer failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
