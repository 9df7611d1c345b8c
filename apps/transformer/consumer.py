"""
Transformer Consumer - Phase 2 Service

Listens on REDIS_CHANNEL_RAW for ``raw_created`` events, runs the Transform
Pipeline over the announced batch and publishes its BatchManifest on
REDIS_CHANNEL_MANIFEST (once per batch).

A batch that fails is logged with its path and left for a later redelivery;
saved transform progress makes the re-run pick up where it stopped.

Usage:
    python -m apps.transformer.consumer
    RUN_ONCE=true python -m apps.transformer.consumer
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from apps.transformer.emitter import CompletionEmitter
from apps.transformer.pipeline import TransformPipeline
from utils.config import settings
from utils.consumer import ChannelConsumer, run_service
from utils.errors import PipelineError
from utils.mq import RedisPublisher
from utils.schemas import BatchManifest, RedisEvent
from utils.store import SqliteKeyValueStore

logger = logging.getLogger(__name__)

BUNDLED_DEPARTMENTS_CSV = Path(__file__).resolve().parents[2] / "resources" / "departments.csv"


def ensure_departments_csv(target: str) -> None:
    """Seed ``target`` from the bundled departments table if it does not exist yet."""
    csv_target = Path(target)
    if csv_target.exists() or not BUNDLED_DEPARTMENTS_CSV.exists():
        return
    csv_target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(BUNDLED_DEPARTMENTS_CSV, csv_target)
    logger.info("Seeded departments CSV at %s", str(csv_target))


class TransformerConsumer(ChannelConsumer):
    """Turns raw_created events into transformed batches and manifests."""

    def __init__(
        self,
        run_once: bool = False,
        pipeline: Optional[TransformPipeline] = None,
        emitter: Optional[CompletionEmitter] = None,
    ) -> None:
        """
        Args:
            run_once: If True, process one event and exit (for testing)
            pipeline: Transform pipeline, built at start() if omitted
            emitter: Manifest emitter, built at start() if omitted
        """
        super().__init__(settings.REDIS_CHANNEL_RAW, run_once=run_once)
        self.pipeline = pipeline
        self.emitter = emitter
        self.publisher: RedisPublisher | None = None

    async def prepare(self) -> None:
        # Fails fast with ConfigurationError if the departments table is unusable
        if self.pipeline is None:
            ensure_departments_csv(settings.DEPARTMENTS_CSV)
            self.pipeline = TransformPipeline()

        if self.emitter is None:
            self.publisher = RedisPublisher()
            self.emitter = CompletionEmitter(
                publisher=self.publisher,
                markers=SqliteKeyValueStore("manifests"),
            )

    async def cleanup(self) -> None:
        if self.publisher is not None:
            await self.publisher.close()

    async def handle_message(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            event = RedisEvent(**message)
        except ValidationError as e:
            logger.warning(
                "Invalid event payload",
                extra={"channel": channel, "payload": message, "error": str(e)},
            )
            return

        if event.type != "raw_created":
            logger.debug("Ignoring event", extra={"channel": channel, "event_type": event.type})
            return

        try:
            await self.handle_raw_created(event)
        except (PipelineError, OSError) as e:
            logger.error(
                "Failed to process batch",
                extra={"channel": channel, "file_path": event.path, "error": str(e)},
                exc_info=True,
            )
            return

        self.mark_processed()

    async def handle_raw_created(self, event: RedisEvent) -> BatchManifest | None:
        """
        Transform the announced raw batch and publish its manifest.

        Returns:
            The published manifest, or None if the batch was announced before
        """
        logger.info("Processing raw file: path=%s, ts=%s", event.path, event.ts)

        result = await self.pipeline.process_batch(event.path)
        return await self.emitter.emit(result)


async def main() -> None:
    """Main entry point for transformer consumer."""
    await run_service(TransformerConsumer)


if __name__ == "__main__":
    asyncio.run(main())
