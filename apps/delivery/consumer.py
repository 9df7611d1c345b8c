"""
Delivery Consumer - Phase 3 Service

Listens on REDIS_CHANNEL_MANIFEST for ``batch_processed`` events, records a
file_metadata row for every non-empty file of the manifest and hands the
manifest to the Delivery Pipeline. Delivered files are marked in SQLite.

SFTP credentials and the encryption key are checked at start(); a missing
one stops the service before it subscribes.

Usage:
    python -m apps.delivery
    RUN_ONCE=true python -m apps.delivery
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from apps.delivery.pipeline import DeliveryOutcome, DeliveryPipeline
from utils.config import settings
from utils.consumer import ChannelConsumer, run_service
from utils.db import init_schema, mark_file_delivered, upsert_file_metadata
from utils.errors import PipelineError
from utils.schemas import BatchManifest, FileMetadata, ManifestEvent

logger = logging.getLogger(__name__)


class DeliveryConsumer(ChannelConsumer):
    """Delivers the files of every announced batch manifest."""

    def __init__(
        self,
        run_once: bool = False,
        pipeline: Optional[DeliveryPipeline] = None,
        db_path: Optional[str] = None,
    ) -> None:
        """
        Args:
            run_once: If True, process one event and exit (for testing)
            pipeline: Delivery pipeline, built from settings at start() if omitted
            db_path: SQLite database for file metadata, defaults to SQLITE_PATH
        """
        super().__init__(settings.REDIS_CHANNEL_MANIFEST, run_once=run_once)
        self.pipeline = pipeline
        self.db_path = db_path

    async def prepare(self) -> None:
        init_schema(self.db_path)
        if self.pipeline is None:
            self.pipeline = DeliveryPipeline.from_settings()

    async def handle_message(self, channel: str, message: Dict[str, Any]) -> None:
        """
        Deliver the manifest carried by a batch_processed event.

        A failed delivery is logged with the batch id; files that did upload
        keep their receipts, so a redelivered manifest only retries the rest.
        """
        if message.get("type") != "batch_processed":
            logger.debug("Ignoring event", extra={"channel": channel, "event_type": message.get("type")})
            return

        try:
            event = ManifestEvent.model_validate(message)
        except ValidationError as e:
            logger.warning(
                "Invalid manifest payload",
                extra={"channel": channel, "payload": message, "error": str(e)},
            )
            return

        try:
            await self.handle_manifest(event.manifest)
        except (PipelineError, OSError) as e:
            logger.error(
                "Failed to deliver batch",
                extra={"channel": channel, "batch": event.manifest.source_batch_id, "error": str(e)},
                exc_info=True,
            )
            return

        self.mark_processed()

    async def handle_manifest(self, manifest: BatchManifest) -> list[DeliveryOutcome]:
        """
        Record metadata for the manifest's files, deliver them and mark them delivered.

        Returns:
            One outcome per delivered or already-delivered file
        """
        logger.info(
            "Processing manifest: batch=%s, total=%d, valid=%d, invalid=%d",
            manifest.source_batch_id, manifest.total_records,
            manifest.valid_records, manifest.invalid_records,
        )

        for file_path, count in manifest.deliverable_files():
            meta = FileMetadata(
                file_path=file_path,
                filename=Path(file_path).name,
                total_records=count,
                source_batch_id=manifest.source_batch_id,
                processed_at=manifest.processed_at,
            )
            await asyncio.to_thread(upsert_file_metadata, meta, self.db_path)

        outcomes = await self.pipeline.deliver(manifest)

        for outcome in outcomes:
            await asyncio.to_thread(
                mark_file_delivered, outcome.file_path, outcome.receipt.uploaded_at, self.db_path
            )
        return outcomes


async def main() -> None:
    """Main entry point for delivery consumer."""
    await run_service(DeliveryConsumer)


if __name__ == "__main__":
    asyncio.run(main())
