"""
Completion Emitter - Batch Manifest Publishing

Builds the BatchManifest for a transformed batch (recounting the output
files) and publishes it exactly once per raw batch file. An emission marker
keyed by the raw file path is stored after a successful publish and checked
before every attempt, so re-processing a batch never announces it twice.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from apps.transformer.pipeline import BatchResult, count_lines
from utils.config import settings
from utils.errors import PublishFailedError
from utils.schemas import BatchManifest, ManifestEvent
from utils.store import KeyValueStore

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish(self, channel: str, message: dict[str, Any]) -> Any: ...


def build_manifest(result: BatchResult) -> BatchManifest:
    """Manifest whose counts come from the output files as they are on disk now."""
    valid = count_lines(result.success_file_path)
    invalid = count_lines(result.dead_letter_file_path)

    return BatchManifest(
        source_batch_id=Path(result.raw_file_path).stem,
        raw_file_path=result.raw_file_path,
        success_file_path=result.success_file_path,
        dead_letter_file_path=result.dead_letter_file_path,
        total_records=valid + invalid,
        valid_records=valid,
        invalid_records=invalid,
    )


class CompletionEmitter:
    """Publishes one manifest per transformed batch."""

    def __init__(
        self,
        publisher: Publisher,
        markers: KeyValueStore,
        channel: Optional[str] = None,
    ) -> None:
        self.publisher = publisher
        self.markers = markers
        self.channel = channel or settings.REDIS_CHANNEL_MANIFEST

    async def emit(self, result: BatchResult) -> BatchManifest | None:
        """
        Publish the manifest for ``result`` unless it was already published.

        Returns:
            The published manifest, or None if this batch was announced before

        Raises:
            PublishFailedError: If publishing fails after retries
        """
        key = result.raw_file_path

        if self.markers.exists(key):
            logger.info("Manifest already published, skipping: batch=%s", key)
            return None

        manifest = build_manifest(result)
        event = ManifestEvent(manifest=manifest)

        try:
            await self.publisher.publish(self.channel, event.model_dump(mode="json", by_alias=True))
        except Exception as e:
            logger.error(
                "Failed to publish manifest",
                extra={"channel": self.channel, "batch": key, "error": str(e)},
                exc_info=True,
            )
            raise PublishFailedError(key, e) from e

        self.markers.put(key, {
            "manifest": manifest.to_json_dict(),
            "publishedAt": datetime.now(timezone.utc).isoformat(),
        })

        logger.info(
            "Published manifest to %s: batch=%s, total=%d, valid=%d, invalid=%d",
            self.channel, manifest.source_batch_id,
            manifest.total_records, manifest.valid_records, manifest.invalid_records,
        )
        return manifest
