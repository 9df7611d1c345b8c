"""
Raw Batch Announcements

After a completed extraction the batch path is announced on
REDIS_CHANNEL_RAW as a ``raw_created`` RedisEvent; the transformer picks it
up from there.
"""

import logging
from typing import Optional

from utils.config import settings
from utils.errors import PublishFailedError
from utils.mq import RedisPublisher
from utils.schemas import RedisEvent

logger = logging.getLogger(__name__)


async def publish_extraction_event(output_file: str, publisher: Optional[RedisPublisher] = None) -> None:
    """
    Announce a completed raw batch file.

    Args:
        output_file: Path of the completed JSONL batch
        publisher: Publisher to reuse; otherwise a short-lived one is opened and closed here

    Raises:
        PublishFailedError: If publishing fails after retries
    """
    channel = settings.REDIS_CHANNEL_RAW
    event = RedisEvent(type="raw_created", path=output_file)
    own_publisher = publisher is None
    if own_publisher:
        publisher = RedisPublisher()

    try:
        await publisher.publish(channel, event.model_dump(mode="json"))
    except Exception as e:
        logger.error(
            "Failed to announce raw batch",
            extra={"channel": channel, "file_path": output_file, "error": str(e)},
        )
        raise PublishFailedError(output_file, e) from e
    finally:
        if own_publisher:
            await publisher.close()

    logger.info(
        "Announced raw batch",
        extra={"channel": channel, "file_path": output_file, "event_type": event.type},
    )
