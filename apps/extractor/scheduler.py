"""
Extraction Scheduler - Cron and On-Demand Runs

Drives the ExtractionCoordinator from an APScheduler cron trigger
(EXTRACT_SCHEDULE_CRON) or, with RUN_ONCE=true, runs a single extraction and
exits. Every completed batch is announced on REDIS_CHANNEL_RAW.

A tick that fires while a run is still active is skipped. A failed scheduled
run only logs: its checkpoint stays active and the next tick resumes it. A
batch whose announcement failed is announced again by the next run.

Usage:
    python -m apps.extractor
    RUN_ONCE=true python -m apps.extractor
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.extractor.extractor_job import BatchAnnouncer, ExtractionCoordinator, ExtractionResult, build_coordinator
from apps.extractor.publisher import publish_extraction_event
from utils.config import settings
from utils.consumer import run_once_from_env
from utils.errors import ExtractionBusyError
from utils.logging import setup_logging

logger = logging.getLogger(__name__)

JOB_ID = "extraction_job"


class ExtractionScheduler:
    """Runs extractions on a cron schedule or once, then announces the batch."""

    def __init__(
        self,
        run_once: bool = False,
        coordinator: Optional[ExtractionCoordinator] = None,
        publish_event: Optional[BatchAnnouncer] = None,
    ) -> None:
        """
        Args:
            run_once: Run a single extraction and stop instead of scheduling
            coordinator: Extraction coordinator, built from settings if omitted
            publish_event: Announces a completed raw batch, Redis by default
        """
        self.run_once = run_once
        self.coordinator = coordinator or build_coordinator()
        self.publish_event = publish_event or publish_extraction_event
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()

        logger.info(
            "ExtractionScheduler initialized",
            extra={"run_once": run_once, "cron_schedule": settings.EXTRACT_SCHEDULE_CRON},
        )

    async def execute_extraction(self) -> ExtractionResult | None:
        """
        Run (or resume) one extraction and announce the finished batch.

        A batch whose announcement failed earlier is announced first.

        Returns:
            The extraction result, or None when another run was already active

        Raises:
            PipelineError: If extraction or publishing fails
        """
        try:
            result = await self.coordinator.run_extraction(announce=self.publish_event)
        except ExtractionBusyError:
            logger.warning("Extraction already running, skipping this trigger")
            return None
        except Exception as e:
            logger.error("Extraction run failed", extra={"error": str(e)}, exc_info=True)
            raise
        finally:
            if self.run_once:
                self.shutdown_event.set()

        logger.info(
            "Extraction run finished",
            extra={"output_file": result.batch_path, "records": result.state.records_processed},
        )
        return result

    async def _scheduled_extraction(self) -> None:
        try:
            await self.execute_extraction()
        except Exception:
            logger.warning("Scheduled extraction failed; the next run resumes or re-announces its batch")

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _schedule(self) -> AsyncIOScheduler:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._scheduled_extraction,
            trigger=CronTrigger.from_crontab(settings.EXTRACT_SCHEDULE_CRON),
            id=JOB_ID,
            name="Periodic User Extraction",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()

        # next_run_time is only known once the scheduler is running
        job = scheduler.get_job(JOB_ID)
        next_run = getattr(job, "next_run_time", None)
        logger.info(
            "Extraction job scheduled",
            extra={
                "schedule": settings.EXTRACT_SCHEDULE_CRON,
                "next_run": str(next_run) if next_run is not None else None,
            },
        )
        return scheduler

    async def start(self) -> None:
        """Run once (RUN_ONCE) or keep the cron job alive until a shutdown signal."""
        self.setup_signal_handlers()

        if self.run_once:
            logger.info("Running in RUN_ONCE mode")
            await self.execute_extraction()
            return

        self.scheduler = self._schedule()
        try:
            await self.shutdown_event.wait()
        finally:
            logger.info("Shutting down scheduler")
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler shutdown complete")


async def main() -> None:
    """Main entry point for the extraction scheduler."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    try:
        await ExtractionScheduler(run_once=run_once_from_env()).start()
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
