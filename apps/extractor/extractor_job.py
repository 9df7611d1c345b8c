"""
Extraction Job - Resumable Paginated Extraction

Drives the users API page by page into a raw JSONL batch file under a
checkpointed ExtractionState.

State machine:

    IDLE → FETCHING → PAGINATING ─┬→ FETCHING (next page)
                                  └→ COMPLETED
    any failure → FAILED

Durability rules:
- each page is written with a single write + fsync before the checkpoint
  records the new batch size, then the checkpoint is saved atomically
- on resume the batch file is truncated back to the checkpointed size, so a
  crash between the two steps leaves neither a partial line nor a duplicate page
- a run that exhausts its retries leaves the state in progress; the next run
  resumes from the last checkpoint instead of restarting
- a completed batch is marked announced only after its event was published;
  an unannounced batch is announced again before the next run starts
- one run at a time across processes: every coordinator of the same
  checkpoint takes a non-blocking file lock, a second caller is told "busy"

Usage:
    coordinator = build_coordinator()
    result = await coordinator.run_extraction()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Callable, Optional

import orjson
from filelock import FileLock, Timeout

from apps.extractor.source import RecordSource, UsersApiClient
from utils.config import settings
from utils.errors import CorruptionError, ExtractionBusyError, ExtractionFailedError, TransientError
from utils.retry import RetryPolicy
from utils.schemas import ExtractionState, PageResponse
from utils.store import CheckpointStore, JsonFileStore

logger = logging.getLogger(__name__)

BatchAnnouncer = Callable[[str], Awaitable[None]]


class ExtractionPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PAGINATING = "paginating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionResult:
    batch_path: str
    state: ExtractionState


class ExtractionCoordinator:
    """Single-writer coordinator for the raw extraction checkpoint."""

    def __init__(
        self,
        source: RecordSource,
        checkpoints: CheckpointStore,
        raw_dir: Optional[str] = None,
        page_size: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        lock_path: Optional[str] = None,
    ) -> None:
        self.source = source
        self.checkpoints = checkpoints
        self.raw_dir = Path(raw_dir or settings.RAW_DIR)
        self.page_size = page_size or settings.EXTRACT_LIMIT
        self.retry_policy = retry_policy or RetryPolicy.from_settings(attempt_timeout=settings.API_TIMEOUT)
        self.phase = ExtractionPhase.IDLE
        self._lock = asyncio.Lock()

        # Shared by every process that writes this checkpoint and batch directory
        lock_file = Path(lock_path) if lock_path else self.raw_dir / f".{checkpoints.key}.lock"
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        self._file_lock = FileLock(str(lock_file))

    @property
    def is_running(self) -> bool:
        """True while a run is active here or in another process."""
        if self._lock.locked():
            return True
        try:
            with self._file_lock.acquire(timeout=0):
                return False
        except Timeout:
            return True

    async def run_extraction(self, announce: Optional[BatchAnnouncer] = None) -> ExtractionResult:
        """
        Run (or resume) one extraction until the source is exhausted.

        With ``announce``, a completed batch that was never announced is
        announced before anything else, and the new batch is announced once
        complete. The checkpoint records each successful announcement.

        Returns:
            ExtractionResult with the completed batch path and final state

        Raises:
            ExtractionBusyError: If a run is already active in this or another process
            ExtractionFailedError: If a fetch exhausted its retries
            CorruptionError: If the batch file is shorter than its checkpoint
            PublishFailedError: If ``announce`` fails; the batch stays unannounced
        """
        if self._lock.locked():
            raise ExtractionBusyError("An extraction run is already in progress")

        async with self._lock:
            try:
                self._file_lock.acquire(timeout=0)
            except Timeout as e:
                raise ExtractionBusyError("An extraction run is already in progress in another process") from e

            try:
                if announce is not None:
                    await self._announce_pending(announce)
                result = await self._run()
                if announce is not None:
                    await self._announce(result.state, announce)
            except BaseException:
                self.phase = ExtractionPhase.FAILED
                raise
            finally:
                self._file_lock.release()

            self.phase = ExtractionPhase.COMPLETED
            return result

    async def _announce_pending(self, announce: BatchAnnouncer) -> None:
        state = self.checkpoints.load()
        if state is None or not state.completed or state.announced:
            return

        logger.warning("Announcing earlier batch that was never published: batch=%s", state.batch_file)
        await self._announce(state, announce)

    async def _announce(self, state: ExtractionState, announce: BatchAnnouncer) -> None:
        await announce(str(self.raw_dir / state.batch_file))
        state.announced = True
        self.checkpoints.save(state)

    async def _run(self) -> ExtractionResult:
        state = await self._prepare_state()
        batch_path = self.raw_dir / state.batch_file
        self._repair_batch_file(batch_path, state.batch_bytes)

        logger.info(
            "Extraction started: batch=%s, next_offset=%d, processed=%d/%d",
            batch_path, state.next_offset, state.records_processed, state.total_records,
        )

        with open(batch_path, "ab") as out:
            while True:
                self.phase = ExtractionPhase.FETCHING
                offset = state.next_offset
                page = await self._fetch_page(offset)

                self.phase = ExtractionPhase.PAGINATING
                batch_bytes = self._append_page(out, page.records)

                if page.total > state.total_records:
                    state.total_records = page.total
                state.update_progress(offset, len(page.records), batch_bytes)

                if self._should_stop(state, page):
                    state.mark_completed()
                    self.checkpoints.save(state)
                    break

                self.checkpoints.save(state)

        logger.info(
            "Extraction completed: batch=%s, pages=%d, records=%d/%d",
            batch_path, state.pages_fetched, state.records_processed, state.total_records,
        )
        return ExtractionResult(batch_path=str(batch_path), state=state)

    async def _prepare_state(self) -> ExtractionState:
        state = self.checkpoints.load()

        if state is not None and state.is_active:
            logger.info(
                "Resuming extraction: batch=%s, last_offset=%d, pages=%d",
                state.batch_file, state.last_successful_offset, state.pages_fetched,
            )
            return state

        self.phase = ExtractionPhase.FETCHING
        total = await self._call_source(lambda: self.source.fetch_total(), offset=0)

        state = ExtractionState.create_initial(
            total_records=total,
            page_size=self.page_size,
            batch_file=self._new_batch_name(),
        )
        self.checkpoints.save(state)

        logger.info("New extraction created: batch=%s, total=%d", state.batch_file, total)
        return state

    def _new_batch_name(self) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        name = f"records_{timestamp}.jsonl"
        suffix = 1
        # Never reuse the file of an earlier run started within the same second
        while (self.raw_dir / name).exists():
            name = f"records_{timestamp}_{suffix}.jsonl"
            suffix += 1
        return name

    def _repair_batch_file(self, batch_path: Path, expected_bytes: int) -> None:
        batch_path.parent.mkdir(parents=True, exist_ok=True)

        if not batch_path.exists():
            if expected_bytes:
                raise CorruptionError(
                    f"Batch file {batch_path} is missing but checkpoint expects {expected_bytes} bytes"
                )
            batch_path.touch()
            return

        size = batch_path.stat().st_size
        if size < expected_bytes:
            raise CorruptionError(
                f"Batch file {batch_path} has {size} bytes, checkpoint expects {expected_bytes}"
            )
        if size > expected_bytes:
            logger.warning(
                "Truncating uncheckpointed tail of batch file: path=%s, from=%d, to=%d",
                batch_path, size, expected_bytes,
            )
            with open(batch_path, "r+b") as f:
                f.truncate(expected_bytes)
                f.flush()
                os.fsync(f.fileno())

    async def _fetch_page(self, offset: int) -> PageResponse:
        return await self._call_source(lambda: self.source.fetch(offset, self.page_size), offset=offset)

    async def _call_source(self, func: Any, offset: int) -> Any:
        try:
            return await self.retry_policy.call(func, retry_on=(TransientError, asyncio.TimeoutError))
        except (TransientError, asyncio.TimeoutError, CorruptionError) as e:
            logger.error("Fetch failed permanently: offset=%d, error=%s", offset, e)
            raise ExtractionFailedError(offset, e) from e
        except Exception as e:
            logger.error("Fetch failed permanently: offset=%d, error=%s", offset, e, exc_info=True)
            raise ExtractionFailedError(offset, e) from e

    @staticmethod
    def _append_page(out: BinaryIO, records: list[dict[str, Any]]) -> int:
        if records:
            out.write(b"".join(orjson.dumps(record) + b"\n" for record in records))
            out.flush()
            os.fsync(out.fileno())
        return out.tell()

    @staticmethod
    def _should_stop(state: ExtractionState, page: PageResponse) -> bool:
        if not page.has_more_pages:
            logger.info("Source reports no more pages (skip=%d, limit=%d, total=%d)", page.offset, page.limit, page.total)
            return True
        if state.records_processed >= state.total_records:
            logger.info("All records processed: %d/%d", state.records_processed, state.total_records)
            return True
        if page.is_empty:
            logger.warning("Empty page received at offset=%d, finishing extraction", state.last_successful_offset)
            return True
        return False

    def reset(self) -> None:
        """Discard the checkpoint so the next run starts from scratch."""
        if self._lock.locked():
            raise ExtractionBusyError("Cannot reset while an extraction is running")
        try:
            with self._file_lock.acquire(timeout=0):
                self.checkpoints.reset()
        except Timeout as e:
            raise ExtractionBusyError("Cannot reset while an extraction is running in another process") from e
        self.phase = ExtractionPhase.IDLE

    def status(self) -> dict[str, Any]:
        state = self.checkpoints.load()
        return {
            "running": self.is_running,
            "phase": self.phase.value,
            "state": state.to_json_dict() if state else None,
        }


def build_coordinator(source: Optional[RecordSource] = None) -> ExtractionCoordinator:
    """Coordinator wired to the configured API, state directory and raw directory."""
    key = settings.EXTRACT_STATE_KEY
    return ExtractionCoordinator(
        source=source or UsersApiClient(),
        checkpoints=CheckpointStore(JsonFileStore(settings.STATE_DIR), key=key),
        lock_path=str(Path(settings.STATE_DIR) / f"{key}.lock"),
    )
