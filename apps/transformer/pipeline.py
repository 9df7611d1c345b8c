"""
Transform Pipeline - Streaming Validation, Enrichment and DLQ Routing

Processes one completed raw batch file line by line, in file order:

    parse → validate → enrich-or-reject → append to success / dead-letter file

A reader task feeds lines through a bounded asyncio.Queue to a single writer,
so output order always matches input order.

Restart safety: the output paths chosen on the first attempt are stored in a
TransformProgress document together with the number of raw lines consumed and
the byte size of both outputs. Progress is saved every
TRANSFORM_CHECKPOINT_EVERY lines after flushing the outputs. A rerun truncates
the outputs back to the saved sizes and skips the consumed lines; a rerun of a
completed batch does no work.

Counts reported at the end are recomputed from the output files, never taken
from the in-memory counters.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Optional

import orjson

from apps.transformer.validation import ParseError, dead_letter, enrich_record, parse_line, validate_record
from utils.config import settings
from utils.errors import ConfigurationError
from utils.lookup import load_departments
from utils.schemas import TransformProgress
from utils.store import JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)

_END = object()


def count_lines(path: str | Path) -> int:
    """Number of non-empty lines in ``path`` (0 if it does not exist)."""
    file_path = Path(path)
    if not file_path.exists():
        return 0

    count = 0
    with open(file_path, "rb") as f:
        for line in f:
            if line.strip():
                count += 1
    return count


@dataclass(frozen=True)
class BatchResult:
    raw_file_path: str
    success_file_path: str
    dead_letter_file_path: str
    valid_records: int
    invalid_records: int

    @property
    def total_records(self) -> int:
        return self.valid_records + self.invalid_records


class TransformPipeline:
    """Validates and enriches raw batches into success and dead-letter JSONL files."""

    def __init__(
        self,
        dept_map: Optional[dict[str, str]] = None,
        progress_store: Optional[KeyValueStore] = None,
        processed_dir: Optional[str] = None,
        dlq_dir: Optional[str] = None,
        queue_size: Optional[int] = None,
        checkpoint_every: Optional[int] = None,
    ) -> None:
        """
        Raises:
            ConfigurationError: If the departments lookup cannot be loaded
        """
        if dept_map is None:
            dept_map = load_departments(settings.DEPARTMENTS_CSV)
        if not dept_map:
            raise ConfigurationError("Departments lookup table is empty")

        self.dept_map = dept_map
        self.progress_store = progress_store or JsonFileStore(Path(settings.STATE_DIR) / "transform")
        self.processed_dir = Path(processed_dir or settings.PROCESSED_DIR)
        self.dlq_dir = Path(dlq_dir or settings.DLQ_DIR)
        self.queue_size = queue_size or settings.TRANSFORM_QUEUE_SIZE
        self.checkpoint_every = checkpoint_every or settings.TRANSFORM_CHECKPOINT_EVERY

        logger.info("TransformPipeline ready (departments=%d)", len(self.dept_map))

    async def process_batch(self, raw_file_path: str) -> BatchResult:
        """
        Transform one raw batch, resuming a previous partial attempt if any.

        Raises:
            FileNotFoundError: If the raw batch file does not exist
        """
        raw_path = Path(raw_file_path)
        if not raw_path.is_file():
            raise FileNotFoundError(f"Raw batch file not found: {raw_file_path}")

        progress = self._load_progress(raw_path)

        if progress.completed:
            logger.info("Batch already transformed, skipping: path=%s", raw_path)
            return self._result(progress)

        start_time = time.time()
        if progress.lines_done:
            logger.info(
                "Resuming batch: path=%s, lines_done=%d", raw_path, progress.lines_done
            )

        _truncate(progress.success_file_path, progress.success_bytes)
        _truncate(progress.dead_letter_file_path, progress.dead_letter_bytes)

        with open(progress.success_file_path, "ab") as success_out, \
                open(progress.dead_letter_file_path, "ab") as dlq_out:
            valid, invalid = await self._stream(raw_path, progress, success_out, dlq_out)

            progress.completed = True
            self._checkpoint(progress, success_out, dlq_out)

        result = self._result(progress)
        logger.info(
            "File processing complete: path=%s, valid=%d, invalid=%d, "
            "this_run_valid=%d, this_run_invalid=%d, elapsed=%.3fs",
            raw_path, result.valid_records, result.invalid_records,
            valid, invalid, time.time() - start_time,
        )
        return result

    async def _stream(
        self,
        raw_path: Path,
        progress: TransformProgress,
        success_out: BinaryIO,
        dlq_out: BinaryIO,
    ) -> tuple[int, int]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        reader = asyncio.create_task(self._read_lines(raw_path, progress.lines_done, queue))

        valid = invalid = 0
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break

                line_num, line = item
                routed = self._process_line(line, line_num, success_out, dlq_out)
                if routed is True:
                    valid += 1
                elif routed is False:
                    invalid += 1

                progress.lines_done = line_num
                if line_num % self.checkpoint_every == 0:
                    self._checkpoint(progress, success_out, dlq_out)

            # Surface reader failures
            await reader
            return valid, invalid

        except BaseException:
            reader.cancel()
            raise

    async def _read_lines(self, raw_path: Path, skip: int, queue: asyncio.Queue) -> None:
        try:
            with open(raw_path, "r", encoding="utf-8", errors="replace") as f:
                for line_num, line in enumerate(f, 1):
                    if line_num <= skip:
                        continue
                    # Blank lines still advance lines_done so resumes stay aligned
                    await queue.put((line_num, line.strip()))
        except Exception:
            # Unblock the writer; the error surfaces when the task is awaited
            await queue.put(_END)
            raise
        await queue.put(_END)

    def _process_line(self, line: str, line_num: int, success_out: BinaryIO, dlq_out: BinaryIO) -> bool | None:
        """Route one line; returns True for success, False for DLQ, None for blank."""
        if not line:
            return None

        try:
            record = parse_line(line)
        except ParseError as e:
            logger.debug("JSON parse error at line=%d: %s", line_num, e)
            _write_line(dlq_out, dead_letter(line, [str(e)]).to_json_dict())
            return False

        outcome = validate_record(record)
        if not outcome.valid:
            logger.debug("Validation error at line=%d: %s", line_num, outcome.errors)
            _write_line(dlq_out, dead_letter(record, outcome.errors).to_json_dict())
            return False

        try:
            enriched = enrich_record(record, self.dept_map)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning("Enrichment failed at line=%d: %s", line_num, e)
            _write_line(dlq_out, dead_letter(record, [f"enrichment_failed: {e}"]).to_json_dict())
            return False

        _write_line(success_out, enriched)
        return True

    def _checkpoint(self, progress: TransformProgress, success_out: BinaryIO, dlq_out: BinaryIO) -> None:
        for out in (success_out, dlq_out):
            out.flush()
            os.fsync(out.fileno())
        progress.success_bytes = success_out.tell()
        progress.dead_letter_bytes = dlq_out.tell()
        self.progress_store.put(progress.raw_file_path, progress.to_json_dict())

    def _load_progress(self, raw_path: Path) -> TransformProgress:
        key = str(raw_path)
        data = self.progress_store.get(key)
        if data is not None:
            return TransformProgress.model_validate(data)

        # Create timestamped output paths
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        self.dlq_dir.mkdir(parents=True, exist_ok=True)

        progress = TransformProgress(
            raw_file_path=key,
            success_file_path=str(self.processed_dir / f"etl_{raw_path.stem}_{timestamp}.jsonl"),
            dead_letter_file_path=str(self.dlq_dir / f"invalid_{raw_path.stem}_{timestamp}.jsonl"),
        )
        self.progress_store.put(key, progress.to_json_dict())
        logger.info(
            "Output files initialized: processed=%s, dlq=%s",
            progress.success_file_path, progress.dead_letter_file_path,
        )
        return progress

    @staticmethod
    def _result(progress: TransformProgress) -> BatchResult:
        return BatchResult(
            raw_file_path=progress.raw_file_path,
            success_file_path=progress.success_file_path,
            dead_letter_file_path=progress.dead_letter_file_path,
            valid_records=count_lines(progress.success_file_path),
            invalid_records=count_lines(progress.dead_letter_file_path),
        )


def _write_line(out: BinaryIO, payload: dict[str, Any]) -> None:
    out.write(orjson.dumps(payload) + b"\n")


def _truncate(path: str, size: int) -> None:
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if not file_path.exists():
        file_path.touch()
        return
    if file_path.stat().st_size > size:
        logger.warning("Discarding uncheckpointed output tail: path=%s, keep=%d", path, size)
        with open(file_path, "r+b") as f:
            f.truncate(size)
