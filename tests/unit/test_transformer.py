"""
Tests for the transform pipeline (routing, ordering, restart safety) and the
manifest emitter (exactly-once publishing).
"""

from pathlib import Path

import orjson
import pytest

from apps.transformer.emitter import CompletionEmitter, build_manifest
from apps.transformer.pipeline import TransformPipeline, count_lines
from tests.conftest import FakePublisher, make_user
from utils.errors import ConfigurationError, PublishFailedError
from utils.schemas import BatchManifest, TransformProgress
from utils.store import JsonFileStore


def write_batch(path: Path, lines: list) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        for line in lines:
            f.write((line if isinstance(line, bytes) else orjson.dumps(line)) + b"\n")
    return path


def read_jsonl(path: str) -> list[dict]:
    with open(path, "rb") as f:
        return [orjson.loads(line) for line in f if line.strip()]


@pytest.fixture
def progress_store(tmp_path: Path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "state" / "transform")


@pytest.fixture
def pipeline(tmp_path, dept_map, progress_store) -> TransformPipeline:
    return TransformPipeline(
        dept_map=dept_map,
        progress_store=progress_store,
        processed_dir=str(tmp_path / "processed"),
        dlq_dir=str(tmp_path / "dlq"),
        queue_size=4,
        checkpoint_every=2,
    )


@pytest.fixture
def mixed_batch(tmp_path: Path) -> Path:
    return write_batch(tmp_path / "raw" / "records_20250101_000000.jsonl", [
        make_user(1),
        make_user(2, age=12),
        b"{broken",
        make_user(3, company={"department": "support"}),
        make_user(4, email="nope"),
        make_user(5, company={"department": "Support"}),
    ])


class TestTransformPipeline:
    """Test suite for TransformPipeline."""

    @pytest.mark.asyncio
    async def test_routes_valid_and_invalid_records(self, pipeline, mixed_batch):
        result = await pipeline.process_batch(str(mixed_batch))

        success = read_jsonl(result.success_file_path)
        dlq = read_jsonl(result.dead_letter_file_path)

        assert [r["id"] for r in success] == [1, 3, 5]
        assert [r["departmentCode"] for r in success] == ["ENG", "UNK", "SUP"]
        assert all("insertionDate" in r for r in success)

        assert len(dlq) == 3
        assert dlq[0]["originalRecord"]["id"] == 2
        assert dlq[1]["originalRecord"] == "{broken"
        assert dlq[1]["errors"][0].startswith("invalid_json")
        assert dlq[2]["originalRecord"]["id"] == 4

        assert result.valid_records == 3
        assert result.invalid_records == 3
        assert result.total_records == 6

    @pytest.mark.asyncio
    async def test_deeply_nested_line_goes_to_dead_letter(self, tmp_path, pipeline):
        nested = b'{"a": ' * 3000 + b"1" + b"}" * 3000
        batch = write_batch(tmp_path / "raw" / "records_nested.jsonl", [make_user(1), nested, make_user(2)])

        result = await pipeline.process_batch(str(batch))

        dlq = read_jsonl(result.dead_letter_file_path)
        assert [r["id"] for r in read_jsonl(result.success_file_path)] == [1, 2]
        assert len(dlq) == 1
        assert dlq[0]["errors"][0].startswith("invalid_json")

    @pytest.mark.asyncio
    async def test_output_names_follow_raw_batch(self, pipeline, mixed_batch):
        result = await pipeline.process_batch(str(mixed_batch))

        assert Path(result.success_file_path).name.startswith("etl_records_20250101_000000_")
        assert Path(result.dead_letter_file_path).name.startswith("invalid_records_20250101_000000_")

    @pytest.mark.asyncio
    async def test_blank_lines_are_ignored(self, tmp_path, pipeline):
        raw = write_batch(tmp_path / "raw" / "records_blank.jsonl", [make_user(1), b"", b"   ", make_user(2)])

        result = await pipeline.process_batch(str(raw))

        assert result.valid_records == 2
        assert result.invalid_records == 0

    @pytest.mark.asyncio
    async def test_all_invalid_batch_still_creates_success_file(self, tmp_path, pipeline):
        raw = write_batch(tmp_path / "raw" / "records_bad.jsonl", [make_user(1, age=99)])

        result = await pipeline.process_batch(str(raw))

        assert Path(result.success_file_path).exists()
        assert count_lines(result.success_file_path) == 0
        assert result.invalid_records == 1

    @pytest.mark.asyncio
    async def test_rerun_of_completed_batch_does_no_work(self, pipeline, mixed_batch):
        first = await pipeline.process_batch(str(mixed_batch))
        before = Path(first.success_file_path).read_bytes()

        second = await pipeline.process_batch(str(mixed_batch))

        assert second == first
        assert Path(second.success_file_path).read_bytes() == before

    @pytest.mark.asyncio
    async def test_resume_from_partial_progress(self, tmp_path, pipeline, progress_store):
        """Lines past the checkpoint are re-done once; output is not duplicated."""
        users = [make_user(i) for i in range(1, 7)]
        raw = write_batch(tmp_path / "raw" / "records_resume.jsonl", users)

        success = tmp_path / "processed" / "etl_records_resume_x.jsonl"
        dlq = tmp_path / "dlq" / "invalid_records_resume_x.jsonl"
        committed = b"".join(orjson.dumps(user) + b"\n" for user in users[:2])
        success.parent.mkdir(parents=True)
        dlq.parent.mkdir(parents=True)
        # Two lines checkpointed, a third written after the checkpoint
        success.write_bytes(committed + orjson.dumps(users[2]) + b"\n")
        dlq.write_bytes(b"")

        progress_store.put(str(raw), TransformProgress(
            raw_file_path=str(raw),
            success_file_path=str(success),
            dead_letter_file_path=str(dlq),
            lines_done=2,
            success_bytes=len(committed),
            dead_letter_bytes=0,
        ).to_json_dict())

        result = await pipeline.process_batch(str(raw))

        ids = [r["id"] for r in read_jsonl(result.success_file_path)]
        assert ids == [1, 2, 3, 4, 5, 6]
        assert result.success_file_path == str(success)

    @pytest.mark.asyncio
    async def test_missing_raw_file(self, tmp_path, pipeline):
        with pytest.raises(FileNotFoundError):
            await pipeline.process_batch(str(tmp_path / "raw" / "nope.jsonl"))

    def test_empty_department_map_is_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            TransformPipeline(dept_map={}, progress_store=JsonFileStore(tmp_path))


class TestCompletionEmitter:
    """Test suite for manifest building and exactly-once publishing."""

    @pytest.fixture
    def markers(self, tmp_path: Path) -> JsonFileStore:
        return JsonFileStore(tmp_path / "markers")

    @pytest.mark.asyncio
    async def test_manifest_counts_come_from_files(self, pipeline, mixed_batch):
        result = await pipeline.process_batch(str(mixed_batch))

        manifest = build_manifest(result)

        assert manifest.source_batch_id == "records_20250101_000000"
        assert manifest.total_records == manifest.valid_records + manifest.invalid_records == 6
        assert manifest.raw_file_path == str(mixed_batch)

    @pytest.mark.asyncio
    async def test_publishes_once(self, pipeline, mixed_batch, markers):
        publisher = FakePublisher()
        emitter = CompletionEmitter(publisher, markers, channel="files.manifests")
        result = await pipeline.process_batch(str(mixed_batch))

        first = await emitter.emit(result)
        second = await emitter.emit(result)

        assert first is not None
        assert second is None
        assert len(publisher.messages) == 1

        channel, message = publisher.messages[0]
        assert channel == "files.manifests"
        assert message["type"] == "batch_processed"
        assert message["manifest"]["validRecords"] == 3
        assert BatchManifest.model_validate(message["manifest"]) == first

    @pytest.mark.asyncio
    async def test_failed_publish_can_be_retried(self, pipeline, mixed_batch, markers):
        publisher = FakePublisher(fail=True)
        emitter = CompletionEmitter(publisher, markers, channel="files.manifests")
        result = await pipeline.process_batch(str(mixed_batch))

        with pytest.raises(PublishFailedError):
            await emitter.emit(result)
        assert not markers.exists(result.raw_file_path)

        publisher.fail = False
        assert await emitter.emit(result) is not None
        assert len(publisher.messages) == 1


class TestBatchManifest:
    def test_counts_must_add_up(self):
        with pytest.raises(ValueError):
            BatchManifest(
                source_batch_id="b",
                raw_file_path="r",
                success_file_path="s",
                dead_letter_file_path="d",
                total_records=5,
                valid_records=3,
                invalid_records=1,
            )

    def test_deliverable_files_skip_empty(self):
        manifest = BatchManifest(
            source_batch_id="b",
            raw_file_path="r",
            success_file_path="s",
            dead_letter_file_path="d",
            total_records=3,
            valid_records=3,
            invalid_records=0,
        )

        assert manifest.deliverable_files() == [("r", 3), ("s", 3)]
