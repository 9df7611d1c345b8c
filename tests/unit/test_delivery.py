"""
Tests for secure delivery: encryption before upload, receipts, idempotency,
temp-file cleanup and the delivery consumer's metadata bookkeeping.
"""

import asyncio
from pathlib import Path

import pytest

from apps.delivery.consumer import DeliveryConsumer
from apps.delivery.pipeline import DeliveryPipeline, ReceiptStore
from tests.conftest import FakeUploader
from utils.crypto import decrypt_bytes, generate_key
from utils.db import get_file_metadata, init_schema
from utils.errors import ConfigurationError, DeliveryError
from utils.schemas import BatchManifest
from utils.store import JsonFileStore, SqliteKeyValueStore


@pytest.fixture
def key() -> bytes:
    return generate_key()


@pytest.fixture
def receipts(tmp_path: Path) -> ReceiptStore:
    return ReceiptStore(JsonFileStore(tmp_path / "receipts"))


@pytest.fixture
def batch_files(tmp_path: Path) -> dict[str, Path]:
    files = {
        "raw": tmp_path / "raw" / "records_b.jsonl",
        "success": tmp_path / "processed" / "etl_records_b_1.jsonl",
        "dead_letter": tmp_path / "dlq" / "invalid_records_b_1.jsonl",
    }
    contents = {
        "raw": b'{"id": 1}\n{"id": 2}\n',
        "success": b'{"id": 1, "departmentCode": "ENG"}\n',
        "dead_letter": b'{"originalRecord": {"id": 2}, "errors": ["age"]}\n',
    }
    for kind, path in files.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(contents[kind])
    return files


@pytest.fixture
def manifest(batch_files) -> BatchManifest:
    return BatchManifest(
        source_batch_id="records_b",
        raw_file_path=str(batch_files["raw"]),
        success_file_path=str(batch_files["success"]),
        dead_letter_file_path=str(batch_files["dead_letter"]),
        total_records=2,
        valid_records=1,
        invalid_records=1,
    )


def make_pipeline(uploader, receipts, tmp_path, key=None, enabled=True) -> DeliveryPipeline:
    return DeliveryPipeline(
        uploader=uploader,
        receipts=receipts,
        encryption_key=key,
        encryption_enabled=enabled,
        remote_base="/upload",
        tmp_dir=str(tmp_path / "tmp"),
    )


class TestDeliveryPipeline:
    """Test suite for DeliveryPipeline."""

    @pytest.mark.asyncio
    async def test_uploads_encrypted_copies(self, tmp_path, fake_uploader, receipts, key, manifest, batch_files):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        outcomes = await pipeline.deliver(manifest)

        remote_paths = sorted(remote for _, remote in fake_uploader.uploads)
        assert remote_paths == [
            "/upload/dlq/invalid_records_b_1.jsonl.enc",
            "/upload/processed_users/etl_records_b_1.jsonl.enc",
            "/upload/raw_users/records_b.jsonl.enc",
        ]

        uploaded = fake_uploader.remote_root / "upload" / "processed_users" / "etl_records_b_1.jsonl.enc"
        assert decrypt_bytes(uploaded.read_bytes(), key) == batch_files["success"].read_bytes()

        assert all(not outcome.skipped for outcome in outcomes)
        assert all(outcome.receipt.encrypted for outcome in outcomes)
        assert batch_files["success"].exists()

    @pytest.mark.asyncio
    async def test_temp_copies_are_removed(self, tmp_path, fake_uploader, receipts, key, manifest):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        await pipeline.deliver(manifest)

        assert list((tmp_path / "tmp").iterdir()) == []
        assert pipeline._locks == {}

    @pytest.mark.asyncio
    async def test_redelivery_uploads_nothing(self, tmp_path, fake_uploader, receipts, key, manifest):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        await pipeline.deliver(manifest)
        outcomes = await pipeline.deliver(manifest)

        assert len(fake_uploader.uploads) == 3
        assert all(outcome.skipped for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_concurrent_delivery_uploads_once(self, tmp_path, fake_uploader, receipts, key, manifest):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        await asyncio.gather(pipeline.deliver(manifest), pipeline.deliver(manifest))

        assert len(fake_uploader.uploads) == 3
        assert pipeline._locks == {}

    @pytest.mark.asyncio
    async def test_receipts_survive_restart(self, tmp_path, fake_uploader, key, manifest):
        store_dir = tmp_path / "receipts"
        await make_pipeline(fake_uploader, ReceiptStore(JsonFileStore(store_dir)), tmp_path, key).deliver(manifest)

        restarted = make_pipeline(fake_uploader, ReceiptStore(JsonFileStore(store_dir)), tmp_path, key)
        await restarted.deliver(manifest)

        assert len(fake_uploader.uploads) == 3

    @pytest.mark.asyncio
    async def test_receipt_records_checksum_of_uploaded_bytes(self, tmp_path, fake_uploader, receipts, key, manifest):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        await pipeline.deliver(manifest)

        receipt = receipts.get(manifest.success_file_path)
        uploaded = fake_uploader.remote_root / receipt.remote_path.lstrip("/")
        assert receipt.size == uploaded.stat().st_size
        assert len(receipt.checksum) == 64

    @pytest.mark.asyncio
    async def test_failed_upload_leaves_no_receipt_or_temp_file(self, tmp_path, receipts, key, manifest):
        uploader = FakeUploader(tmp_path / "remote", fail=True)
        pipeline = make_pipeline(uploader, receipts, tmp_path, key)

        with pytest.raises(DeliveryError):
            await pipeline.deliver(manifest)

        assert not receipts.exists(manifest.success_file_path)
        assert list((tmp_path / "tmp").iterdir()) == []
        assert pipeline._locks == {}

    @pytest.mark.asyncio
    async def test_empty_files_are_not_delivered(self, tmp_path, fake_uploader, receipts, key, batch_files):
        manifest = BatchManifest(
            source_batch_id="records_b",
            raw_file_path=str(batch_files["raw"]),
            success_file_path=str(batch_files["success"]),
            dead_letter_file_path=str(batch_files["dead_letter"]),
            total_records=1,
            valid_records=1,
            invalid_records=0,
        )
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, key)

        await pipeline.deliver(manifest)

        assert not any("dlq" in remote for _, remote in fake_uploader.uploads)

    @pytest.mark.asyncio
    async def test_encryption_disabled_uploads_plaintext(self, tmp_path, fake_uploader, receipts, manifest, caplog):
        pipeline = make_pipeline(fake_uploader, receipts, tmp_path, enabled=False)

        outcomes = await pipeline.deliver(manifest)

        assert all(not outcome.receipt.encrypted for outcome in outcomes)
        assert all(not remote.endswith(".enc") for _, remote in fake_uploader.uploads)
        assert "NON-COMPLIANT" in caplog.text

    def test_enabled_without_key_is_configuration_error(self, tmp_path, fake_uploader, receipts):
        with pytest.raises(ConfigurationError):
            make_pipeline(fake_uploader, receipts, tmp_path, key=None, enabled=True)


class TestDeliveryConsumer:
    """Test suite for DeliveryConsumer message handling."""

    @pytest.fixture
    def db_path(self, tmp_path) -> str:
        path = str(tmp_path / "db" / "app.db")
        init_schema(path)
        return path

    @pytest.mark.asyncio
    async def test_manifest_event_delivers_and_records_metadata(self, tmp_path, fake_uploader, key, manifest, db_path):
        pipeline = make_pipeline(fake_uploader, ReceiptStore(SqliteKeyValueStore("receipts", db_path)), tmp_path, key)
        consumer = DeliveryConsumer(run_once=True, pipeline=pipeline, db_path=db_path)
        message = {"type": "batch_processed", "ts": "2025-01-01T00:00:00+00:00", "manifest": manifest.to_json_dict()}

        await consumer.handle_message("files.manifests", message)

        meta = get_file_metadata(manifest.success_file_path, db_path)
        assert meta.delivered is True
        assert meta.total_records == 1
        assert meta.filename == "etl_records_b_1.jsonl"
        assert consumer.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_failed_delivery_is_logged_and_metadata_stays_undelivered(self, tmp_path, key, manifest, db_path):
        uploader = FakeUploader(tmp_path / "remote", fail=True)
        pipeline = make_pipeline(uploader, ReceiptStore(SqliteKeyValueStore("receipts", db_path)), tmp_path, key)
        consumer = DeliveryConsumer(run_once=True, pipeline=pipeline, db_path=db_path)
        message = {"type": "batch_processed", "manifest": manifest.to_json_dict()}

        await consumer.handle_message("files.manifests", message)

        assert get_file_metadata(manifest.raw_file_path, db_path).delivered is False
        assert not consumer.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, tmp_path, fake_uploader, key, db_path):
        pipeline = make_pipeline(fake_uploader, ReceiptStore(SqliteKeyValueStore("receipts", db_path)), tmp_path, key)
        consumer = DeliveryConsumer(pipeline=pipeline, db_path=db_path)

        await consumer.handle_message("files.manifests", {"type": "raw_created", "path": "/x"})
        await consumer.handle_message("files.manifests", {"type": "batch_processed", "manifest": {}})

        assert fake_uploader.uploads == []
