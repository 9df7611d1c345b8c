"""
Secure Delivery Pipeline - Encrypted, Idempotent SFTP Uploads

For every file of a BatchManifest that holds records:

    receipt exists? → skip
    encrypt (AES-256-GCM) into a private temp dir → upload → record receipt
    → remove the temp copy (the plaintext source is kept)

Files of one manifest are delivered concurrently; the receipt check and the
upload for a given path run under a per-path lock, so redelivering the same
manifest (or racing two copies of it) uploads each file exactly once.
"""

import asyncio
import hashlib
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from utils.config import settings
from utils.crypto import encrypt_file, load_key
from utils.errors import ConfigurationError, CorruptionError, DeliveryError, TransientError
from utils.schemas import BatchManifest, DeliveryReceipt
from utils.sftp import SftpUploader
from utils.store import KeyValueStore, SqliteKeyValueStore

logger = logging.getLogger(__name__)

REMOTE_SUBDIRS = {
    "raw": "raw_users",
    "success": "processed_users",
    "dead_letter": "dlq",
}


class Uploader(Protocol):
    def upload(self, local_path: str, remote_dir: str, remote_name: str | None = None) -> str: ...


class ReceiptStore:
    """DeliveryReceipt documents keyed by local file path."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def get(self, file_path: str) -> DeliveryReceipt | None:
        data = self.store.get(file_path)
        return DeliveryReceipt.model_validate(data) if data else None

    def exists(self, file_path: str) -> bool:
        return self.store.exists(file_path)

    def put(self, receipt: DeliveryReceipt) -> None:
        self.store.put(receipt.file_path, receipt.to_json_dict())


@dataclass(frozen=True)
class DeliveryOutcome:
    file_path: str
    receipt: DeliveryReceipt
    skipped: bool


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class DeliveryPipeline:
    """Encrypts and uploads manifest files, recording a receipt per file."""

    def __init__(
        self,
        uploader: Uploader,
        receipts: ReceiptStore,
        encryption_key: Optional[bytes] = None,
        encryption_enabled: bool = True,
        remote_base: Optional[str] = None,
        tmp_dir: Optional[str] = None,
    ) -> None:
        """
        Raises:
            ConfigurationError: If encryption is enabled without a key
        """
        if encryption_enabled and not encryption_key:
            raise ConfigurationError("Encryption is enabled but no key was provided")

        self.uploader = uploader
        self.receipts = receipts
        self.encryption_key = encryption_key
        self.encryption_enabled = encryption_enabled
        self.remote_base = (remote_base or settings.SFTP_REMOTE_BASE).rstrip("/")
        self.tmp_dir = Path(tmp_dir or settings.DELIVERY_TMP_DIR)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

        if encryption_enabled:
            logger.info("File encryption enabled (AES-256-GCM)")
        else:
            logger.warning(
                "File encryption DISABLED - uploads are NON-COMPLIANT",
                extra={"compliance": "non_compliant", "reason": "encryption_disabled"},
            )

    @classmethod
    def from_settings(cls) -> "DeliveryPipeline":
        """
        Build the pipeline from configuration, validating credentials and key.

        Raises:
            ConfigurationError: On missing SFTP credentials or a bad encryption key
        """
        key = load_key(settings.ENCRYPTION_KEY) if settings.ENCRYPTION_ENABLED else None
        return cls(
            uploader=SftpUploader(),
            receipts=ReceiptStore(SqliteKeyValueStore("receipts")),
            encryption_key=key,
            encryption_enabled=settings.ENCRYPTION_ENABLED,
        )

    async def deliver(self, manifest: BatchManifest) -> list[DeliveryOutcome]:
        """
        Deliver every non-empty file of ``manifest`` concurrently.

        Raises:
            DeliveryError: For the first file that failed; the others still ran
        """
        kinds = {
            manifest.raw_file_path: "raw",
            manifest.success_file_path: "success",
            manifest.dead_letter_file_path: "dead_letter",
        }
        files = [path for path, _ in manifest.deliverable_files()]

        results = await asyncio.gather(
            *(self.deliver_file(path, REMOTE_SUBDIRS[kinds[path]]) for path in files),
            return_exceptions=True,
        )

        outcomes: list[DeliveryOutcome] = []
        failures: list[BaseException] = []
        for path, result in zip(files, results):
            if isinstance(result, BaseException):
                logger.error("Delivery failed: file=%s, error=%s", path, result)
                failures.append(result)
            else:
                outcomes.append(result)

        if failures:
            first = failures[0]
            if isinstance(first, DeliveryError):
                raise first
            raise DeliveryError(manifest.source_batch_id, first) from first

        logger.info(
            "Manifest delivered: batch=%s, uploaded=%d, skipped=%d",
            manifest.source_batch_id,
            sum(1 for o in outcomes if not o.skipped),
            sum(1 for o in outcomes if o.skipped),
        )
        return outcomes

    async def deliver_file(self, file_path: str, remote_subdir: str = "") -> DeliveryOutcome:
        """Deliver one file unless a receipt for it already exists."""
        lock = self._locks.setdefault(file_path, asyncio.Lock())
        self._lock_holders[file_path] = self._lock_holders.get(file_path, 0) + 1

        try:
            async with lock:
                return await self._deliver_locked(file_path, remote_subdir)
        finally:
            # Forget the lock once no other delivery of this path is waiting on it
            self._lock_holders[file_path] -= 1
            if not self._lock_holders[file_path]:
                del self._lock_holders[file_path]
                del self._locks[file_path]

    async def _deliver_locked(self, file_path: str, remote_subdir: str) -> DeliveryOutcome:
        existing = await asyncio.to_thread(self.receipts.get, file_path)
        if existing is not None:
            logger.info(
                "Receipt found, skipping upload: file=%s, uploaded_at=%s",
                file_path, existing.uploaded_at.isoformat(),
            )
            return DeliveryOutcome(file_path=file_path, receipt=existing, skipped=True)

        remote_dir = f"{self.remote_base}/{remote_subdir}" if remote_subdir else self.remote_base
        receipt = await asyncio.to_thread(self._encrypt_and_upload, file_path, remote_dir)
        await asyncio.to_thread(self.receipts.put, receipt)

        return DeliveryOutcome(file_path=file_path, receipt=receipt, skipped=False)

    def _encrypt_and_upload(self, file_path: str, remote_dir: str) -> DeliveryReceipt:
        source = Path(file_path)
        if not source.is_file():
            raise DeliveryError(file_path, FileNotFoundError(f"Local file not found: {file_path}"))

        work_dir: Path | None = None
        try:
            if self.encryption_enabled:
                self.tmp_dir.mkdir(parents=True, exist_ok=True)
                work_dir = Path(tempfile.mkdtemp(prefix="delivery_", dir=self.tmp_dir))
                upload_path = encrypt_file(source, self.encryption_key, work_dir)
                logger.debug("File encrypted: %s → %s", source.name, upload_path.name)
            else:
                logger.warning(
                    "Uploading file UNENCRYPTED: %s - NON-COMPLIANT",
                    source.name,
                    extra={"compliance": "non_compliant", "file_path": file_path},
                )
                upload_path = source

            checksum = sha256_file(upload_path)
            size = upload_path.stat().st_size
            remote_path = self.uploader.upload(str(upload_path), remote_dir)

            logger.info("File delivered: local=%s, remote=%s, encrypted=%s", file_path, remote_path, self.encryption_enabled)
            return DeliveryReceipt(
                file_path=file_path,
                remote_path=remote_path,
                checksum=checksum,
                size=size,
                encrypted=self.encryption_enabled,
            )

        except (TransientError, ConfigurationError, CorruptionError, OSError) as e:
            raise DeliveryError(file_path, e) from e

        finally:
            if work_dir is not None:
                _cleanup(work_dir)


def _cleanup(work_dir: Path) -> None:
    try:
        shutil.rmtree(work_dir)
        logger.debug("Temporary encrypted copy removed: %s", work_dir)
    except OSError as e:
        logger.warning("Failed to remove temporary encrypted copy: path=%s, error=%s", work_dir, e)
