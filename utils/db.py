"""
Database utilities for SQLite operations.

Provides connection management, schema initialization and file-metadata
upserts shared by the transformer and delivery services.
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from utils.config import settings
from utils.schemas import FileMetadata

logger = logging.getLogger(__name__)


def get_conn(db_path: str | None = None) -> sqlite3.Connection:
    """
    Get SQLite database connection with dict-friendly row factory.

    Args:
        db_path: Database file, defaults to settings.SQLITE_PATH

    Returns:
        SQLite connection with row_factory set to sqlite3.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    path = db_path or settings.SQLITE_PATH

    # Ensure database directory exists
    Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(db_path: str | None = None) -> None:
    """
    Initialize database schema by creating required tables if they don't exist.

    Creates:
    - kv_store: generic key/value documents (receipts, emission markers)
    - file_metadata: one row per produced file, keyed by path

    Raises:
        sqlite3.Error: If schema creation fails
    """
    conn = get_conn(db_path)
    try:
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS file_metadata (
                    file_path TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    total_records INTEGER NOT NULL,
                    source_batch_id TEXT NOT NULL,
                    processed_at TEXT NOT NULL,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    delivered_at TEXT
                )
            """)
    finally:
        conn.close()

    logger.info("DB schema ready")


def upsert_file_metadata(meta: FileMetadata, db_path: str | None = None) -> None:
    """Insert or refresh the metadata row for ``meta.file_path``.

    Delivery state already recorded for the path is preserved.
    """
    conn = get_conn(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO file_metadata
                    (file_path, filename, total_records, source_batch_id, processed_at, delivered, delivered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    filename = excluded.filename,
                    total_records = excluded.total_records,
                    source_batch_id = excluded.source_batch_id,
                    processed_at = excluded.processed_at
                """,
                (
                    meta.file_path,
                    meta.filename,
                    meta.total_records,
                    meta.source_batch_id,
                    meta.processed_at.isoformat(),
                    int(meta.delivered),
                    meta.delivered_at.isoformat() if meta.delivered_at else None,
                ),
            )
    finally:
        conn.close()


def mark_file_delivered(file_path: str, delivered_at: datetime, db_path: str | None = None) -> None:
    conn = get_conn(db_path)
    try:
        with conn:
            conn.execute(
                "UPDATE file_metadata SET delivered = 1, delivered_at = ? WHERE file_path = ?",
                (delivered_at.isoformat(), file_path),
            )
    finally:
        conn.close()


def get_file_metadata(file_path: str, db_path: str | None = None) -> FileMetadata | None:
    conn = get_conn(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM file_metadata WHERE file_path = ?", (file_path,)
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        return None

    return FileMetadata(
        file_path=row["file_path"],
        filename=row["filename"],
        total_records=row["total_records"],
        source_batch_id=row["source_batch_id"],
        processed_at=datetime.fromisoformat(row["processed_at"]),
        delivered=bool(row["delivered"]),
        delivered_at=datetime.fromisoformat(row["delivered_at"]) if row["delivered_at"] else None,
    )
