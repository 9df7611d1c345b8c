"""
Key/Value Stores - Durable Documents Behind a Narrow Interface

Pipeline code only ever needs get/put/exists/delete on JSON-compatible
documents, so the backing store can be swapped without touching it:

- JsonFileStore: one JSON file per key, written atomically (temp + rename)
- SqliteKeyValueStore: one row per key in the kv_store table
- CheckpointStore: typed access to ExtractionState on top of either

Usage:
    from utils.store import CheckpointStore, JsonFileStore

    checkpoints = CheckpointStore(JsonFileStore(settings.STATE_DIR))
    state = checkpoints.load()
"""

import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import orjson

from utils.db import get_conn, init_schema
from utils.schemas import ExtractionState

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """Minimal durable document store."""

    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...


class JsonFileStore:
    """Directory of JSON documents, one file per key."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        return orjson.loads(data)

    def put(self, key: str, value: dict[str, Any]) -> None:
        path = self._path(key)
        payload = orjson.dumps(value, option=orjson.OPT_INDENT_2)

        # Readers see either the previous or the new document, never a partial one
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class SqliteKeyValueStore:
    """Namespaced documents in the sqlite kv_store table."""

    def __init__(self, namespace: str, db_path: str | None = None) -> None:
        self.namespace = namespace
        self.db_path = db_path
        init_schema(db_path)

    def get(self, key: str) -> dict[str, Any] | None:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        finally:
            conn.close()
        return orjson.loads(row["value"]) if row else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        conn = get_conn(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO kv_store (namespace, key, value, updated_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (
                        self.namespace,
                        key,
                        orjson.dumps(value).decode("utf-8"),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
        finally:
            conn.close()

    def exists(self, key: str) -> bool:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM kv_store WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def delete(self, key: str) -> None:
        conn = get_conn(self.db_path)
        try:
            with conn:
                conn.execute(
                    "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
                    (self.namespace, key),
                )
        finally:
            conn.close()


class CheckpointStore:
    """Single-writer ExtractionState record keyed by run identity."""

    def __init__(self, store: KeyValueStore, key: str = "users") -> None:
        self.store = store
        self.key = key

    def load(self) -> ExtractionState | None:
        data = self.store.get(self.key)
        if data is None:
            return None
        return ExtractionState.model_validate(data)

    def save(self, state: ExtractionState) -> None:
        self.store.put(self.key, state.to_json_dict())
        logger.debug(
            "Checkpoint saved: key=%s, offset=%d, processed=%d/%d",
            self.key, state.last_successful_offset, state.records_processed, state.total_records,
        )

    def has_active(self) -> bool:
        state = self.load()
        return state is not None and state.is_active

    def reset(self) -> None:
        self.store.delete(self.key)
        logger.info("Checkpoint reset: key=%s", self.key)
