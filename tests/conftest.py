"""
Shared pytest fixtures: in-memory fakes for the users API, the message bus
and the SFTP uploader, plus a zero-delay retry policy.
"""

import shutil
from pathlib import Path
from typing import Any

import pytest

from utils.errors import TransientError
from utils.retry import RetryPolicy
from utils.schemas import PageResponse

BUNDLED_DEPARTMENTS_CSV = Path(__file__).resolve().parents[1] / "resources" / "departments.csv"


def make_user(user_id: int, **overrides: Any) -> dict[str, Any]:
    record = {
        "id": user_id,
        "firstName": f"User{user_id}",
        "lastName": "Test",
        "email": f"user{user_id}@example.com",
        "age": 30,
        "company": {"department": "Engineering", "name": "Acme"},
    }
    record.update(overrides)
    return record


class FakeSource:
    """RecordSource over an in-memory list with scriptable failures."""

    def __init__(self, total: int, fail_at: dict[int, int] | None = None) -> None:
        self.records = [make_user(i) for i in range(1, total + 1)]
        self.fail_at = dict(fail_at or {})
        self.calls: list[tuple[int, int]] = []

    async def fetch(self, offset: int, limit: int) -> PageResponse:
        self.calls.append((offset, limit))
        if self.fail_at.get(offset, 0) > 0:
            self.fail_at[offset] -= 1
            raise TransientError(f"simulated outage at skip={offset}")
        return PageResponse(
            users=self.records[offset:offset + limit],
            skip=offset,
            limit=limit,
            total=len(self.records),
        )

    async def fetch_total(self) -> int:
        return len(self.records)


class FakePublisher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        if self.fail:
            raise ConnectionError("bus unavailable")
        self.messages.append((channel, message))
        return 1

    async def close(self) -> None:
        pass


class FakeUploader:
    """Uploader that copies into a local directory standing in for the SFTP root."""

    def __init__(self, remote_root: Path, fail: bool = False) -> None:
        self.remote_root = remote_root
        self.fail = fail
        self.uploads: list[tuple[str, str]] = []

    def upload(self, local_path: str, remote_dir: str, remote_name: str | None = None) -> str:
        if self.fail:
            raise TransientError("sftp unavailable")
        name = remote_name or Path(local_path).name
        target = self.remote_root / remote_dir.strip("/") / name
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)
        remote_path = f"{remote_dir.rstrip('/')}/{name}"
        self.uploads.append((local_path, remote_path))
        return remote_path


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay=0, multiplier=1, max_delay=0)


@pytest.fixture
def dept_map() -> dict[str, str]:
    return {"Engineering": "ENG", "Support": "SUP", "Marketing": "MKT"}


@pytest.fixture
def departments_csv(tmp_path: Path) -> Path:
    target = tmp_path / "departments.csv"
    shutil.copyfile(BUNDLED_DEPARTMENTS_CSV, target)
    return target


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def fake_uploader(tmp_path: Path) -> FakeUploader:
    return FakeUploader(tmp_path / "remote")
