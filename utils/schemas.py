"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas used throughout the pipeline:
- API page responses
- Extraction checkpoint state
- User record validation and transform outcomes
- Batch manifests, delivery receipts and file metadata
- Redis Pub/Sub messages

Records persisted to disk or sent over Redis use camelCase aliases
(``model_dump(by_alias=True)``); Python code uses snake_case attributes.

Usage:
    from utils.schemas import UserRecord

    user = UserRecord.model_validate(raw_data)
"""

import re
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@([A-Za-z0-9.-]+\.[A-Za-z]{2,})$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys, populated by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class PageResponse(BaseModel):
    """One page of the remote users collection: {users, skip, limit, total}."""

    model_config = ConfigDict(populate_by_name=True)

    records: list[dict[str, Any]] = Field(default_factory=list, alias="users")
    offset: int = Field(default=0, ge=0, alias="skip")
    limit: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    @property
    def has_more_pages(self) -> bool:
        return self.offset + self.limit < self.total

    @property
    def is_empty(self) -> bool:
        return not self.records


class ExtractionState(CamelModel):
    """Checkpointed progress of one extraction run."""

    last_successful_offset: int = Field(default=0, ge=0)
    total_records: int = Field(default=0, ge=0)
    page_size: int = Field(..., gt=0)
    records_processed: int = Field(default=0, ge=0)
    pages_fetched: int = Field(default=0, ge=0)
    in_progress: bool = True
    completed: bool = False
    announced: bool = False
    batch_file: str
    batch_bytes: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_invariants(self) -> "ExtractionState":
        if self.completed and self.in_progress:
            raise ValueError("a completed extraction cannot be in progress")
        if self.announced and not self.completed:
            raise ValueError("only a completed batch can be announced")
        if self.records_processed > self.total_records:
            raise ValueError("recordsProcessed cannot exceed totalRecords")
        return self

    @classmethod
    def create_initial(cls, total_records: int, page_size: int, batch_file: str) -> "ExtractionState":
        return cls(total_records=total_records, page_size=page_size, batch_file=batch_file)

    @property
    def is_active(self) -> bool:
        return self.in_progress and not self.completed

    @property
    def next_offset(self) -> int:
        """Offset of the next page to fetch (always lastSuccessfulOffset + pageSize once a page landed)."""
        if self.pages_fetched == 0:
            return self.last_successful_offset
        return self.last_successful_offset + self.page_size

    def update_progress(self, offset: int, page_records: int, batch_bytes: int) -> None:
        if offset < self.last_successful_offset:
            raise ValueError(
                f"offset must not move backwards ({offset} < {self.last_successful_offset})"
            )
        self.last_successful_offset = offset
        self.records_processed = min(self.records_processed + page_records, self.total_records)
        self.pages_fetched += 1
        self.batch_bytes = batch_bytes
        self.last_updated_at = utcnow()

    def mark_completed(self) -> None:
        now = utcnow()
        self.completed = True
        self.in_progress = False
        self.finished_at = now
        self.last_updated_at = now


class CompanyInfo(BaseModel):
    """Subset of ``company`` needed for validation; other keys are ignored."""

    department: str

    @field_validator("department")
    @classmethod
    def department_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class UserRecord(BaseModel):
    """User record schema with validation rules.

    Validates against requirements:
    - id: strict integer (booleans and numeric strings rejected), positive
    - firstName: string, non-blank
    - email: local@domain format
    - age: integer between 18 and 65 inclusive
    - company.department: string, non-blank

    Pydantic reports every failing field, so one error per violated rule.
    """

    id: int = Field(..., gt=0, strict=True, description="User ID")
    firstName: str = Field(..., description="First name")
    email: str = Field(..., description="Email address")
    age: int = Field(..., ge=18, le=65, description="Age (18-65)")
    company: CompanyInfo = Field(..., description="Company information")

    @field_validator("firstName")
    @classmethod
    def first_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        if not EMAIL_PATTERN.match(v):
            raise ValueError("must match local@domain format")
        return v


class ValidationOutcome(BaseModel):
    """Result of validating one raw record."""

    record: Any
    valid: bool
    errors: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def errors_match_validity(self) -> "ValidationOutcome":
        if self.valid == bool(self.errors):
            raise ValueError("valid outcomes carry no errors; invalid ones carry at least one")
        return self


class DeadLetterEntry(CamelModel):
    """Rejected record with every reason it failed."""

    original_record: Any
    errors: list[str]
    errored_at: datetime = Field(default_factory=utcnow)


class BatchManifest(CamelModel):
    """Summary of a fully transformed batch, used to trigger delivery."""

    source_batch_id: str
    raw_file_path: str
    success_file_path: str
    dead_letter_file_path: str
    total_records: int = Field(..., ge=0)
    valid_records: int = Field(..., ge=0)
    invalid_records: int = Field(..., ge=0)
    processed_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def counts_add_up(self) -> "BatchManifest":
        if self.total_records != self.valid_records + self.invalid_records:
            raise ValueError("totalRecords must equal validRecords + invalidRecords")
        return self

    def deliverable_files(self) -> list[tuple[str, int]]:
        """(path, record count) for every referenced file that holds records."""
        candidates = [
            (self.raw_file_path, self.total_records),
            (self.success_file_path, self.valid_records),
            (self.dead_letter_file_path, self.invalid_records),
        ]
        return [(path, count) for path, count in candidates if count > 0]


class TransformProgress(CamelModel):
    """Restart marker for one batch inside the transformer."""

    raw_file_path: str
    success_file_path: str
    dead_letter_file_path: str
    lines_done: int = Field(default=0, ge=0)
    success_bytes: int = Field(default=0, ge=0)
    dead_letter_bytes: int = Field(default=0, ge=0)
    completed: bool = False
    announced: bool = False


class DeliveryReceipt(CamelModel):
    """Proof that a local file reached the remote endpoint."""

    file_path: str
    remote_path: str
    uploaded_at: datetime = Field(default_factory=utcnow)
    checksum: str
    size: int = Field(..., ge=0)
    encrypted: bool


class FileMetadata(CamelModel):
    """Row describing one produced file and whether it was delivered."""

    file_path: str
    filename: str
    total_records: int = Field(..., ge=0)
    source_batch_id: str
    processed_at: datetime
    delivered: bool = False
    delivered_at: Optional[datetime] = None


class RedisEvent(BaseModel):
    """Redis Pub/Sub event payload for a completed raw batch.

    {
        "type": "raw_created",
        "path": "/data/raw_users/records_20250115_031500.jsonl",
        "ts": "2025-01-15T03:15:02Z"
    }
    """

    type: str = Field(..., description="Event type")
    path: str = Field(..., description="File path")
    ts: datetime = Field(default_factory=utcnow, description="Timestamp")


class ManifestEvent(BaseModel):
    """Redis Pub/Sub event carrying a BatchManifest."""

    type: Literal["batch_processed"] = "batch_processed"
    ts: datetime = Field(default_factory=utcnow)
    manifest: BatchManifest


class TriggerResponse(BaseModel):
    """Structured answer of the manual trigger surface."""

    status: Literal["success", "error", "busy", "available"]
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    state: Optional[dict[str, Any]] = None
