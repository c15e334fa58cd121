"""Persistent and transient data models for identity verification.

``CanonicalRecord`` is the unit of work: one identity (PAN, optionally paired
with an Aadhaar number) submitted by one owner.  ``UploadBatch`` groups the
records that came from a single spreadsheet.  The remaining models are
request/response shapes built from those two.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from kycflow.models.enums import BatchStatus, RecordState, VerificationType

NOT_AVAILABLE = "Not Available"

NaturalKey = tuple[str, ...]


def _now() -> datetime:
    return datetime.now(UTC)


def natural_key(
    verification_type: VerificationType,
    identity_id: str | None,
    secondary_id: str,
) -> NaturalKey:
    """Identifier tuple that must be unique per owner and verification type."""
    if verification_type == VerificationType.AADHAAR_PAN:
        return (identity_id or "", secondary_id)
    return (secondary_id,)


class CanonicalRecord(BaseModel):
    """A normalized identity record and its verification state.

    Created at ``pending`` by the ingest engine and afterwards mutated only
    through the verification state machine.
    """

    model_config = {"frozen": False}

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    verification_type: VerificationType
    identity_id: str | None = None
    secondary_id: str
    display_name: str = NOT_AVAILABLE
    guardian_name: str = NOT_AVAILABLE
    date_of_birth: date | None = None
    owner_id: str
    source_file_id: str | None = None
    row_number: int | None = None
    state: RecordState = RecordState.PENDING
    verification_payload: dict[str, Any] | None = None
    failure_reason: str | None = None
    error_category: str | None = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    verified_at: datetime | None = None

    @property
    def natural_key(self) -> NaturalKey:
        return natural_key(self.verification_type, self.identity_id, self.secondary_id)


class UploadBatch(BaseModel):
    """One accepted file submission and its per-state record counts.

    ``verified_count + failed_count + pending_count`` never exceeds
    ``total_records``; rows rejected before ingest are not counted.
    """

    model_config = {"frozen": False}

    batch_id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str
    verification_type: VerificationType
    original_filename: str
    size_bytes: int = Field(default=0, ge=0)
    total_records: int = Field(default=0, ge=0)
    accepted_count: int = Field(default=0, ge=0)
    rejected_count: int = Field(default=0, ge=0)
    verified_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    pending_count: int = Field(default=0, ge=0)
    processing_count: int = Field(default=0, ge=0)
    status: BatchStatus = BatchStatus.UPLOADED
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class RowRejection(BaseModel):
    """A row excluded from ingestion, with its 1-based spreadsheet row number."""

    row_number: int
    raw_identifiers: dict[str, Any] = Field(default_factory=dict)
    reason: str
    field: str | None = None


class UploadReport(BaseModel):
    """Outcome of ingesting one file, returned to the uploader."""

    batch_id: str
    verification_type: VerificationType
    total_rows: int
    accepted: int
    rejected: int
    accepted_record_ids: list[str] = Field(default_factory=list)
    rejections: list[RowRejection] = Field(default_factory=list)


class StateCounts(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    verified: int = 0
    failed: int = 0

    @classmethod
    def from_counts(cls, counts: dict[RecordState, int]) -> StateCounts:
        values = {state.value: counts.get(state, 0) for state in RecordState}
        return cls(total=sum(values.values()), **values)


class UserStats(BaseModel):
    """Per-owner counters derived from persisted record state.

    A rebuildable cache entry, never a source of truth.
    """

    owner_id: str
    by_type: dict[VerificationType, StateCounts] = Field(default_factory=dict)
    totals: StateCounts = Field(default_factory=StateCounts)
    computed_at: datetime = Field(default_factory=_now)


class ApiUsage(BaseModel):
    owner_id: str
    total: int = 0
    by_provider: dict[str, int] = Field(default_factory=dict)
    last_updated: datetime | None = None


class Page(BaseModel):
    """One page of records plus pagination metadata."""

    items: list[CanonicalRecord]
    page: int
    limit: int
    total: int
    pages: int


class BatchStats(BaseModel):
    """A batch together with counts re-derived from its records."""

    batch: UploadBatch
    counts: StateCounts
