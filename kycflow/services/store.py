"""Record store for identity records, upload batches and API usage counters.

The pipeline talks to persistence through the :class:`RecordStore`
protocol.  :class:`InMemoryRecordStore` is the process-local implementation;
it keeps a unique index on ``(owner, verification type, natural key)`` and
applies every write under one :class:`asyncio.Lock`, so uniqueness is
enforced by the store itself rather than by callers' pre-checks.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from kycflow.models import (
    ApiUsage,
    CanonicalRecord,
    NaturalKey,
    RecordState,
    UploadBatch,
    VerificationType,
)
from kycflow.services.errors import DuplicateRecordError, RecordNotFoundError

logger = structlog.get_logger(__name__)

_IndexKey = tuple[str, VerificationType, NaturalKey]


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RecordStore(Protocol):
    """Async persistence interface used by the pipeline."""

    # -- Batches ---------------------------------------------------------------

    async def create_batch(self, batch: UploadBatch) -> UploadBatch: ...

    async def get_batch(self, batch_id: str) -> UploadBatch | None: ...

    async def update_batch(self, batch_id: str, **changes: Any) -> UploadBatch: ...

    async def list_batches(self, owner_id: str) -> list[UploadBatch]: ...

    async def delete_batch(self, batch_id: str) -> int: ...

    # -- Records ---------------------------------------------------------------

    async def existing_keys(
        self,
        owner_id: str,
        verification_type: VerificationType,
        keys: Iterable[NaturalKey],
    ) -> set[NaturalKey]: ...

    async def insert_many(self, records: list[CanonicalRecord]) -> list[CanonicalRecord]: ...

    async def get(self, record_id: str) -> CanonicalRecord | None: ...

    async def get_many(self, record_ids: Iterable[str]) -> list[CanonicalRecord]: ...

    async def find(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
        identity_id: str | None = None,
        secondary_id: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CanonicalRecord]: ...

    async def count(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
    ) -> int: ...

    async def count_by_state(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
    ) -> dict[RecordState, int]: ...

    async def transition(
        self,
        record_id: str,
        expected: RecordState,
        target: RecordState,
        **changes: Any,
    ) -> CanonicalRecord | None: ...

    # -- Usage counters --------------------------------------------------------

    async def increment_api_calls(self, owner_id: str, provider: str) -> ApiUsage: ...

    async def get_api_calls(self, owner_id: str) -> ApiUsage: ...

    async def reset_api_calls(self, owner_id: str) -> ApiUsage: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryRecordStore:
    """Dict-backed :class:`RecordStore`.

    Records are copied on the way in and out so callers never hold a live
    reference into the store.  Sufficient for single-process async
    workloads and for tests.
    """

    __slots__ = ("_batches", "_index", "_lock", "_records", "_usage")

    def __init__(self) -> None:
        self._records: dict[str, CanonicalRecord] = {}
        self._batches: dict[str, UploadBatch] = {}
        self._index: dict[_IndexKey, str] = {}
        self._usage: dict[str, ApiUsage] = {}
        self._lock = asyncio.Lock()

    # -- Batches ---------------------------------------------------------------

    async def create_batch(self, batch: UploadBatch) -> UploadBatch:
        async with self._lock:
            self._batches[batch.batch_id] = batch.model_copy(deep=True)
            return batch.model_copy(deep=True)

    async def get_batch(self, batch_id: str) -> UploadBatch | None:
        async with self._lock:
            batch = self._batches.get(batch_id)
            return batch.model_copy(deep=True) if batch is not None else None

    async def update_batch(self, batch_id: str, **changes: Any) -> UploadBatch:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise RecordNotFoundError(f"batch {batch_id} not found")
            updated = batch.model_copy(update={**changes, "updated_at": _now()})
            self._batches[batch_id] = updated
            return updated.model_copy(deep=True)

    async def list_batches(self, owner_id: str) -> list[UploadBatch]:
        async with self._lock:
            batches = [b for b in self._batches.values() if b.owner_id == owner_id]
        batches.sort(key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in batches]

    async def delete_batch(self, batch_id: str) -> int:
        """Delete a batch and every record that came from it."""
        async with self._lock:
            self._batches.pop(batch_id, None)
            doomed = [r for r in self._records.values() if r.source_file_id == batch_id]
            for record in doomed:
                del self._records[record.record_id]
                self._index.pop(self._index_key(record), None)
        logger.info("store.batch_deleted", batch_id=batch_id, records=len(doomed))
        return len(doomed)

    # -- Records ---------------------------------------------------------------

    @staticmethod
    def _index_key(record: CanonicalRecord) -> _IndexKey:
        return (record.owner_id, record.verification_type, record.natural_key)

    async def existing_keys(
        self,
        owner_id: str,
        verification_type: VerificationType,
        keys: Iterable[NaturalKey],
    ) -> set[NaturalKey]:
        async with self._lock:
            return {
                key for key in keys
                if (owner_id, verification_type, key) in self._index
            }

    async def insert_many(self, records: list[CanonicalRecord]) -> list[CanonicalRecord]:
        """Insert all *records* or none of them.

        Raises :class:`DuplicateRecordError` if any natural key is already
        taken for its owner, or repeats within *records*.
        """
        async with self._lock:
            seen: set[_IndexKey] = set()
            clashes: list[NaturalKey] = []
            for record in records:
                key = self._index_key(record)
                if key in self._index or key in seen:
                    clashes.append(record.natural_key)
                seen.add(key)
            if clashes:
                raise DuplicateRecordError(clashes)

            for record in records:
                stored = record.model_copy(deep=True)
                self._records[stored.record_id] = stored
                self._index[self._index_key(stored)] = stored.record_id
            return [r.model_copy(deep=True) for r in records]

    async def get(self, record_id: str) -> CanonicalRecord | None:
        async with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    async def get_many(self, record_ids: Iterable[str]) -> list[CanonicalRecord]:
        async with self._lock:
            return [
                self._records[rid].model_copy(deep=True)
                for rid in record_ids
                if rid in self._records
            ]

    def _matching(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
        identity_id: str | None = None,
        secondary_id: str | None = None,
    ) -> list[CanonicalRecord]:
        return [
            r for r in self._records.values()
            if r.owner_id == owner_id
            and (verification_type is None or r.verification_type == verification_type)
            and (source_file_id is None or r.source_file_id == source_file_id)
            and (state is None or r.state == state)
            and (identity_id is None or r.identity_id == identity_id)
            and (secondary_id is None or r.secondary_id == secondary_id)
        ]

    async def find(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
        identity_id: str | None = None,
        secondary_id: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CanonicalRecord]:
        """Return matching records, newest first."""
        async with self._lock:
            matches = self._matching(
                owner_id,
                verification_type=verification_type,
                source_file_id=source_file_id,
                state=state,
                identity_id=identity_id,
                secondary_id=secondary_id,
            )
        matches.sort(key=lambda r: (r.created_at, r.row_number or 0), reverse=True)
        end = None if limit is None else offset + limit
        return [r.model_copy(deep=True) for r in matches[offset:end]]

    async def count(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
    ) -> int:
        async with self._lock:
            return len(
                self._matching(
                    owner_id,
                    verification_type=verification_type,
                    source_file_id=source_file_id,
                    state=state,
                )
            )

    async def count_by_state(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
    ) -> dict[RecordState, int]:
        """Grouped count of matching records per state."""
        async with self._lock:
            counts = Counter(
                r.state
                for r in self._matching(
                    owner_id,
                    verification_type=verification_type,
                    source_file_id=source_file_id,
                )
            )
        return dict(counts)

    async def transition(
        self,
        record_id: str,
        expected: RecordState,
        target: RecordState,
        **changes: Any,
    ) -> CanonicalRecord | None:
        """Compare-and-set the record's state.

        Returns the updated record, or ``None`` when the record is missing
        or no longer in *expected*.
        """
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or record.state != expected:
                return None
            updated = record.model_copy(
                update={**changes, "state": target, "updated_at": _now()},
            )
            self._records[record_id] = updated
            return updated.model_copy(deep=True)

    # -- Usage counters --------------------------------------------------------

    async def increment_api_calls(self, owner_id: str, provider: str) -> ApiUsage:
        async with self._lock:
            usage = self._usage.get(owner_id) or ApiUsage(owner_id=owner_id)
            by_provider = dict(usage.by_provider)
            by_provider[provider] = by_provider.get(provider, 0) + 1
            usage = usage.model_copy(
                update={
                    "total": usage.total + 1,
                    "by_provider": by_provider,
                    "last_updated": _now(),
                }
            )
            self._usage[owner_id] = usage
            return usage.model_copy(deep=True)

    async def get_api_calls(self, owner_id: str) -> ApiUsage:
        async with self._lock:
            usage = self._usage.get(owner_id) or ApiUsage(owner_id=owner_id)
            return usage.model_copy(deep=True)

    async def reset_api_calls(self, owner_id: str) -> ApiUsage:
        async with self._lock:
            usage = ApiUsage(owner_id=owner_id, last_updated=_now())
            self._usage[owner_id] = usage
            return usage.model_copy(deep=True)
