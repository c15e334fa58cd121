"""Owner-scoped queries and bulk operations over records and batches.

Everything here checks ownership first: a batch or record belonging to a
different owner is reported exactly like a missing one.
"""

from __future__ import annotations

import math

import structlog

from kycflow.models import (
    BatchStats,
    CanonicalRecord,
    Page,
    RecordState,
    StateCounts,
    UploadBatch,
    VerificationType,
)
from kycflow.services.errors import RecordNotFoundError
from kycflow.services.stats import StatsAggregator
from kycflow.services.store import RecordStore
from kycflow.services.verification.state_machine import (
    VerificationStateMachine,
    refresh_batch_counts,
)

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


class RecordService:
    """Read side and batch maintenance used by the HTTP layer."""

    def __init__(
        self,
        store: RecordStore,
        state_machine: VerificationStateMachine,
        stats: StatsAggregator,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._stats = stats

    # -- Records ---------------------------------------------------------------

    async def list_records(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        state: RecordState | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        return await self._page(
            owner_id,
            verification_type=verification_type,
            state=state,
            page=page,
            limit=limit,
        )

    async def get_record(self, owner_id: str, record_id: str) -> CanonicalRecord:
        record = await self._store.get(record_id)
        if record is None or record.owner_id != owner_id:
            raise RecordNotFoundError(f"record {record_id} not found")
        return record

    async def find_record(
        self,
        owner_id: str,
        *,
        identity_id: str | None = None,
        secondary_id: str | None = None,
    ) -> CanonicalRecord:
        """Most recent record matching the given identity numbers."""
        if not identity_id and not secondary_id:
            raise ValueError("identity_id or secondary_id is required")
        matches = await self._store.find(
            owner_id,
            identity_id=identity_id.strip() if identity_id else None,
            secondary_id=secondary_id.strip().upper() if secondary_id else None,
            limit=1,
        )
        if not matches:
            raise RecordNotFoundError("no record found for the given identifiers")
        return matches[0]

    # -- Batches ---------------------------------------------------------------

    async def list_batches(self, owner_id: str) -> list[UploadBatch]:
        return await self._store.list_batches(owner_id)

    async def _owned_batch(self, owner_id: str, batch_id: str) -> UploadBatch:
        batch = await self._store.get_batch(batch_id)
        if batch is None or batch.owner_id != owner_id:
            raise RecordNotFoundError(f"batch {batch_id} not found")
        return batch

    async def list_batch_records(
        self,
        owner_id: str,
        batch_id: str,
        *,
        state: RecordState | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        await self._owned_batch(owner_id, batch_id)
        return await self._page(
            owner_id, source_file_id=batch_id, state=state, page=page, limit=limit
        )

    async def get_batch_stats(self, owner_id: str, batch_id: str) -> BatchStats:
        batch = await self._owned_batch(owner_id, batch_id)
        counts = await self._store.count_by_state(owner_id, source_file_id=batch_id)
        return BatchStats(batch=batch, counts=StateCounts.from_counts(counts))

    async def retry_failed_in_batch(
        self,
        owner_id: str,
        batch_id: str,
        record_ids: list[str] | None = None,
    ) -> list[str]:
        """Move the batch's failed records (or the listed subset) back to pending."""
        await self._owned_batch(owner_id, batch_id)
        failed = await self._store.find(
            owner_id, source_file_id=batch_id, state=RecordState.FAILED
        )
        candidates = [r.record_id for r in failed]
        if record_ids is not None:
            wanted = set(record_ids)
            candidates = [rid for rid in candidates if rid in wanted]

        requeued = await self._state_machine.retry_failed(candidates)
        await refresh_batch_counts(self._store, batch_id)
        logger.info(
            "records.batch_retry",
            owner_id=owner_id,
            batch_id=batch_id,
            requeued=len(requeued),
        )
        return requeued

    async def delete_batch(self, owner_id: str, batch_id: str) -> int:
        """Delete the batch and all its records; returns the record count."""
        await self._owned_batch(owner_id, batch_id)
        deleted = await self._store.delete_batch(batch_id)
        await self._stats.force_refresh(owner_id)
        return deleted

    # -- Helpers ---------------------------------------------------------------

    async def _page(
        self,
        owner_id: str,
        *,
        verification_type: VerificationType | None = None,
        source_file_id: str | None = None,
        state: RecordState | None = None,
        page: int,
        limit: int,
    ) -> Page:
        page, limit = _page_bounds(page, limit)
        total = await self._store.count(
            owner_id,
            verification_type=verification_type,
            source_file_id=source_file_id,
            state=state,
        )
        items = await self._store.find(
            owner_id,
            verification_type=verification_type,
            source_file_id=source_file_id,
            state=state,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return Page(
            items=items,
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        )
