"""Upload batch endpoints.

- ``GET    /api/v1/batches``                -- the owner's batches, newest first.
- ``GET    /api/v1/batches/{id}/records``   -- paginated records, optional state filter.
- ``GET    /api/v1/batches/{id}/stats``     -- per-state counts.
- ``POST   /api/v1/batches/{id}/retry``     -- re-queue failed records.
- ``DELETE /api/v1/batches/{id}``           -- delete the batch and its records.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from kycflow.api.deps import get_record_service, get_worker
from kycflow.middleware.owner import require_owner
from kycflow.models import BatchStats, Page, RecordState, UploadBatch
from kycflow.services.errors import RecordNotFoundError
from kycflow.services.records import MAX_PAGE_SIZE, RecordService
from kycflow.services.verification import VerificationJob, VerificationWorker

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class RetryRequest(BaseModel):
    record_ids: list[str] | None = None


class RetryResponse(BaseModel):
    batch_id: str
    requeued: int
    record_ids: list[str]


class DeleteResponse(BaseModel):
    batch_id: str
    deleted_records: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=list[UploadBatch])
async def list_batches(
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> list[UploadBatch]:
    return await service.list_batches(owner_id)


@router.get("/{batch_id}/records", response_model=Page)
async def list_batch_records(
    batch_id: str,
    state: RecordState | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> Page:
    try:
        return await service.list_batch_records(
            owner_id, batch_id, state=state, page=page, limit=limit
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{batch_id}/stats", response_model=BatchStats)
async def get_batch_stats(
    batch_id: str,
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> BatchStats:
    try:
        return await service.get_batch_stats(owner_id, batch_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{batch_id}/retry", response_model=RetryResponse)
async def retry_failed(
    batch_id: str,
    body: RetryRequest | None = None,
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
    worker: VerificationWorker = Depends(get_worker),
) -> RetryResponse:
    """Move failed records back to pending and verify them again."""
    record_ids = body.record_ids if body is not None else None
    try:
        requeued = await service.retry_failed_in_batch(owner_id, batch_id, record_ids)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    worker.submit(
        VerificationJob(owner_id=owner_id, record_ids=tuple(requeued), batch_id=batch_id)
    )
    return RetryResponse(batch_id=batch_id, requeued=len(requeued), record_ids=requeued)


@router.delete("/{batch_id}", response_model=DeleteResponse)
async def delete_batch(
    batch_id: str,
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> DeleteResponse:
    try:
        deleted = await service.delete_batch(owner_id, batch_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info("api.batch.deleted", owner_id=owner_id, batch_id=batch_id, records=deleted)
    return DeleteResponse(batch_id=batch_id, deleted_records=deleted)
