"""Record query and direct-submission endpoints.

- ``GET  /api/v1/records``         -- paginated, filter by type and state.
- ``GET  /api/v1/records/{id}``    -- one record.
- ``POST /api/v1/records/lookup``  -- latest record for an Aadhaar and/or PAN.
- ``POST /api/v1/records/verify``  -- submit identities without a spreadsheet.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from kycflow.api.deps import get_ingest_engine, get_record_service, get_worker
from kycflow.middleware.owner import require_owner
from kycflow.models import (
    CanonicalField,
    CanonicalRecord,
    Page,
    RecordState,
    UploadReport,
    VerificationType,
)
from kycflow.services.errors import FileRejectedError, IngestionFailedError, RecordNotFoundError
from kycflow.services.ingestion import IngestEngine
from kycflow.services.records import MAX_PAGE_SIZE, RecordService
from kycflow.services.verification import VerificationJob, VerificationWorker

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/records", tags=["records"])

MAX_DIRECT_RECORDS = 100


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class LookupRequest(BaseModel):
    aadhaar_number: str | None = None
    pan_number: str | None = None


class IdentityInput(BaseModel):
    """One identity as submitted in a JSON body.

    Values are validated by the same row rules as spreadsheet cells, so a
    bad value becomes a rejection in the report rather than a 422.
    """

    pan_number: str | None = None
    aadhaar_number: str | None = None
    name: str | None = None
    father_name: str | None = None
    date_of_birth: str | None = None

    def as_row(self) -> dict[str, str | None]:
        return {field.value: getattr(self, field.value) for field in CanonicalField}


class VerifyRequest(BaseModel):
    verification_type: VerificationType
    records: list[IdentityInput] = Field(..., min_length=1, max_length=MAX_DIRECT_RECORDS)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=Page)
async def list_records(
    verification_type: VerificationType | None = None,
    state: RecordState | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> Page:
    return await service.list_records(
        owner_id, verification_type=verification_type, state=state, page=page, limit=limit
    )


@router.post("/verify", response_model=UploadReport)
async def verify_records(
    body: VerifyRequest,
    owner_id: str = Depends(require_owner),
    engine: IngestEngine = Depends(get_ingest_engine),
    worker: VerificationWorker = Depends(get_worker),
) -> UploadReport:
    """Store one or more identities and queue them for verification.

    Follows the upload path: duplicates of existing records are rejected
    and accepted records are verified in the background.
    """
    rows = [record.as_row() for record in body.records]
    try:
        report = await engine.ingest_rows(
            owner_id, body.verification_type, rows, filename="api-request"
        )
    except FileRejectedError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except IngestionFailedError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    worker.submit(
        VerificationJob(
            owner_id=owner_id,
            record_ids=tuple(report.accepted_record_ids),
            batch_id=report.batch_id,
        )
    )
    logger.info(
        "api.records.submitted",
        owner_id=owner_id,
        batch_id=report.batch_id,
        accepted=report.accepted,
        rejected=report.rejected,
    )
    return report


@router.post("/lookup", response_model=CanonicalRecord)
async def lookup_record(
    body: LookupRequest,
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> CanonicalRecord:
    if not body.aadhaar_number and not body.pan_number:
        raise HTTPException(status_code=400, detail="aadhaar_number or pan_number is required.")
    try:
        return await service.find_record(
            owner_id, identity_id=body.aadhaar_number, secondary_id=body.pan_number
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{record_id}", response_model=CanonicalRecord)
async def get_record(
    record_id: str,
    owner_id: str = Depends(require_owner),
    service: RecordService = Depends(get_record_service),
) -> CanonicalRecord:
    try:
        return await service.get_record(owner_id, record_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
