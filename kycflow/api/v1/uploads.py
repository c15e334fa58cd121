"""Spreadsheet upload endpoint.

- ``POST /api/v1/uploads/{verification_type}`` -- ingest a file and queue
  its accepted records for background verification.

The response is the ingest report; verification has not started when it is
sent.  Poll the batch or stats endpoints for progress.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from kycflow.api.deps import get_ingest_engine, get_worker
from kycflow.middleware.owner import require_owner
from kycflow.models import UploadReport, VerificationType
from kycflow.services.errors import FileRejectedError, FileTooLargeError, IngestionFailedError
from kycflow.services.ingestion import IngestEngine, check_upload
from kycflow.services.verification import VerificationJob, VerificationWorker

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/{verification_type}", response_model=UploadReport)
async def upload_file(
    verification_type: VerificationType,
    file: UploadFile = File(..., description="Excel (.xlsx, .xls) or CSV file"),  # noqa: B008
    owner_id: str = Depends(require_owner),
    engine: IngestEngine = Depends(get_ingest_engine),
    worker: VerificationWorker = Depends(get_worker),
) -> UploadReport:
    """Validate, deduplicate and store the rows of an uploaded sheet."""
    filename = file.filename or ""

    try:
        # Multipart parsing already spooled the body; refuse it before reading into memory.
        if file.size is not None:
            check_upload(filename, file.size, engine.max_upload_bytes)
        content = await file.read()
        report = await engine.ingest_file(owner_id, verification_type, filename, content)
    except FileTooLargeError as exc:
        raise HTTPException(status_code=413, detail=exc.message) from exc
    except FileRejectedError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": exc.message, "detected_columns": exc.detected_columns},
        ) from exc
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
        "api.upload.accepted",
        owner_id=owner_id,
        batch_id=report.batch_id,
        accepted=report.accepted,
        rejected=report.rejected,
    )
    return report
