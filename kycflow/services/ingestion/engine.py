"""Ingest engine -- spreadsheet rows in, pending identity records out.

Stages, all executed inside the upload request:

1. **Map** headers to canonical fields with the verification type's alias
   table.  A missing required column rejects the whole file before any
   write happens.
2. **Validate** each row (:class:`RowValidator`); failures become row-level
   rejections and do not stop the file.
3. **Deduplicate** against the owner's existing records with one batched
   existence query over the full candidate key set, plus within the file
   itself (first occurrence wins).
4. **Insert** the survivors in one all-or-nothing bulk operation.

The owning :class:`UploadBatch` is created once the existence query has
succeeded and its counts are set once the insert has succeeded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from kycflow.models import (
    BatchStatus,
    RowRejection,
    UploadBatch,
    UploadReport,
    VerificationType,
)
from kycflow.services.errors import DuplicateRecordError, FileRejectedError, IngestionFailedError
from kycflow.services.ingestion.column_mapper import (
    ALIAS_TABLES,
    REQUIRED_FIELDS,
    AliasTable,
    missing_fields,
    resolve_columns,
)
from kycflow.services.ingestion.sheet_reader import DEFAULT_MAX_BYTES, read_sheet
from kycflow.services.ingestion.validator import REASON_DUPLICATE, RecordDraft, RowValidator
from kycflow.services.store import RecordStore

logger = structlog.get_logger(__name__)


def _observed_headers(rows: Sequence[Mapping[str, Any]]) -> list[str]:
    headers: dict[str, None] = {}
    for row in rows:
        for key in row:
            headers.setdefault(str(key), None)
    return list(headers)


class IngestEngine:
    """Turns uploaded rows into persisted ``pending`` records.

    Parameters
    ----------
    store:
        Record store used for the existence query, bulk insert and batch
        bookkeeping.
    max_upload_bytes:
        Size limit applied when reading raw file content.
    alias_tables:
        Per-type alias configuration; defaults to :data:`ALIAS_TABLES`.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        max_upload_bytes: int = DEFAULT_MAX_BYTES,
        alias_tables: Mapping[VerificationType, AliasTable] | None = None,
    ) -> None:
        self._store = store
        self._max_upload_bytes = max_upload_bytes
        self._alias_tables = alias_tables if alias_tables is not None else ALIAS_TABLES

    @property
    def max_upload_bytes(self) -> int:
        return self._max_upload_bytes

    async def ingest_file(
        self,
        owner_id: str,
        verification_type: VerificationType,
        filename: str,
        content: bytes,
    ) -> UploadReport:
        """Read *content* as a spreadsheet and ingest its rows."""
        rows = await asyncio.to_thread(
            read_sheet, content, filename, max_bytes=self._max_upload_bytes
        )
        return await self.ingest_rows(
            owner_id,
            verification_type,
            rows,
            filename=filename,
            size_bytes=len(content),
        )

    async def ingest_rows(
        self,
        owner_id: str,
        verification_type: VerificationType,
        rows: Sequence[Mapping[str, Any]],
        *,
        filename: str,
        size_bytes: int = 0,
    ) -> UploadReport:
        """Ingest already-parsed rows (header -> cell value)."""
        if not rows:
            raise FileRejectedError("no data found in the file")

        headers = _observed_headers(rows)
        mapping = resolve_columns(headers, self._alias_tables[verification_type])
        missing = missing_fields(mapping, REQUIRED_FIELDS[verification_type])
        if missing:
            logger.info(
                "ingest.file_rejected",
                owner_id=owner_id,
                filename=filename,
                missing=[m.value for m in missing],
                headers=headers,
            )
            raise FileRejectedError(
                f"missing required columns: {', '.join(m.value for m in missing)}. "
                f"Detected columns: {', '.join(headers)}",
                detected_columns=headers,
            )

        validator = RowValidator(verification_type)
        rejections: list[RowRejection] = []
        drafts: list[RecordDraft] = []
        seen_keys: set[tuple[str, ...]] = set()

        for index, raw_row in enumerate(rows):
            outcome = validator.validate(mapping.apply(raw_row), index)
            if isinstance(outcome, RowRejection):
                rejections.append(outcome)
                continue
            if outcome.natural_key in seen_keys:
                rejections.append(self._duplicate(outcome))
                continue
            seen_keys.add(outcome.natural_key)
            drafts.append(outcome)

        # Nothing is written until the existence query and the batch row succeed.
        try:
            existing = await self._store.existing_keys(owner_id, verification_type, seen_keys)
            batch = await self._store.create_batch(
                UploadBatch(
                    owner_id=owner_id,
                    verification_type=verification_type,
                    original_filename=filename,
                    size_bytes=size_bytes,
                    total_records=len(rows),
                )
            )
        except Exception as exc:
            logger.error("ingest.lookup_failed", owner_id=owner_id, filename=filename, exc_info=True)
            raise IngestionFailedError("could not check existing records") from exc

        fresh: list[RecordDraft] = []
        for draft in drafts:
            if draft.natural_key in existing:
                rejections.append(self._duplicate(draft))
            else:
                fresh.append(draft)

        records = [draft.to_record(owner_id, batch.batch_id) for draft in fresh]
        if records:
            try:
                await self._store.insert_many(records)
            except DuplicateRecordError as exc:
                await self._store.update_batch(batch.batch_id, status=BatchStatus.FAILED)
                logger.warning(
                    "ingest.insert_conflict",
                    batch_id=batch.batch_id,
                    conflicts=len(exc.keys),
                )
                raise IngestionFailedError(
                    "records were created concurrently for the same identities; "
                    "no rows from this file were saved"
                ) from exc
            except Exception as exc:
                await self._store.update_batch(batch.batch_id, status=BatchStatus.FAILED)
                logger.error("ingest.insert_failed", batch_id=batch.batch_id, exc_info=True)
                raise IngestionFailedError("could not save records") from exc

        rejections.sort(key=lambda r: r.row_number)
        await self._store.update_batch(
            batch.batch_id,
            accepted_count=len(records),
            rejected_count=len(rejections),
            pending_count=len(records),
            status=BatchStatus.PROCESSING if records else BatchStatus.COMPLETED,
        )

        logger.info(
            "ingest.completed",
            owner_id=owner_id,
            batch_id=batch.batch_id,
            verification_type=verification_type.value,
            total_rows=len(rows),
            accepted=len(records),
            rejected=len(rejections),
        )

        return UploadReport(
            batch_id=batch.batch_id,
            verification_type=verification_type,
            total_rows=len(rows),
            accepted=len(records),
            rejected=len(rejections),
            accepted_record_ids=[r.record_id for r in records],
            rejections=rejections,
        )

    @staticmethod
    def _duplicate(draft: RecordDraft) -> RowRejection:
        return RowRejection(
            row_number=draft.row_number,
            raw_identifiers=draft.raw_identifiers,
            reason=REASON_DUPLICATE,
        )
