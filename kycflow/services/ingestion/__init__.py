"""File ingestion for identity verification uploads.

Turns an uploaded spreadsheet into persisted ``pending`` records:

  - sheet_reader   -- file boundary checks and pandas/openpyxl parsing
  - column_mapper  -- alias tables and header resolution
  - validator      -- per-row rules and normalization
  - engine         -- dedup against the store and all-or-nothing insert

Public API::

    from kycflow.services.ingestion import IngestEngine, RowValidator
"""

from __future__ import annotations

from kycflow.services.ingestion.column_mapper import (
    ALIAS_TABLES,
    REQUIRED_FIELDS,
    ColumnMapping,
    missing_fields,
    resolve_columns,
)
from kycflow.services.ingestion.engine import IngestEngine
from kycflow.services.ingestion.sheet_reader import check_upload, read_sheet
from kycflow.services.ingestion.validator import RecordDraft, RowValidator

__all__ = [
    "ALIAS_TABLES",
    "REQUIRED_FIELDS",
    "ColumnMapping",
    "IngestEngine",
    "RecordDraft",
    "RowValidator",
    "check_upload",
    "missing_fields",
    "read_sheet",
    "resolve_columns",
]
