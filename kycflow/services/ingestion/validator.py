"""Per-row validation and normalization of identity rows.

Rules run in a fixed order and the first failure wins:

1. every required canonical field has a value,
2. Aadhaar number is exactly 12 ASCII digits,
3. PAN is 5 letters + 4 digits + 1 letter (any case, stored upper-case),
4. date of birth parses to a calendar date.

A passing row becomes a :class:`RecordDraft`; a failing one becomes a
:class:`~kycflow.models.RowRejection`.  Neither outcome raises.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Final

from kycflow.models import (
    NOT_AVAILABLE,
    CanonicalField,
    CanonicalRecord,
    NaturalKey,
    RowRejection,
    VerificationType,
    natural_key,
)
from kycflow.services.ingestion.column_mapper import REQUIRED_FIELDS

# Row 1 of the sheet is the header, so data row i (0-based) is sheet row i + 2.
HEADER_ROWS: Final[int] = 1

REASON_MISSING_FIELD: Final[str] = "missing required field"
REASON_INVALID_AADHAAR: Final[str] = "invalid national ID format (must be 12 digits)"
REASON_INVALID_PAN: Final[str] = "invalid tax ID format (expected 5 letters, 4 digits, 1 letter)"
REASON_INVALID_DOB: Final[str] = "invalid date of birth"
REASON_DUPLICATE: Final[str] = "combination already exists"

_AADHAAR_RE: Final[re.Pattern[str]] = re.compile(r"[0-9]{12}")
_PAN_RE: Final[re.Pattern[str]] = re.compile(r"[A-Za-z]{5}[0-9]{4}[A-Za-z]")
_ISO_PREFIX_RE: Final[re.Pattern[str]] = re.compile(r"^(\d{4}-\d{2}-\d{2})[ T]")

# Day-first wins for ambiguous slash dates.
_DATE_FORMATS: Final[tuple[str, ...]] = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
)

# Spreadsheet serial day 0.
_EXCEL_EPOCH: Final[date] = date(1899, 12, 30)
_MAX_EXCEL_SERIAL: Final[int] = 2_958_465  # 9999-12-31


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


def clean_cell(value: object) -> str | None:
    """Render a raw cell as stripped text; blanks become ``None``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        if value.is_integer():
            return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def parse_date(value: object) -> date | None:
    """Parse a date-of-birth cell; ``None`` if it is not a valid calendar date."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if value != value or not 0 < value <= _MAX_EXCEL_SERIAL:
            return None
        return _EXCEL_EPOCH + timedelta(days=int(value))

    text = str(value).strip()
    if not text:
        return None
    iso = _ISO_PREFIX_RE.match(text)
    if iso:
        text = iso.group(1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def is_valid_aadhaar(value: str | None) -> bool:
    return value is not None and _AADHAAR_RE.fullmatch(value) is not None


def is_valid_pan(value: str | None) -> bool:
    return value is not None and _PAN_RE.fullmatch(value) is not None


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordDraft:
    """A validated, normalized row that has not been persisted yet."""

    verification_type: VerificationType
    row_number: int
    secondary_id: str
    identity_id: str | None = None
    display_name: str = NOT_AVAILABLE
    guardian_name: str = NOT_AVAILABLE
    date_of_birth: date | None = None

    @property
    def natural_key(self) -> NaturalKey:
        return natural_key(self.verification_type, self.identity_id, self.secondary_id)

    @property
    def raw_identifiers(self) -> dict[str, str | None]:
        return {
            CanonicalField.AADHAAR_NUMBER.value: self.identity_id,
            CanonicalField.PAN_NUMBER.value: self.secondary_id,
        }

    def to_record(self, owner_id: str, source_file_id: str | None) -> CanonicalRecord:
        return CanonicalRecord(
            verification_type=self.verification_type,
            identity_id=self.identity_id,
            secondary_id=self.secondary_id,
            display_name=self.display_name,
            guardian_name=self.guardian_name,
            date_of_birth=self.date_of_birth,
            owner_id=owner_id,
            source_file_id=source_file_id,
            row_number=self.row_number,
        )


# ---------------------------------------------------------------------------
# RowValidator
# ---------------------------------------------------------------------------


class RowValidator:
    """Validates canonical rows for one verification type.

    Parameters
    ----------
    verification_type:
        Selects the required-field set and natural key shape.
    required:
        Override of the required canonical fields (defaults to
        :data:`REQUIRED_FIELDS` for the type).
    """

    def __init__(
        self,
        verification_type: VerificationType,
        required: tuple[CanonicalField, ...] | None = None,
    ) -> None:
        self.verification_type = verification_type
        self.required = required if required is not None else REQUIRED_FIELDS[verification_type]

    @staticmethod
    def row_number(index: int) -> int:
        """1-based sheet row number for the 0-based data row *index*."""
        return index + 1 + HEADER_ROWS

    def validate(
        self,
        row: Mapping[CanonicalField, object],
        index: int,
    ) -> RecordDraft | RowRejection:
        """Validate one row already re-keyed by canonical field."""
        row_number = self.row_number(index)
        aadhaar = clean_cell(row.get(CanonicalField.AADHAAR_NUMBER))
        pan = clean_cell(row.get(CanonicalField.PAN_NUMBER))
        raw_ids = {
            CanonicalField.AADHAAR_NUMBER.value: aadhaar,
            CanonicalField.PAN_NUMBER.value: pan,
        }

        def reject(reason: str, field: CanonicalField | None = None) -> RowRejection:
            return RowRejection(
                row_number=row_number,
                raw_identifiers=raw_ids,
                reason=reason,
                field=field.value if field is not None else None,
            )

        for required in self.required:
            if clean_cell(row.get(required)) is None:
                return reject(REASON_MISSING_FIELD, required)

        if self.verification_type == VerificationType.AADHAAR_PAN or aadhaar is not None:
            if not is_valid_aadhaar(aadhaar):
                return reject(REASON_INVALID_AADHAAR, CanonicalField.AADHAAR_NUMBER)

        if pan is None or not is_valid_pan(pan):
            return reject(REASON_INVALID_PAN, CanonicalField.PAN_NUMBER)

        raw_dob = row.get(CanonicalField.DATE_OF_BIRTH)
        dob: date | None = None
        if clean_cell(raw_dob) is not None:
            dob = parse_date(raw_dob)
            if dob is None:
                return reject(REASON_INVALID_DOB, CanonicalField.DATE_OF_BIRTH)

        return RecordDraft(
            verification_type=self.verification_type,
            row_number=row_number,
            identity_id=aadhaar,
            secondary_id=pan.upper(),
            display_name=clean_cell(row.get(CanonicalField.NAME)) or NOT_AVAILABLE,
            guardian_name=clean_cell(row.get(CanonicalField.FATHER_NAME)) or NOT_AVAILABLE,
            date_of_birth=dob,
        )
