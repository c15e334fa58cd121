"""Resolve free-form spreadsheet headers to canonical field names.

Each verification type has an ordered alias table: for every canonical
field, the header spellings we accept, highest priority first.  A file that
carries both ``PAN`` and ``PAN No`` resolves to whichever appears first in
the table, never to whichever the file happens to list first.

Mapping is total and never raises; deciding whether a partial mapping is
acceptable is up to the caller (see :func:`missing_fields`).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from kycflow.models.enums import CanonicalField, VerificationType

AliasTable = Mapping[CanonicalField, Sequence[str]]

_NAME_ALIASES: Final[tuple[str, ...]] = ("name", "Name", "NAME", "full_name", "Full Name")
_FATHER_NAME_ALIASES: Final[tuple[str, ...]] = (
    "father_name", "Father Name", "fatherName", "FATHER_NAME",
)

PAN_KYC_ALIASES: Final[AliasTable] = {
    CanonicalField.PAN_NUMBER: ("pan_number", "PAN Number", "PAN No", "PAN", "pan"),
    CanonicalField.NAME: _NAME_ALIASES,
    CanonicalField.FATHER_NAME: _FATHER_NAME_ALIASES,
    CanonicalField.DATE_OF_BIRTH: ("date_of_birth", "Date of Birth", "DOB", "dob", "birth_date"),
}

AADHAAR_PAN_ALIASES: Final[AliasTable] = {
    CanonicalField.AADHAAR_NUMBER: (
        "aadhaar_number", "AADHAAR", "Aadhaar Number", "aadhaar", "AADHAAR_NUMBER",
    ),
    CanonicalField.PAN_NUMBER: ("pan_number", "PAN No", "PAN Number", "PAN", "pan", "PAN_NO"),
    CanonicalField.NAME: _NAME_ALIASES,
    CanonicalField.FATHER_NAME: _FATHER_NAME_ALIASES,
    CanonicalField.DATE_OF_BIRTH: ("date_of_birth", "Date of Birth", "DOB", "dob", "birth_date"),
}

ALIAS_TABLES: Final[Mapping[VerificationType, AliasTable]] = {
    VerificationType.PAN_KYC: PAN_KYC_ALIASES,
    VerificationType.AADHAAR_PAN: AADHAAR_PAN_ALIASES,
}

REQUIRED_FIELDS: Final[Mapping[VerificationType, tuple[CanonicalField, ...]]] = {
    VerificationType.PAN_KYC: (
        CanonicalField.PAN_NUMBER,
        CanonicalField.NAME,
        CanonicalField.DATE_OF_BIRTH,
    ),
    VerificationType.AADHAAR_PAN: (
        CanonicalField.AADHAAR_NUMBER,
        CanonicalField.PAN_NUMBER,
    ),
}


@dataclass(frozen=True)
class ColumnMapping:
    """Canonical field -> observed header, built once per file."""

    mapping: dict[CanonicalField, str] = field(default_factory=dict)

    def header_for(self, canonical: CanonicalField) -> str | None:
        return self.mapping.get(canonical)

    def apply(self, row: Mapping[str, object]) -> dict[CanonicalField, object]:
        """Re-key one raw row by canonical field; unmapped fields are omitted."""
        return {canonical: row.get(header) for canonical, header in self.mapping.items()}


def resolve_columns(headers: Iterable[str], aliases: AliasTable) -> ColumnMapping:
    """Map each canonical field to its first alias present in *headers*."""
    observed = set(headers)
    resolved: dict[CanonicalField, str] = {}
    for canonical, candidates in aliases.items():
        for candidate in candidates:
            if candidate in observed:
                resolved[canonical] = candidate
                break
    return ColumnMapping(resolved)


def missing_fields(
    mapping: ColumnMapping,
    required: Iterable[CanonicalField],
) -> list[CanonicalField]:
    return [f for f in required if mapping.header_for(f) is None]
