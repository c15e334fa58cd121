"""Tests for per-row validation, cell cleaning and date parsing."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from kycflow.models import NOT_AVAILABLE, CanonicalField, RowRejection, VerificationType
from kycflow.services.ingestion.validator import (
    REASON_INVALID_AADHAAR,
    REASON_INVALID_DOB,
    REASON_INVALID_PAN,
    REASON_MISSING_FIELD,
    RecordDraft,
    RowValidator,
    clean_cell,
    is_valid_aadhaar,
    is_valid_pan,
    parse_date,
)

F = CanonicalField


def _pan_row(**overrides: object) -> dict[CanonicalField, object]:
    row: dict[CanonicalField, object] = {
        F.PAN_NUMBER: "ABCDE1234F",
        F.NAME: "Asha Devi",
        F.DATE_OF_BIRTH: "15/08/1990",
    }
    row.update({F(k): v for k, v in overrides.items()})
    return row


def _link_row(**overrides: object) -> dict[CanonicalField, object]:
    row: dict[CanonicalField, object] = {
        F.AADHAAR_NUMBER: "123456789012",
        F.PAN_NUMBER: "ABCDE1234F",
    }
    row.update({F(k): v for k, v in overrides.items()})
    return row


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


class TestCleanCell:
    def test_strips_whitespace(self) -> None:
        assert clean_cell("  Asha  ") == "Asha"

    def test_blank_is_none(self) -> None:
        assert clean_cell("   ") is None
        assert clean_cell("") is None
        assert clean_cell(None) is None

    def test_integral_float_drops_decimal(self) -> None:
        assert clean_cell(123456789012.0) == "123456789012"

    def test_nan_is_none(self) -> None:
        assert clean_cell(float("nan")) is None

    def test_datetime_renders_as_iso_date(self) -> None:
        assert clean_cell(datetime(1990, 8, 15, 0, 0)) == "1990-08-15"


class TestParseDate:
    @pytest.mark.parametrize(
        "raw",
        ["1990-08-15", "15/08/1990", "15-08-1990", "15.08.1990", "1990/08/15", "1990-08-15T00:00:00"],
    )
    def test_text_formats(self, raw: str) -> None:
        assert parse_date(raw) == date(1990, 8, 15)

    def test_ambiguous_slash_date_is_day_first(self) -> None:
        assert parse_date("03/04/1990") == date(1990, 4, 3)

    def test_native_date_and_datetime(self) -> None:
        assert parse_date(date(1990, 8, 15)) == date(1990, 8, 15)
        assert parse_date(datetime(1990, 8, 15, 10, 30)) == date(1990, 8, 15)

    def test_spreadsheet_serial(self) -> None:
        assert parse_date(45000) == date(2023, 3, 15)
        assert parse_date(25569.0) == date(1970, 1, 1)

    @pytest.mark.parametrize("raw", ["31/02/1990", "not a date", "1990-13-01", "", 0, -5, True])
    def test_invalid_values(self, raw: object) -> None:
        assert parse_date(raw) is None


class TestIdentifierFormats:
    @pytest.mark.parametrize("value", ["123456789012", "000000000000"])
    def test_valid_aadhaar(self, value: str) -> None:
        assert is_valid_aadhaar(value)

    @pytest.mark.parametrize(
        "value", ["12345678901", "1234567890123", "12345678901A", "1234 5678 9012", None]
    )
    def test_invalid_aadhaar(self, value: str | None) -> None:
        assert not is_valid_aadhaar(value)

    @pytest.mark.parametrize("value", ["ABCDE1234F", "abcde1234f", "AbCdE1234f"])
    def test_valid_pan_any_case(self, value: str) -> None:
        assert is_valid_pan(value)

    @pytest.mark.parametrize(
        "value", ["ABCD1234F", "ABCDE12345", "ABCDE1234FG", "1BCDE1234F", "ABCDE123AF", None]
    )
    def test_invalid_pan(self, value: str | None) -> None:
        assert not is_valid_pan(value)

    @pytest.mark.parametrize("value", ["ABCD\u01311234F", "ABC\ufb001234F", "\uff21BCDE1234F"])
    def test_non_ascii_letters_rejected(self, value: str) -> None:
        assert not is_valid_pan(value), f"{value!r} must not pass as a PAN"


# ---------------------------------------------------------------------------
# RowValidator
# ---------------------------------------------------------------------------


class TestRowValidatorPanKyc:
    validator = RowValidator(VerificationType.PAN_KYC)

    def test_valid_row_becomes_draft(self) -> None:
        draft = self.validator.validate(_pan_row(pan_number="abcde1234f"), 0)
        assert isinstance(draft, RecordDraft)
        assert draft.secondary_id == "ABCDE1234F", "PAN should be stored upper-case"
        assert draft.display_name == "Asha Devi"
        assert draft.guardian_name == NOT_AVAILABLE
        assert draft.date_of_birth == date(1990, 8, 15)
        assert draft.identity_id is None
        assert draft.natural_key == ("ABCDE1234F",)

    def test_row_number_accounts_for_header(self) -> None:
        outcome = self.validator.validate(_pan_row(), 4)
        assert outcome.row_number == 6

    def test_missing_required_value(self) -> None:
        outcome = self.validator.validate(_pan_row(name="   "), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_MISSING_FIELD
        assert outcome.field == "name"
        assert outcome.row_number == 2

    def test_invalid_pan(self) -> None:
        outcome = self.validator.validate(_pan_row(pan_number="ABCD1234F"), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_PAN
        assert outcome.raw_identifiers["pan_number"] == "ABCD1234F"

    def test_unparsable_dob(self) -> None:
        outcome = self.validator.validate(_pan_row(date_of_birth="31/02/1990"), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_DOB

    def test_father_name_kept_when_present(self) -> None:
        draft = self.validator.validate(_pan_row(father_name="Ramesh"), 0)
        assert isinstance(draft, RecordDraft)
        assert draft.guardian_name == "Ramesh"

    def test_to_record_is_pending_and_linked(self) -> None:
        draft = self.validator.validate(_pan_row(), 0)
        assert isinstance(draft, RecordDraft)
        record = draft.to_record("owner-1", "batch-1")
        assert record.state == "pending"
        assert record.owner_id == "owner-1"
        assert record.source_file_id == "batch-1"
        assert record.row_number == 2


class TestRowValidatorAadhaarPan:
    validator = RowValidator(VerificationType.AADHAAR_PAN)

    def test_valid_row_without_optional_fields(self) -> None:
        draft = self.validator.validate(_link_row(), 0)
        assert isinstance(draft, RecordDraft)
        assert draft.natural_key == ("123456789012", "ABCDE1234F")
        assert draft.display_name == NOT_AVAILABLE
        assert draft.date_of_birth is None

    def test_spreadsheet_float_aadhaar_accepted(self) -> None:
        draft = self.validator.validate(_link_row(aadhaar_number=123456789012.0), 0)
        assert isinstance(draft, RecordDraft)
        assert draft.identity_id == "123456789012"

    def test_missing_aadhaar_value(self) -> None:
        outcome = self.validator.validate(_link_row(aadhaar_number=None), 3)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_MISSING_FIELD
        assert outcome.field == "aadhaar_number"
        assert outcome.row_number == 5

    @pytest.mark.parametrize("aadhaar", ["12345678901", "1234567890123", "12345678901X"])
    def test_invalid_aadhaar(self, aadhaar: str) -> None:
        outcome = self.validator.validate(_link_row(aadhaar_number=aadhaar), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_AADHAAR

    @pytest.mark.parametrize("pan", ["ABCD\u01311234F", "ABC\ufb001234F"])
    def test_pan_that_upper_cases_into_ascii_is_rejected(self, pan: str) -> None:
        outcome = self.validator.validate(_link_row(pan_number=pan), 0)
        assert isinstance(outcome, RowRejection), f"{pan!r} should not be stored"
        assert outcome.reason == REASON_INVALID_PAN

    def test_non_ascii_digits_rejected_as_aadhaar(self) -> None:
        outcome = self.validator.validate(_link_row(aadhaar_number="\u0661" * 12), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_AADHAAR

    def test_aadhaar_checked_before_pan(self) -> None:
        outcome = self.validator.validate(
            _link_row(aadhaar_number="123", pan_number="bad"), 0
        )
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_AADHAAR

    def test_optional_dob_must_parse_when_present(self) -> None:
        outcome = self.validator.validate(_link_row(date_of_birth="someday"), 0)
        assert isinstance(outcome, RowRejection)
        assert outcome.reason == REASON_INVALID_DOB
