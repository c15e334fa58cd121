"""Tests for identity-number masking in logs and the privacy headers middleware."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from kycflow.middleware.privacy import (
    PrivacyHeadersMiddleware,
    mask_identifier,
    redact_identifiers,
    sanitize_identifiers,
)

# -----------------------------------------------------------------------
# mask_identifier
# -----------------------------------------------------------------------


class TestMaskIdentifier:
    def test_aadhaar_keeps_last_four(self) -> None:
        assert mask_identifier("123456789012") == "XXXXXXXX9012"

    def test_pan_keeps_last_four(self) -> None:
        assert mask_identifier("ABCDE1234F") == "XXXXXX234F"

    def test_short_values_fully_masked(self) -> None:
        assert mask_identifier("1234") == "XXXX"

    def test_none_passes_through(self) -> None:
        assert mask_identifier(None) is None


# -----------------------------------------------------------------------
# sanitize_identifiers
# -----------------------------------------------------------------------


class TestSanitizeIdentifiers:
    def test_aadhaar_variants(self) -> None:
        for raw in ("123456789012", "1234 5678 9012", "1234-5678-9012"):
            result = sanitize_identifiers(f"id {raw} rejected")
            assert result == "id XXXXXXXX9012 rejected", (
                f"Aadhaar '{raw}' should be masked: got '{result}'"
            )

    def test_pan_in_text(self) -> None:
        result = sanitize_identifiers("PAN ABCDE1234F does not match")
        assert "ABCDE" not in result
        assert "XXXXXX234F" in result

    def test_multiple_identifiers(self) -> None:
        result = sanitize_identifiers("pair 123456789012 / abcde1234f")
        assert "XXXXXXXX9012" in result
        assert "XXXXXX234f" in result

    def test_text_without_identifiers_unchanged(self) -> None:
        text = "provider returned HTTP 503 after 3 attempts"
        assert sanitize_identifiers(text) == text

    def test_longer_digit_runs_left_alone(self) -> None:
        text = "order 12345678901234"
        assert sanitize_identifiers(text) == text, "only whole 12-digit numbers are Aadhaar"


# -----------------------------------------------------------------------
# redact_identifiers (structlog processor)
# -----------------------------------------------------------------------


class TestRedactIdentifiers:
    def test_identity_keys_are_masked(self) -> None:
        event = {
            "event": "record.created",
            "identity_id": "123456789012",
            "secondary_id": "ABCDE1234F",
            "record_id": "abc123",
        }
        result = redact_identifiers(None, "info", event)
        assert result["identity_id"] == "XXXXXXXX9012"
        assert result["secondary_id"] == "XXXXXX234F"
        assert result["record_id"] == "abc123", "non-identity keys are untouched"

    def test_raw_identifiers_dict(self) -> None:
        event = {"event": "row.rejected", "raw_identifiers": {"PAN": "ABCDE1234F", "row": 4}}
        result = redact_identifiers(None, "warning", event)
        assert result["raw_identifiers"] == {"PAN": "XXXXXX234F", "row": 4}

    def test_free_text_fields_are_sanitized(self) -> None:
        event = {"event": "verify.failed", "error": "bad PAN ABCDE1234F for 1234 5678 9012"}
        result = redact_identifiers(None, "error", event)
        assert "ABCDE1234F" not in result["error"]
        assert "1234 5678" not in result["error"]

    def test_event_name_untouched(self) -> None:
        event = {"event": "upload.completed", "rows": 7}
        assert redact_identifiers(None, "info", dict(event)) == event


# -----------------------------------------------------------------------
# PrivacyHeadersMiddleware
# -----------------------------------------------------------------------


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(PrivacyHeadersMiddleware)

    @app.get("/api/v1/ping")
    async def api_ping() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok"}

    return app


class TestPrivacyHeadersMiddleware:
    def test_api_responses_are_not_cacheable(self) -> None:
        with TestClient(_app()) as client:
            response = client.get("/api/v1/ping")
        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["Pragma"] == "no-cache"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_non_api_paths_get_security_headers_only(self) -> None:
        with TestClient(_app()) as client:
            response = client.get("/ping")
        assert response.headers["Referrer-Policy"] == "no-referrer"
        assert "Cache-Control" not in response.headers
