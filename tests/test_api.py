"""HTTP-level tests for the v1 API, run against an in-process provider."""

from __future__ import annotations

import io
import time

import pytest
import structlog
from fastapi import HTTPException, UploadFile
from fastapi.testclient import TestClient

from config.settings import Settings
from kycflow.api.v1.uploads import upload_file
from kycflow.main import _configure_logging, create_app
from kycflow.models import CanonicalRecord, ErrorCategory, VerificationType
from kycflow.services.errors import ProviderError
from kycflow.services.ingestion import IngestEngine
from kycflow.services.store import InMemoryRecordStore
from kycflow.services.verification.provider import Determination, ProviderResult

OWNER_HEADERS = {"X-Owner-Id": "owner-1"}

PAN_CSV = (
    b"PAN Number,Full Name,Date of Birth\n"
    b"ABCDE0001F,Asha Devi,15/08/1990\n"
    b"ABCDE0002F,Ravi Kumar,01/01/1985\n"
    b"BADPAN,Mohan Lal,02/02/1970\n"
)


class FakeProvider:
    """Verifies everything except PANs listed in ``deny``."""

    name = "sandbox"

    def __init__(self) -> None:
        self.deny: set[str] = set()
        self.calls = 0

    async def verify(self, record: CanonicalRecord) -> ProviderResult:
        self.calls += 1
        if record.secondary_id in self.deny:
            raise ProviderError(ErrorCategory.AUTHENTICATION_ERROR, "denied", status_code=401)
        return ProviderResult(Determination.SUCCESS, {"status": "success"})

    async def check_status(self, request_id: str) -> ProviderResult:
        return ProviderResult(Determination.SUCCESS, {})


async def no_sleep(seconds: float) -> None:
    return None


def _settings(**overrides) -> Settings:
    values = {"redis_url": "", "log_format": "console", "log_level": "WARNING"}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client(provider: FakeProvider):
    app = create_app(config=_settings(), provider=provider, sleep=no_sleep)
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, content: bytes = PAN_CSV, filename: str = "people.csv", **kw):
    return client.post(
        "/api/v1/uploads/pan_kyc",
        files={"file": (filename, content, "text/csv")},
        headers=kw.get("headers", OWNER_HEADERS),
    )


def _wait_for_batch(client: TestClient, batch_id: str, *, pending: int = 0) -> dict:
    """Poll batch stats until the background worker has settled every record."""
    for _ in range(200):
        body = client.get(f"/api/v1/batches/{batch_id}/stats", headers=OWNER_HEADERS).json()
        counts = body["counts"]
        settled = counts["pending"] == pending and counts["processing"] == 0
        if settled and body["batch"]["status"] != "processing":
            return body
        time.sleep(0.01)
    raise AssertionError(f"batch {batch_id} did not settle: {body}")


# -----------------------------------------------------------------------
# Uploads
# -----------------------------------------------------------------------


class TestUploads:
    def test_upload_reports_rows_and_verifies_in_background(self, client: TestClient) -> None:
        response = _upload(client)
        assert response.status_code == 200, response.text
        report = response.json()
        assert report["total_rows"] == 3
        assert report["accepted"] == 2
        assert report["rejected"] == 1
        assert report["rejections"][0]["row_number"] == 4

        stats = _wait_for_batch(client, report["batch_id"])
        assert stats["counts"]["verified"] == 2
        assert stats["batch"]["status"] == "completed"

    def test_missing_owner_header(self, client: TestClient) -> None:
        response = _upload(client, headers={})
        assert response.status_code == 401

    def test_malformed_owner_header(self, client: TestClient) -> None:
        response = _upload(client, headers={"X-Owner-Id": "bad owner/id"})
        assert response.status_code == 400

    def test_missing_required_columns(self, client: TestClient) -> None:
        response = _upload(client, content=b"PAN Number,Full Name\nABCDE0001F,Asha\n")
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert "missing required columns" in detail["message"]
        assert "PAN Number" in detail["detected_columns"]

    def test_unsupported_extension(self, client: TestClient) -> None:
        response = _upload(client, filename="people.txt")
        assert response.status_code == 400

    def test_unknown_verification_type(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/uploads/passport",
            files={"file": ("people.csv", PAN_CSV, "text/csv")},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 422

    def test_oversized_file(self, provider: FakeProvider) -> None:
        app = create_app(config=_settings(max_upload_bytes=16), provider=provider, sleep=no_sleep)
        with TestClient(app) as client:
            response = _upload(client)
        assert response.status_code == 413

    def test_reupload_is_idempotent(self, client: TestClient, provider: FakeProvider) -> None:
        first = _upload(client).json()
        _wait_for_batch(client, first["batch_id"])

        second = _upload(client).json()
        assert second["accepted"] == 0
        assert second["rejected"] == 3
        assert provider.calls == 2, "duplicates must never reach the provider"


# -----------------------------------------------------------------------
# Batches
# -----------------------------------------------------------------------


class TestBatches:
    def test_list_and_page_records(self, client: TestClient) -> None:
        batch_id = _upload(client).json()["batch_id"]
        _wait_for_batch(client, batch_id)

        batches = client.get("/api/v1/batches", headers=OWNER_HEADERS).json()
        assert [b["batch_id"] for b in batches] == [batch_id]

        page = client.get(
            f"/api/v1/batches/{batch_id}/records",
            params={"limit": 1, "state": "verified"},
            headers=OWNER_HEADERS,
        ).json()
        assert page["total"] == 2
        assert page["pages"] == 2
        assert len(page["items"]) == 1

    def test_batches_are_owner_scoped(self, client: TestClient) -> None:
        batch_id = _upload(client).json()["batch_id"]
        other = {"X-Owner-Id": "owner-2"}

        assert client.get("/api/v1/batches", headers=other).json() == []
        response = client.get(f"/api/v1/batches/{batch_id}/stats", headers=other)
        assert response.status_code == 404

    def test_unknown_batch(self, client: TestClient) -> None:
        for method, path in (
            ("GET", "/api/v1/batches/nope/stats"),
            ("GET", "/api/v1/batches/nope/records"),
            ("POST", "/api/v1/batches/nope/retry"),
            ("DELETE", "/api/v1/batches/nope"),
        ):
            response = client.request(method, path, headers=OWNER_HEADERS)
            assert response.status_code == 404, f"{method} {path} -> {response.status_code}"

    def test_retry_failed_records(self, client: TestClient, provider: FakeProvider) -> None:
        provider.deny = {"ABCDE0002F"}
        batch_id = _upload(client).json()["batch_id"]
        stats = _wait_for_batch(client, batch_id)
        assert stats["counts"]["failed"] == 1

        failed = client.get(
            f"/api/v1/batches/{batch_id}/records",
            params={"state": "failed"},
            headers=OWNER_HEADERS,
        ).json()["items"][0]
        assert failed["error_category"] == "AUTHENTICATION_ERROR"

        provider.deny = set()
        response = client.post(f"/api/v1/batches/{batch_id}/retry", headers=OWNER_HEADERS)
        assert response.status_code == 200
        assert response.json()["requeued"] == 1

        stats = _wait_for_batch(client, batch_id)
        assert stats["counts"]["verified"] == 2
        assert stats["counts"]["failed"] == 0

        record = client.get(f"/api/v1/records/{failed['record_id']}", headers=OWNER_HEADERS).json()
        assert record["retry_count"] == 1

    def test_retry_with_nothing_failed(self, client: TestClient) -> None:
        batch_id = _upload(client).json()["batch_id"]
        _wait_for_batch(client, batch_id)
        response = client.post(
            f"/api/v1/batches/{batch_id}/retry",
            json={"record_ids": ["not-a-record"]},
            headers=OWNER_HEADERS,
        )
        assert response.json()["requeued"] == 0

    def test_delete_batch(self, client: TestClient) -> None:
        batch_id = _upload(client).json()["batch_id"]
        _wait_for_batch(client, batch_id)

        response = client.delete(f"/api/v1/batches/{batch_id}", headers=OWNER_HEADERS)
        assert response.status_code == 200
        assert response.json()["deleted_records"] == 2

        assert client.get("/api/v1/batches", headers=OWNER_HEADERS).json() == []
        stats = client.get("/api/v1/stats", headers=OWNER_HEADERS).json()
        assert stats["totals"]["total"] == 0, "deleting a batch refreshes the owner's stats"


# -----------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------


class TestRecords:
    def test_lookup_by_pan_is_case_insensitive(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])

        response = client.post(
            "/api/v1/records/lookup", json={"pan_number": "abcde0001f"}, headers=OWNER_HEADERS
        )
        assert response.status_code == 200
        record = response.json()
        assert record["secondary_id"] == "ABCDE0001F"
        assert record["state"] == "verified"

    def test_lookup_requires_an_identifier(self, client: TestClient) -> None:
        response = client.post("/api/v1/records/lookup", json={}, headers=OWNER_HEADERS)
        assert response.status_code == 400

    def test_lookup_miss(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/records/lookup", json={"pan_number": "ZZZZZ9999Z"}, headers=OWNER_HEADERS
        )
        assert response.status_code == 404

    def test_unknown_record(self, client: TestClient) -> None:
        response = client.get("/api/v1/records/missing", headers=OWNER_HEADERS)
        assert response.status_code == 404

    def test_list_filters_by_type(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])
        page = client.get(
            "/api/v1/records", params={"verification_type": "aadhaar_pan"}, headers=OWNER_HEADERS
        ).json()
        assert page["total"] == 0
        page = client.get(
            "/api/v1/records", params={"verification_type": "pan_kyc"}, headers=OWNER_HEADERS
        ).json()
        assert page["total"] == 2

    def test_verify_single_identity_without_a_file(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/records/verify",
            json={
                "verification_type": "pan_kyc",
                "records": [
                    {"pan_number": "fghij5678k", "name": "Meera", "date_of_birth": "1992-03-04"}
                ],
            },
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 200, response.text
        report = response.json()
        assert report["accepted"] == 1
        assert report["rejected"] == 0

        _wait_for_batch(client, report["batch_id"])
        record = client.get(
            f"/api/v1/records/{report['accepted_record_ids'][0]}", headers=OWNER_HEADERS
        ).json()
        assert record["secondary_id"] == "FGHIJ5678K"
        assert record["state"] == "verified"
        assert record["date_of_birth"] == "1992-03-04"

    def test_verify_multiple_reports_bad_and_duplicate_entries(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])

        response = client.post(
            "/api/v1/records/verify",
            json={
                "verification_type": "pan_kyc",
                "records": [
                    {"pan_number": "ABCDE0001F", "name": "Asha Devi", "date_of_birth": "15/08/1990"},
                    {"pan_number": "KLMNO1111P", "name": "New Person", "date_of_birth": "01/01/2000"},
                    {"pan_number": "KLMNO2222P", "name": "No Birth Date"},
                ],
            },
            headers=OWNER_HEADERS,
        )
        report = response.json()
        assert report["accepted"] == 1
        reasons = {r["row_number"]: r["reason"] for r in report["rejections"]}
        assert reasons == {2: "combination already exists", 4: "missing required field"}

    def test_verify_aadhaar_pan_pair(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/records/verify",
            json={
                "verification_type": "aadhaar_pan",
                "records": [{"aadhaar_number": "123456789012", "pan_number": "ABCDE1234F"}],
            },
            headers=OWNER_HEADERS,
        )
        report = response.json()
        assert report["accepted"] == 1
        assert report["verification_type"] == "aadhaar_pan"

    def test_verify_requires_at_least_one_record(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/records/verify",
            json={"verification_type": "pan_kyc", "records": []},
            headers=OWNER_HEADERS,
        )
        assert response.status_code == 422


# -----------------------------------------------------------------------
# Stats, usage and health
# -----------------------------------------------------------------------


class TestStatsAndHealth:
    def test_stats_and_usage_after_verification(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])

        stats = client.post("/api/v1/stats/refresh", headers=OWNER_HEADERS).json()
        assert stats["totals"]["verified"] == 2
        assert stats["by_type"]["pan_kyc"]["verified"] == 2

        usage = client.get("/api/v1/stats/api-usage", headers=OWNER_HEADERS).json()
        assert usage["total"] == 2
        assert usage["by_provider"] == {"sandbox": 2}

    def test_reset_api_usage(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])
        assert client.get("/api/v1/stats/api-usage", headers=OWNER_HEADERS).json()["total"] == 2

        response = client.post("/api/v1/stats/api-usage/reset", headers=OWNER_HEADERS)
        assert response.status_code == 200
        assert response.json()["total"] == 0

        usage = client.get("/api/v1/stats/api-usage", headers=OWNER_HEADERS).json()
        assert usage["total"] == 0
        assert usage["by_provider"] == {}

    def test_reset_is_owner_scoped(self, client: TestClient) -> None:
        _wait_for_batch(client, _upload(client).json()["batch_id"])
        client.post("/api/v1/stats/api-usage/reset", headers={"X-Owner-Id": "owner-2"})
        usage = client.get("/api/v1/stats/api-usage", headers=OWNER_HEADERS).json()
        assert usage["total"] == 2, "another owner's reset must not touch these counters"

    def test_health(self, client: TestClient) -> None:
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["worker_running"] is True
        assert response.headers["Cache-Control"] == "no-store"


# -----------------------------------------------------------------------
# Startup and request boundary
# -----------------------------------------------------------------------


class UnreadableUpload(UploadFile):
    """Upload whose body must never be pulled into memory."""

    async def read(self, size: int = -1) -> bytes:
        raise AssertionError("oversized upload was read before being rejected")


class TestStartupAndBoundary:
    @pytest.mark.parametrize("level", ["DEBUG", "info", "Warning", "ERROR"])
    def test_logging_accepts_level_names(self, level: str) -> None:
        _configure_logging(_settings(log_level=level))
        structlog.get_logger("kycflow.test").info("test.logging_configured")

    def test_app_serves_requests_with_default_logging(self, provider: FakeProvider) -> None:
        app = create_app(
            config=Settings(redis_url="", log_level="INFO", log_format="json"),
            provider=provider,
            sleep=no_sleep,
        )
        with TestClient(app) as client:
            assert client.get("/api/v1/health").status_code == 200

    async def test_oversized_upload_rejected_before_reading(self) -> None:
        engine = IngestEngine(InMemoryRecordStore(), max_upload_bytes=16)
        upload = UnreadableUpload(io.BytesIO(b""), size=1024, filename="people.csv")

        with pytest.raises(HTTPException) as exc_info:
            await upload_file(
                VerificationType.PAN_KYC,
                file=upload,
                owner_id="owner-1",
                engine=engine,
                worker=None,  # type: ignore[arg-type]
            )

        assert exc_info.value.status_code == 413
