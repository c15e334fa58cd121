"""Client for the Sandbox (sandbox.co.in) KYC API.

Endpoints used:

- ``POST /authenticate`` -- exchanges the API key/secret pair for an access
  token, sent back verbatim in the ``authorization`` header.
- ``POST /kyc/pan/verify`` -- PAN verification against name and date of
  birth (``DD/MM/YYYY``).
- ``POST /kyc/pan-aadhaar/status`` -- Aadhaar-PAN link status.
- ``GET /kyc/requests/{request_id}`` -- status of an accepted request.

Responses report ``status`` either at the top level or under ``data``.
``success`` and ``failed`` are final; anything else means the request was
accepted and is still being resolved.

The client does not retry.  Non-2xx responses and transport failures are
raised as :class:`ProviderError` with their category and the caller
decides what to do with them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Final

import httpx
import structlog

from kycflow.models import CanonicalRecord, ErrorCategory, VerificationType
from kycflow.services.errors import ProviderError
from kycflow.services.verification.provider import (
    Determination,
    ProviderResult,
    categorize_status,
)

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PAN_VERIFY_PATH: Final[str] = "/kyc/pan/verify"
_PAN_AADHAAR_PATH: Final[str] = "/kyc/pan-aadhaar/status"
_AUTH_PATH: Final[str] = "/authenticate"

_PAN_ENTITY: Final[str] = "in.co.sandbox.kyc.pan_verification.request"
_PAN_AADHAAR_ENTITY: Final[str] = "in.co.sandbox.kyc.pan_aadhaar.status"

API_PROVIDER: Final[str] = "sandbox.co.in"


def normalize_response(body: dict[str, Any]) -> ProviderResult:
    """Turn a Sandbox response body into a :class:`ProviderResult`."""
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    status = str(body.get("status") or data.get("status") or "").lower()
    message = body.get("message") or data.get("message") or body.get("error")

    if status == "success" or body.get("success") is True:
        return ProviderResult(
            determination=Determination.SUCCESS,
            payload={**body, "api_provider": API_PROVIDER},
            message=message,
        )
    if status == "failed":
        return ProviderResult(
            determination=Determination.FAILED,
            payload=body,
            message=message or "verification failed",
        )

    request_id = body.get("transaction_id") or data.get("request_id") or body.get("request_id")
    return ProviderResult(
        determination=Determination.PENDING,
        payload=body,
        message=message,
        request_id=str(request_id) if request_id else None,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


# ---------------------------------------------------------------------------
# SandboxClient
# ---------------------------------------------------------------------------


class SandboxClient:
    """Async :class:`VerificationProvider` backed by the Sandbox KYC API.

    Parameters
    ----------
    api_key, api_secret:
        Sandbox credentials.
    base_url:
        API root, ``https://api.sandbox.co.in`` in production.
    timeout:
        Per-request timeout in seconds.
    reason:
        Purpose string sent with every verification request.
    transport:
        Optional httpx transport; tests pass an ``httpx.MockTransport``.
    """

    name = "sandbox"

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        base_url: str = "https://api.sandbox.co.in",
        timeout: float = 30.0,
        reason: str = "KYC verification",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._reason = reason
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "User-Agent": "KycFlow/1.0",
            },
            transport=transport,
        )
        self._token: str | None = None
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str],
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, headers=headers, json=json)
        except httpx.TransportError as exc:
            logger.warning("sandbox.transport_error", path=path, error=str(exc))
            raise ProviderError(ErrorCategory.NETWORK_ERROR, str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            category = categorize_status(response.status_code)
            if category == ErrorCategory.AUTHENTICATION_ERROR:
                self._token = None
            message = _error_message(response)
            logger.warning(
                "sandbox.http_error",
                path=path,
                status=response.status_code,
                category=category.value,
                message=message,
            )
            raise ProviderError(category, message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                ErrorCategory.UNKNOWN_ERROR,
                "provider returned a non-JSON response",
                status_code=response.status_code,
            ) from exc
        return body if isinstance(body, dict) else {"data": body}

    async def authenticate(self) -> str:
        """Return a cached access token, fetching a new one when needed."""
        async with self._token_lock:
            if self._token is not None:
                return self._token
            if not self._api_key or not self._api_secret:
                raise ProviderError(
                    ErrorCategory.AUTHENTICATION_ERROR,
                    "provider credentials are not configured",
                )

            body = await self._send(
                "POST",
                _AUTH_PATH,
                headers={"x-api-key": self._api_key, "x-api-secret": self._api_secret},
            )
            data = body.get("data") if isinstance(body.get("data"), dict) else {}
            token = body.get("access_token") or data.get("access_token")
            if not token:
                raise ProviderError(
                    ErrorCategory.AUTHENTICATION_ERROR,
                    "authentication response carried no access token",
                )
            self._token = str(token)
            logger.info("sandbox.authenticated")
            return self._token

    async def _authorized(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = await self.authenticate()
        return await self._send(
            method,
            path,
            headers={"authorization": token, "x-api-key": self._api_key},
            json=json,
        )

    # ------------------------------------------------------------------
    # VerificationProvider
    # ------------------------------------------------------------------

    def build_payload(self, record: CanonicalRecord) -> tuple[str, dict[str, Any]]:
        """Endpoint path and request body for *record*."""
        if record.verification_type == VerificationType.AADHAAR_PAN:
            return _PAN_AADHAAR_PATH, {
                "@entity": _PAN_AADHAAR_ENTITY,
                "pan": record.secondary_id,
                "aadhaar_number": record.identity_id,
                "consent": "Y",
                "reason": self._reason,
            }

        dob = record.date_of_birth.strftime("%d/%m/%Y") if record.date_of_birth else None
        return _PAN_VERIFY_PATH, {
            "@entity": _PAN_ENTITY,
            "pan": record.secondary_id,
            "name_as_per_pan": record.display_name,
            "date_of_birth": dob,
            "consent": "Y",
            "reason": self._reason,
        }

    async def verify(self, record: CanonicalRecord) -> ProviderResult:
        path, payload = self.build_payload(record)
        body = await self._authorized("POST", path, json=payload)
        result = normalize_response(body)
        logger.info(
            "sandbox.verify",
            record_id=record.record_id,
            verification_type=record.verification_type.value,
            determination=result.determination.value,
        )
        return result

    async def check_status(self, request_id: str) -> ProviderResult:
        body = await self._authorized("GET", f"/kyc/requests/{request_id}")
        return normalize_response(body)
