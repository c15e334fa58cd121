"""Provider-neutral verification contract and error categorization."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import httpx

from kycflow.models import CanonicalRecord, ErrorCategory
from kycflow.services.errors import ProviderError


class Determination(StrEnum):
    """What the provider concluded about one identity."""

    __slots__ = ()

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class ProviderResult:
    """Normalized provider answer.

    ``PENDING`` means the request was accepted but not yet resolved; it
    then carries the ``request_id`` to poll with.
    """

    determination: Determination
    payload: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    request_id: str | None = None

    @property
    def resolved(self) -> bool:
        return self.determination != Determination.PENDING


@runtime_checkable
class VerificationProvider(Protocol):
    """External identity-verification service."""

    name: str

    async def verify(self, record: CanonicalRecord) -> ProviderResult: ...

    async def check_status(self, request_id: str) -> ProviderResult: ...


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------


def categorize_status(status_code: int) -> ErrorCategory:
    """Map a non-2xx HTTP status to an error category."""
    if status_code == 401:
        return ErrorCategory.AUTHENTICATION_ERROR
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT_ERROR
    if status_code >= 500:
        return ErrorCategory.SERVER_ERROR
    return ErrorCategory.UNKNOWN_ERROR


def categorize_exception(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, ProviderError):
        return exc.category
    if isinstance(exc, httpx.HTTPStatusError):
        return categorize_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK_ERROR
    return ErrorCategory.UNKNOWN_ERROR


_CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.AUTHENTICATION_ERROR: "verification service rejected our credentials",
    ErrorCategory.RATE_LIMIT_ERROR: "verification service rate limit exceeded",
    ErrorCategory.SERVER_ERROR: "verification service is temporarily unavailable",
    ErrorCategory.NETWORK_ERROR: "could not reach the verification service",
    ErrorCategory.UNKNOWN_ERROR: "verification request failed",
}


def describe_failure(exc: BaseException) -> str:
    """Human-readable failure reason stored on the record."""
    category = categorize_exception(exc)
    detail = exc.message if isinstance(exc, ProviderError) else str(exc)
    base = _CATEGORY_MESSAGES[category]
    return f"{base}: {detail}" if detail and detail != base else base
