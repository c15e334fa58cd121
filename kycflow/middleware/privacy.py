"""Identity-number masking for logs and privacy headers for responses.

Aadhaar and PAN numbers pass through almost every layer of the pipeline.
They are masked before they reach a log line, keeping only the last 4
characters (``123456789012`` -> ``XXXXXXXX9012``).
"""

from __future__ import annotations

import re
from collections.abc import MutableMapping
from typing import Any, Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Masking patterns
# ---------------------------------------------------------------------------

# Aadhaar: 12 digits, optionally grouped as XXXX-XXXX-XXXX or XXXX XXXX XXXX.
_AADHAAR_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b\d{4}[\s-]?\d{4}[\s-]?(\d{4})\b"
)

# PAN: 5 letters, 4 digits, 1 letter.
_PAN_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b[A-Za-z]{5}\d(\d{3}[A-Za-z])\b"
)

# Event keys whose values are always identity numbers.
_IDENTITY_KEYS: Final[frozenset[str]] = frozenset(
    {"aadhaar", "aadhaar_number", "identity_id", "pan", "pan_number", "secondary_id"}
)


def mask_identifier(value: str | None) -> str | None:
    """Mask a bare identity number, keeping its last 4 characters."""
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "X" * len(text)
    return "X" * (len(text) - 4) + text[-4:]


def sanitize_identifiers(text: str) -> str:
    """Mask every Aadhaar or PAN number embedded in free *text*.

    Aadhaar first, since a 12-digit run never overlaps a PAN.
    """
    text = _AADHAAR_PATTERN.sub(lambda m: f"XXXXXXXX{m.group(1)}", text)
    return _PAN_PATTERN.sub(lambda m: f"XXXXXX{m.group(1)}", text)


def redact_identifiers(
    _logger: Any,
    _method: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor applying :func:`mask_identifier` to identity fields."""
    for key, value in event_dict.items():
        if key in _IDENTITY_KEYS and isinstance(value, str):
            event_dict[key] = mask_identifier(value)
        elif key == "raw_identifiers" and isinstance(value, dict):
            event_dict[key] = {
                k: mask_identifier(v) if isinstance(v, str) else v for k, v in value.items()
            }
        elif key in ("error", "reason", "message") and isinstance(value, str):
            event_dict[key] = sanitize_identifiers(value)
    return event_dict


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class PrivacyHeadersMiddleware(BaseHTTPMiddleware):
    """Logs each request without identity numbers and marks responses non-cacheable.

    Upload reports and record listings echo identity numbers back to the
    owner, so no API response may be stored by intermediaries.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        logger.info(
            "request.incoming",
            method=request.method,
            path=sanitize_identifiers(path),
        )

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        return response
