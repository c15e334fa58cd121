"""Resolve the owning account for a request.

Account management lives upstream; this service trusts the gateway to set
``X-Owner-Id`` on every authenticated request.
"""

from __future__ import annotations

import re
from typing import Final

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_owner_header = APIKeyHeader(name="X-Owner-Id", auto_error=False)

_OWNER_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_.:@-]{1,128}")


async def require_owner(
    request: Request,
    owner_id: str | None = Security(_owner_header),
) -> str:
    """FastAPI dependency returning the validated owner id.

    Raises 401 when the header is missing and 400 when it is malformed.
    """
    if not owner_id:
        logger.warning("auth.missing_owner", path=request.url.path)
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header.")

    owner_id = owner_id.strip()
    if not _OWNER_ID_PATTERN.fullmatch(owner_id):
        raise HTTPException(status_code=400, detail="Malformed X-Owner-Id header.")
    return owner_id
