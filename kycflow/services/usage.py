"""Per-owner count of business-level verification requests per provider."""

from __future__ import annotations

import structlog

from kycflow.models import ApiUsage
from kycflow.services.store import RecordStore

logger = structlog.get_logger(__name__)


class ApiUsageTracker:
    """Counts one call per logical verification, however many retries it took.

    Counter failures are logged and swallowed so that accounting can never
    fail a verification.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def increment(self, owner_id: str, provider: str) -> ApiUsage | None:
        try:
            return await self._store.increment_api_calls(owner_id, provider)
        except Exception:
            logger.error(
                "usage.increment_failed", owner_id=owner_id, provider=provider, exc_info=True
            )
            return None

    async def get_usage(self, owner_id: str) -> ApiUsage:
        return await self._store.get_api_calls(owner_id)

    async def reset(self, owner_id: str) -> ApiUsage:
        usage = await self._store.reset_api_calls(owner_id)
        logger.info("usage.reset", owner_id=owner_id)
        return usage
