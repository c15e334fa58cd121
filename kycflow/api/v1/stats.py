"""Per-owner verification stats and API usage.

- ``GET  /api/v1/stats``            -- cached stats (recomputed once stale).
- ``POST /api/v1/stats/refresh``    -- recompute now.
- ``GET  /api/v1/stats/api-usage``  -- provider call counters.
- ``POST /api/v1/stats/api-usage/reset`` -- zero the provider call counters.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from kycflow.api.deps import get_stats, get_usage
from kycflow.middleware.owner import require_owner
from kycflow.models import ApiUsage, UserStats
from kycflow.services.stats import StatsAggregator
from kycflow.services.usage import ApiUsageTracker

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("", response_model=UserStats)
async def get_user_stats(
    owner_id: str = Depends(require_owner),
    stats: StatsAggregator = Depends(get_stats),
) -> UserStats:
    return await stats.get_stats(owner_id)


@router.post("/refresh", response_model=UserStats)
async def refresh_user_stats(
    owner_id: str = Depends(require_owner),
    stats: StatsAggregator = Depends(get_stats),
) -> UserStats:
    return await stats.force_refresh(owner_id)


@router.get("/api-usage", response_model=ApiUsage)
async def get_api_usage(
    owner_id: str = Depends(require_owner),
    usage: ApiUsageTracker = Depends(get_usage),
) -> ApiUsage:
    return await usage.get_usage(owner_id)


@router.post("/api-usage/reset", response_model=ApiUsage)
async def reset_api_usage(
    owner_id: str = Depends(require_owner),
    usage: ApiUsageTracker = Depends(get_usage),
) -> ApiUsage:
    return await usage.reset(owner_id)
