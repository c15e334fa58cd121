"""Per-owner verification counters derived from persisted record state.

:class:`UserStats` is never incremented in place.  Every refresh re-runs one
grouped count per verification type against the record store and overwrites
the cached value wholesale, so concurrent refreshes for one owner are
harmless (last write wins, and every write is correct as of its read).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from kycflow.models import RecordState, StateCounts, UserStats, VerificationType
from kycflow.services.cache import CacheManager
from kycflow.services.store import RecordStore

logger = structlog.get_logger(__name__)

DEFAULT_STALENESS_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StatsAggregator:
    """Cached, rebuildable per-owner stats.

    Parameters
    ----------
    store:
        Authoritative record store.
    cache:
        Where computed :class:`UserStats` are kept between reads.
    staleness_seconds:
        Maximum age of a cached value before :meth:`get_stats` recomputes.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        cache: CacheManager,
        *,
        staleness_seconds: int = DEFAULT_STALENESS_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._staleness = timedelta(seconds=staleness_seconds)
        self._clock = clock

    @staticmethod
    def _key(owner_id: str) -> str:
        return f"user:{owner_id}"

    async def get_stats(self, owner_id: str) -> UserStats:
        """Cached stats if fresh enough, otherwise a recomputation."""
        cached = await self._cache.get(self._key(owner_id))
        if cached is not None:
            stats = UserStats.model_validate(cached)
            if self._clock() - stats.computed_at <= self._staleness:
                return stats
        return await self.force_refresh(owner_id)

    async def force_refresh(self, owner_id: str) -> UserStats:
        """Recompute from the record store and overwrite the cache."""
        by_type: dict[VerificationType, StateCounts] = {}
        totals: dict[RecordState, int] = {}
        for verification_type in VerificationType:
            counts = await self._store.count_by_state(
                owner_id, verification_type=verification_type
            )
            by_type[verification_type] = StateCounts.from_counts(counts)
            for state, count in counts.items():
                totals[state] = totals.get(state, 0) + count

        stats = UserStats(
            owner_id=owner_id,
            by_type=by_type,
            totals=StateCounts.from_counts(totals),
            computed_at=self._clock(),
        )
        await self._cache.set(self._key(owner_id), stats.model_dump(mode="json"))
        logger.debug(
            "stats.refreshed",
            owner_id=owner_id,
            verified=stats.totals.verified,
            failed=stats.totals.failed,
            pending=stats.totals.pending,
        )
        return stats
