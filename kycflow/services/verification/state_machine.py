"""Verification state machine for identity records.

::

    pending --> processing --> verified
                          \\--> failed --> pending   (explicit retry only)

``verified`` is terminal.  Every move is a compare-and-set against the
record store, so two schedulers racing for one record cannot both claim it.

The record is moved to ``processing`` right before the provider is
called, which leaves evidence of in-flight work if the process dies
mid-call.  The provider call is retried locally for rate-limit, server
and network failures (3 attempts, 1s then 2s backoff); authentication and
unknown failures settle the record at ``failed`` immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from kycflow.models import BatchStatus, CanonicalRecord, ErrorCategory, RecordState
from kycflow.services.errors import InvalidTransitionError, RecordNotFoundError
from kycflow.services.stats import StatsAggregator
from kycflow.services.store import RecordStore
from kycflow.services.usage import ApiUsageTracker
from kycflow.services.verification.provider import (
    Determination,
    ProviderResult,
    VerificationProvider,
    categorize_exception,
    describe_failure,
)

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: Final[dict[RecordState, frozenset[RecordState]]] = {
    RecordState.PENDING: frozenset({RecordState.PROCESSING}),
    RecordState.PROCESSING: frozenset({RecordState.VERIFIED, RecordState.FAILED}),
    RecordState.FAILED: frozenset({RecordState.PENDING}),
    RecordState.VERIFIED: frozenset(),
}

REASON_STILL_PENDING: Final[str] = "verification still in progress at provider"


def check_transition(current: RecordState, target: RecordState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


def _is_retryable(exc: BaseException) -> bool:
    return categorize_exception(exc).retryable


@dataclass(frozen=True)
class VerificationOutcome:
    """What one :meth:`VerificationStateMachine.verify` call did.

    ``skipped`` is set when the record was not ``pending`` (or another
    worker claimed it first); nothing was called or changed in that case.
    """

    record_id: str
    state: RecordState
    attempts: int = 0
    skipped: bool = False
    failure_reason: str | None = None
    error_category: ErrorCategory | None = None


# ---------------------------------------------------------------------------
# Batch bookkeeping
# ---------------------------------------------------------------------------


async def refresh_batch_counts(store: RecordStore, batch_id: str | None) -> None:
    """Re-derive a batch's per-state counts and status from its records."""
    if batch_id is None:
        return
    batch = await store.get_batch(batch_id)
    if batch is None:
        return

    counts = await store.count_by_state(batch.owner_id, source_file_id=batch_id)
    pending = counts.get(RecordState.PENDING, 0)
    processing = counts.get(RecordState.PROCESSING, 0)

    status = batch.status
    if batch.status != BatchStatus.FAILED:
        if pending or processing:
            status = BatchStatus.PROCESSING
        elif batch.accepted_count:
            status = BatchStatus.COMPLETED

    try:
        await store.update_batch(
            batch_id,
            verified_count=counts.get(RecordState.VERIFIED, 0),
            failed_count=counts.get(RecordState.FAILED, 0),
            pending_count=pending,
            processing_count=processing,
            status=status,
        )
    except RecordNotFoundError:
        # Deleted while a verification was in flight.
        logger.info("verification.batch_gone", batch_id=batch_id)


# ---------------------------------------------------------------------------
# VerificationStateMachine
# ---------------------------------------------------------------------------


class VerificationStateMachine:
    """Drives single records through the verification lifecycle.

    Parameters
    ----------
    store:
        Record store; all state changes go through its ``transition``.
    provider:
        External verification service.
    usage:
        API usage counter, bumped once per logical verification.
    stats:
        Stats aggregator, force-refreshed after each settled record.
    max_attempts:
        Provider attempts per verification (retryable failures only).
    base_delay:
        First backoff delay in seconds; doubles on each retry.
    status_poll_attempts, status_poll_interval:
        How often and how far apart to poll an accepted-but-unresolved
        request before giving up.
    sleep:
        Awaitable delay function.  Tests pass a recorder instead of
        :func:`asyncio.sleep`.
    """

    def __init__(
        self,
        store: RecordStore,
        provider: VerificationProvider,
        *,
        usage: ApiUsageTracker,
        stats: StatsAggregator | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        status_poll_attempts: int = 3,
        status_poll_interval: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._usage = usage
        self._stats = stats
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._poll_attempts = status_poll_attempts
        self._poll_interval = status_poll_interval
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, min=self._base_delay),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )

    async def _poll(self, result: ProviderResult) -> ProviderResult:
        """Poll an unresolved request until it resolves or attempts run out."""
        if result.request_id is None:
            return result
        for _ in range(self._poll_attempts):
            await self._sleep(self._poll_interval)
            result = await self._provider.check_status(result.request_id)
            if result.resolved:
                break
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def verify(self, record_id: str) -> VerificationOutcome:
        """Verify one ``pending`` record and settle it at verified or failed.

        Records in any other state are left untouched and reported as
        skipped.
        """
        record = await self._store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record {record_id} not found")
        if record.state != RecordState.PENDING:
            logger.debug("verification.skipped", record_id=record_id, state=record.state.value)
            return VerificationOutcome(record_id, record.state, skipped=True)

        check_transition(record.state, RecordState.PROCESSING)
        claimed = await self._store.transition(
            record_id, RecordState.PENDING, RecordState.PROCESSING
        )
        if claimed is None:
            current = await self._store.get(record_id)
            state = current.state if current is not None else record.state
            return VerificationOutcome(record_id, state, skipped=True)
        await refresh_batch_counts(self._store, claimed.source_file_id)

        attempts = 0
        try:
            try:
                async for attempt in self._retrying():
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        result = await self._provider.verify(claimed)
                if not result.resolved:
                    result = await self._poll(result)
            except Exception as exc:
                category = categorize_exception(exc)
                outcome = await self._settle_failed(
                    claimed,
                    reason=describe_failure(exc),
                    category=category,
                    attempts=attempts,
                )
                logger.warning(
                    "verification.call_failed",
                    record_id=record_id,
                    category=category.value,
                    attempts=attempts,
                    error=str(exc),
                )
            else:
                outcome = await self._settle(claimed, result, attempts)
        finally:
            await self._usage.increment(claimed.owner_id, self._provider.name)

        await self._after_settle(claimed)
        return outcome

    async def _settle(
        self,
        record: CanonicalRecord,
        result: ProviderResult,
        attempts: int,
    ) -> VerificationOutcome:
        if result.determination == Determination.SUCCESS:
            check_transition(RecordState.PROCESSING, RecordState.VERIFIED)
            await self._store.transition(
                record.record_id,
                RecordState.PROCESSING,
                RecordState.VERIFIED,
                verification_payload=result.payload,
                failure_reason=None,
                error_category=None,
                verified_at=datetime.now(UTC),
            )
            logger.info("verification.verified", record_id=record.record_id, attempts=attempts)
            return VerificationOutcome(record.record_id, RecordState.VERIFIED, attempts)

        if result.determination == Determination.FAILED:
            reason = result.message or "verification failed"
        else:
            reason = REASON_STILL_PENDING
        return await self._settle_failed(
            record, reason=reason, attempts=attempts, payload=result.payload or None
        )

    async def _settle_failed(
        self,
        record: CanonicalRecord,
        *,
        reason: str,
        attempts: int,
        category: ErrorCategory | None = None,
        payload: dict[str, Any] | None = None,
    ) -> VerificationOutcome:
        check_transition(RecordState.PROCESSING, RecordState.FAILED)
        await self._store.transition(
            record.record_id,
            RecordState.PROCESSING,
            RecordState.FAILED,
            failure_reason=reason,
            error_category=category.value if category is not None else None,
            verification_payload=payload,
        )
        logger.info(
            "verification.failed",
            record_id=record.record_id,
            reason=reason,
            attempts=attempts,
        )
        return VerificationOutcome(
            record.record_id,
            RecordState.FAILED,
            attempts,
            failure_reason=reason,
            error_category=category,
        )

    async def _after_settle(self, record: CanonicalRecord) -> None:
        await refresh_batch_counts(self._store, record.source_file_id)
        if self._stats is None:
            return
        try:
            await self._stats.force_refresh(record.owner_id)
        except Exception:
            logger.error("verification.stats_refresh_failed", owner_id=record.owner_id, exc_info=True)

    async def retry(self, record_id: str) -> CanonicalRecord:
        """Move one ``failed`` record back to ``pending``.

        Raises :class:`InvalidTransitionError` if it is not ``failed``.
        """
        record = await self._store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"record {record_id} not found")
        check_transition(record.state, RecordState.PENDING)
        updated = await self._store.transition(
            record_id,
            RecordState.FAILED,
            RecordState.PENDING,
            retry_count=record.retry_count + 1,
            failure_reason=None,
            error_category=None,
        )
        if updated is None:
            current = await self._store.get(record_id)
            raise InvalidTransitionError(
                current.state if current is not None else record.state, RecordState.PENDING
            )
        return updated

    async def retry_failed(self, record_ids: Iterable[str]) -> list[str]:
        """Re-queue every ``failed`` record in *record_ids*; others are ignored.

        Returns the ids that were moved back to ``pending``.
        """
        requeued: list[str] = []
        batches: set[str] = set()
        owners: set[str] = set()
        for record_id in record_ids:
            try:
                record = await self.retry(record_id)
            except (InvalidTransitionError, RecordNotFoundError):
                continue
            requeued.append(record.record_id)
            owners.add(record.owner_id)
            if record.source_file_id is not None:
                batches.add(record.source_file_id)

        for batch_id in batches:
            await refresh_batch_counts(self._store, batch_id)
        if self._stats is not None:
            for owner_id in owners:
                await self._stats.force_refresh(owner_id)

        logger.info("verification.requeued", count=len(requeued))
        return requeued
