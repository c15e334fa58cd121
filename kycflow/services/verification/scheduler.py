"""Background verification of freshly ingested records.

The upload request hands a :class:`VerificationJob` to the
:class:`VerificationWorker` and returns.  The worker's single consumer task
feeds each job to the :class:`BatchScheduler`, which verifies records in
fixed-size groups: records inside a group run concurrently, groups run one
after the other with a pause in between to stay under the provider's rate
limits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from kycflow.services.verification.state_machine import (
    Sleep,
    VerificationOutcome,
    VerificationStateMachine,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VerificationJob:
    """Immutable handoff from the request path to the worker."""

    owner_id: str
    record_ids: tuple[str, ...]
    batch_id: str | None = None


@dataclass
class SchedulerReport:
    group_sizes: list[int] = field(default_factory=list)
    outcomes: list[VerificationOutcome] = field(default_factory=list)
    errors: int = 0

    @property
    def attempted(self) -> int:
        return sum(1 for o in self.outcomes if not o.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)


# ---------------------------------------------------------------------------
# BatchScheduler
# ---------------------------------------------------------------------------


class BatchScheduler:
    """Runs verifications in groups of ``batch_size``.

    Parameters
    ----------
    state_machine:
        Performs the per-record verification.
    batch_size:
        Records verified concurrently per group.
    batch_delay:
        Seconds to wait between groups (not after the last one).
    sleep:
        Awaitable delay function, injectable for tests.
    """

    def __init__(
        self,
        state_machine: VerificationStateMachine,
        *,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._state_machine = state_machine
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._sleep = sleep

    async def run(self, record_ids: Sequence[str]) -> SchedulerReport:
        """Attempt every record once; one record's failure never stops the rest."""
        report = SchedulerReport()
        groups = [
            list(record_ids[i : i + self._batch_size])
            for i in range(0, len(record_ids), self._batch_size)
        ]

        for index, group in enumerate(groups):
            if index:
                await self._sleep(self._batch_delay)

            results = await asyncio.gather(
                *(self._state_machine.verify(record_id) for record_id in group),
                return_exceptions=True,
            )
            report.group_sizes.append(len(group))
            for record_id, result in zip(group, results):
                if isinstance(result, BaseException):
                    report.errors += 1
                    logger.error(
                        "scheduler.record_error",
                        record_id=record_id,
                        error=str(result),
                        error_type=type(result).__name__,
                    )
                else:
                    report.outcomes.append(result)

        logger.info(
            "scheduler.pass_complete",
            records=len(record_ids),
            groups=len(groups),
            attempted=report.attempted,
            skipped=report.skipped,
            errors=report.errors,
        )
        return report


# ---------------------------------------------------------------------------
# VerificationWorker
# ---------------------------------------------------------------------------


class VerificationWorker:
    """Queue plus one consumer task, started and stopped with the app."""

    def __init__(self, scheduler: BatchScheduler) -> None:
        self._scheduler = scheduler
        self._queue: asyncio.Queue[VerificationJob] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_jobs(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._consume(), name="verification-worker")
        logger.info("worker.started")

    def submit(self, job: VerificationJob) -> None:
        if not job.record_ids:
            return
        self._queue.put_nowait(job)
        logger.info(
            "worker.job_queued",
            owner_id=job.owner_id,
            batch_id=job.batch_id,
            records=len(job.record_ids),
        )

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._scheduler.run(job.record_ids)
            except Exception:
                logger.error("worker.job_failed", batch_id=job.batch_id, exc_info=True)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        logger.info("worker.stopping", pending_jobs=self._queue.qsize())
        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._task = None
        logger.info("worker.stopped")
