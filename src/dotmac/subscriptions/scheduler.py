"""
Billing scheduler jobs.

Three independently triggered jobs select candidates from the repository
and hand each one to the :class:`BillingProcessor`:

- daily billing: ACTIVE subscriptions due on or before today
- retry failed payments: PAST_DUE subscriptions still inside their grace period
- expired grace period sweep: PAST_DUE subscriptions whose grace period ended

Selection is by due date, never by how many times a job ran, so a missed or
partial run is caught up by the next one. Candidates are processed
concurrently up to ``worker_pool_size``; one item's failure never aborts the
rest of the batch. Items not started before the run's wall-clock budget runs
out are reported as deferred.
"""

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.models import Subscription
from dotmac.subscriptions.ports import SubscriptionRepository
from dotmac.subscriptions.processor import (
    BillingOutcome,
    BillingProcessor,
    OutcomeStatus,
    utc_today,
)
from dotmac.subscriptions.recurring import JobGuard

ItemHandler = Callable[[Subscription, date], Awaitable[BillingOutcome]]


class JobName(str, Enum):
    DAILY_BILLING = "daily_billing"
    RETRY_FAILED_PAYMENTS = "retry_failed_payments"
    EXPIRED_GRACE_PERIOD = "expired_grace_period"


_SUCCESS_OUTCOMES: dict[JobName, frozenset[OutcomeStatus]] = {
    JobName.DAILY_BILLING: frozenset({OutcomeStatus.CHARGED, OutcomeStatus.EXPIRED}),
    JobName.RETRY_FAILED_PAYMENTS: frozenset({OutcomeStatus.CHARGED, OutcomeStatus.EXPIRED}),
    JobName.EXPIRED_GRACE_PERIOD: frozenset({OutcomeStatus.CANCELLED}),
}


class JobRunResult(BaseModel):
    """Summary of one job run."""

    job: JobName
    run_date: date
    started_at: datetime
    finished_at: datetime | None = None
    candidates: int = 0
    outcomes: list[BillingOutcome] = Field(default_factory=list)
    skipped_overlap: bool = False

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        wanted = _SUCCESS_OUTCOMES[self.job]
        return sum(1 for outcome in self.outcomes if outcome.status in wanted)

    @property
    def failed(self) -> int:
        wanted = _SUCCESS_OUTCOMES[self.job]
        return sum(
            1 for outcome in self.outcomes if outcome.is_failure and outcome.status not in wanted
        )

    @property
    def deferred(self) -> int:
        return self.count(OutcomeStatus.DEFERRED)

    @property
    def message(self) -> str:
        if self.skipped_overlap:
            return f"{self.job.value}: previous run still in progress, skipped"
        return (
            f"{self.job.value}: {self.candidates} candidates, {self.succeeded} succeeded, "
            f"{self.failed} failed, {self.deferred} deferred"
        )

    def summary(self) -> dict[str, object]:
        counts = Counter(outcome.status.value for outcome in self.outcomes)
        return {
            "job": self.job.value,
            "run_date": self.run_date.isoformat(),
            "candidates": self.candidates,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "skipped_overlap": self.skipped_overlap,
            "outcomes": dict(counts),
        }


class BillingScheduler:
    """Runs the periodic billing jobs; triggering is left to the caller."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        processor: BillingProcessor,
        *,
        worker_pool_size: int = 8,
        job_budget_seconds: float = 240.0,
        clock: Callable[[], date] = utc_today,
        guard: JobGuard | None = None,
        metrics: SubscriptionMetrics | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")
        self.repository = repository
        self.processor = processor
        self.worker_pool_size = worker_pool_size
        self.job_budget_seconds = job_budget_seconds
        self.clock = clock
        self.metrics = metrics or SubscriptionMetrics()
        self.log = logger or structlog.get_logger(__name__)
        self.guard = guard or JobGuard()

    async def run_daily_billing(self, today: date | None = None) -> JobRunResult:
        """Charge every ACTIVE subscription whose next billing date has arrived."""
        return await self._run(
            JobName.DAILY_BILLING,
            today or self.clock(),
            self.repository.find_due_for_billing,
            self.processor.process_single_billing,
        )

    async def run_retry_failed_payments(self, today: date | None = None) -> JobRunResult:
        """Retry PAST_DUE subscriptions that are still inside their grace period."""
        return await self._run(
            JobName.RETRY_FAILED_PAYMENTS,
            today or self.clock(),
            self.repository.find_past_due_in_grace,
            self.processor.process_single_billing,
        )

    async def run_expired_grace_periods(self, today: date | None = None) -> JobRunResult:
        """Cancel PAST_DUE subscriptions whose grace period ended before today."""
        return await self._run(
            JobName.EXPIRED_GRACE_PERIOD,
            today or self.clock(),
            self.repository.find_past_due_grace_expired,
            self.processor.cancel_expired_grace_period,
        )

    async def run(self, job: JobName, today: date | None = None) -> JobRunResult:
        runners = {
            JobName.DAILY_BILLING: self.run_daily_billing,
            JobName.RETRY_FAILED_PAYMENTS: self.run_retry_failed_payments,
            JobName.EXPIRED_GRACE_PERIOD: self.run_expired_grace_periods,
        }
        return await runners[JobName(job)](today)

    def is_running(self, job: JobName) -> bool:
        return self.guard.is_running(JobName(job).value)

    # ==================== Batch execution ====================

    async def _run(
        self,
        job: JobName,
        today: date,
        select: Callable[[date], Awaitable[list[Subscription]]],
        handler: ItemHandler,
    ) -> JobRunResult:
        log = self.log.bind(job=job.value, run_date=today.isoformat())
        result = JobRunResult(job=job, run_date=today, started_at=datetime.now(UTC))

        async with self.guard.hold(job.value) as acquired:
            if not acquired:
                log.warning("scheduler.job.overlap_skipped")
                result.skipped_overlap = True
                result.finished_at = datetime.now(UTC)
                return result

            log.info("scheduler.job.started")
            candidates = await select(today)
            result.candidates = len(candidates)
            log.info("scheduler.job.candidates", count=len(candidates))

            result.outcomes = await self._process_batch(job, today, candidates, handler, log)
            result.finished_at = datetime.now(UTC)

        log.info("scheduler.job.finished", **result.summary())
        if result.failed > result.succeeded:
            log.warning(
                "scheduler.job.high_failure_rate",
                succeeded=result.succeeded,
                failed=result.failed,
            )
        return result

    async def _process_batch(
        self,
        job: JobName,
        today: date,
        candidates: list[Subscription],
        handler: ItemHandler,
        log: structlog.stdlib.BoundLogger,
    ) -> list[BillingOutcome]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.job_budget_seconds
        semaphore = asyncio.Semaphore(self.worker_pool_size)

        async def process(subscription: Subscription) -> BillingOutcome:
            async with semaphore:
                if loop.time() >= deadline:
                    outcome = BillingOutcome(
                        subscription_id=subscription.subscription_id,
                        status=OutcomeStatus.DEFERRED,
                        message="Job budget exhausted, left for the next run",
                    )
                else:
                    try:
                        outcome = await handler(subscription, today)
                    except Exception as e:
                        log.error(
                            "scheduler.job.item_failed",
                            subscription_id=subscription.subscription_id,
                            error=str(e),
                            exc_info=True,
                        )
                        outcome = BillingOutcome(
                            subscription_id=subscription.subscription_id,
                            status=OutcomeStatus.ERROR,
                            message=f"Internal error: {e}",
                        )
            self.metrics.record_job_item(job.value, outcome.status.value)
            return outcome

        return list(await asyncio.gather(*(process(s) for s in candidates)))
