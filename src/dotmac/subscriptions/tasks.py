"""
Celery tasks for the billing jobs.

Each task builds a runtime, runs one job on a fresh event loop and returns
the run summary. Failures inside a job are per-subscription outcomes, so the
task itself only fails on infrastructure errors.
"""

import asyncio
from typing import Any

import structlog

from dotmac.subscriptions.celery_app import TASK_NAMES, celery_app
from dotmac.subscriptions.runtime import create_runtime
from dotmac.subscriptions.scheduler import JobName

logger = structlog.get_logger(__name__)


async def _run_job(job: JobName) -> dict[str, Any]:
    runtime = create_runtime()
    result = await runtime.scheduler.run(job)
    return result.summary()


def run_job(job: JobName) -> dict[str, Any]:
    summary = asyncio.run(_run_job(job))
    logger.info("celery.task.completed", **summary)
    return summary


@celery_app.task(name=TASK_NAMES[JobName.DAILY_BILLING])
def daily_billing_task() -> dict[str, Any]:
    """Charge every subscription due today."""
    return run_job(JobName.DAILY_BILLING)


@celery_app.task(name=TASK_NAMES[JobName.RETRY_FAILED_PAYMENTS])
def retry_failed_payments_task() -> dict[str, Any]:
    """Retry past-due subscriptions inside their grace period."""
    return run_job(JobName.RETRY_FAILED_PAYMENTS)


@celery_app.task(name=TASK_NAMES[JobName.EXPIRED_GRACE_PERIOD])
def expire_grace_periods_task() -> dict[str, Any]:
    """Cancel past-due subscriptions whose grace period has ended."""
    return run_job(JobName.EXPIRED_GRACE_PERIOD)


__all__ = [
    "daily_billing_task",
    "expire_grace_periods_task",
    "retry_failed_payments_task",
    "run_job",
]
