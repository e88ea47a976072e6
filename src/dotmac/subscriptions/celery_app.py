"""
Celery application for the billing jobs.

Beat entries are built from :func:`dotmac.subscriptions.runtime.job_schedules`:
daily jobs become crontab entries, the payment retry an interval entry. Each
entry carries ``expires`` so runs missed while workers were down are dropped
instead of replayed; the next run selects by due date and catches up.
"""

from typing import Any

import structlog
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from kombu import Queue

from dotmac.subscriptions.logging import setup_logging
from dotmac.subscriptions.recurring import DailyAt
from dotmac.subscriptions.runtime import JobSchedule, job_schedules
from dotmac.subscriptions.scheduler import JobName
from dotmac.subscriptions.settings import get_settings

settings = get_settings()

TASK_NAMES: dict[JobName, str] = {
    JobName.DAILY_BILLING: "subscriptions.daily_billing",
    JobName.RETRY_FAILED_PAYMENTS: "subscriptions.retry_failed_payments",
    JobName.EXPIRED_GRACE_PERIOD: "subscriptions.expire_grace_periods",
}

celery_app = Celery(
    "dotmac_subscriptions",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["dotmac.subscriptions.tasks"],
)

celery_app.conf.update(
    task_routes={
        "subscriptions.*": {"queue": "billing"},
    },
    task_default_queue="billing",
    task_queues=(Queue("billing", routing_key="billing"),),
    # Task execution settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.scheduler.timezone,
    enable_utc=True,
    result_expires=3600,  # 1 hour
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)


@worker_process_init.connect  # type: ignore[misc]
def configure_worker_logging(**kwargs: Any) -> None:
    """Configure structured logging in each worker process."""
    setup_logging(settings)


def beat_schedule_for(schedule: JobSchedule) -> crontab | float:
    trigger = schedule.trigger
    if isinstance(trigger, DailyAt):
        return crontab(hour=trigger.hour, minute=trigger.minute)
    return trigger.interval.total_seconds()


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the billing jobs with beat."""
    logger = structlog.get_logger(__name__)

    names = []
    for schedule in job_schedules(settings):
        task_name = TASK_NAMES[schedule.job]
        sender.add_periodic_task(
            beat_schedule_for(schedule),
            sender.signature(task_name),
            name=f"billing-{schedule.job.value.replace('_', '-')}",
            expires=schedule.expires_seconds,
        )
        names.append(task_name)

    logger.info(
        "celery.beat.configured",
        broker=settings.celery.broker_url,
        periodic_tasks=names,
    )


if __name__ == "__main__":
    celery_app.start()
