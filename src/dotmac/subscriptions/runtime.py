"""
Explicit wiring of ports into the billing services.

``build_runtime`` is the single place where adapters meet services. Callers
that own real adapters (database repository, payment provider, message bus)
pass them in; anything omitted falls back to the in-process reference
adapters. Worker processes that need their own wiring register a factory
with :func:`register_runtime_factory`.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta
from functools import partial
from zoneinfo import ZoneInfo

from dotmac.subscriptions.adapters import (
    InMemorySubscriptionRepository,
    LoggingEventPublisher,
    SimulatedBillingGateway,
)
from dotmac.subscriptions.lifecycle import SubscriptionLifecycleService
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.orchestrator import SubscriptionCreationOrchestrator
from dotmac.subscriptions.ports import BillingGateway, EventPublisher, SubscriptionRepository
from dotmac.subscriptions.processor import BillingProcessor, utc_today
from dotmac.subscriptions.recurring import (
    DailyAt,
    Every,
    JobGuard,
    MisfirePolicy,
    RecurringJob,
    Trigger,
    expires_after,
)
from dotmac.subscriptions.scheduler import BillingScheduler, JobName
from dotmac.subscriptions.settings import Settings, get_settings


@dataclass(frozen=True)
class JobSchedule:
    job: JobName
    trigger: Trigger
    policy: MisfirePolicy = MisfirePolicy.SKIP

    @property
    def expires_seconds(self) -> float | None:
        return expires_after(self.trigger, self.policy)


@dataclass
class BillingRuntime:
    settings: Settings
    repository: SubscriptionRepository
    gateway: BillingGateway
    publisher: EventPublisher
    metrics: SubscriptionMetrics
    guard: JobGuard
    processor: BillingProcessor
    scheduler: BillingScheduler
    orchestrator: SubscriptionCreationOrchestrator
    lifecycle: SubscriptionLifecycleService

    def recurring_jobs(self) -> list[RecurringJob]:
        return job_definitions(self.settings, self.scheduler)


def build_runtime(
    settings: Settings | None = None,
    *,
    repository: SubscriptionRepository | None = None,
    gateway: BillingGateway | None = None,
    publisher: EventPublisher | None = None,
    metrics: SubscriptionMetrics | None = None,
    clock: Callable[[], date] = utc_today,
) -> BillingRuntime:
    settings = settings or get_settings()
    repository = repository or InMemorySubscriptionRepository()
    gateway = gateway or SimulatedBillingGateway()
    publisher = publisher or LoggingEventPublisher(
        retry_base_seconds=settings.events.retry_base_seconds,
        retry_max_seconds=settings.events.retry_max_seconds,
    )
    metrics = metrics or SubscriptionMetrics()
    guard = JobGuard()

    billing = settings.billing
    event_max_retries = settings.events.publish_max_retries

    processor = BillingProcessor(
        repository,
        gateway,
        publisher,
        max_attempts=billing.max_payment_attempts,
        grace_period_days=billing.grace_period_days,
        default_payment_method_token=billing.default_payment_method_token,
        max_write_attempts=billing.max_write_attempts,
        event_max_retries=event_max_retries,
        claim_ttl_seconds=billing.claim_ttl_seconds,
        clock=clock,
        metrics=metrics,
    )
    scheduler = BillingScheduler(
        repository,
        processor,
        worker_pool_size=settings.scheduler.worker_pool_size,
        job_budget_seconds=settings.scheduler.job_budget_seconds,
        clock=clock,
        guard=guard,
        metrics=metrics,
    )
    orchestrator = SubscriptionCreationOrchestrator(
        repository,
        gateway,
        publisher,
        max_active_per_customer=billing.max_active_subscriptions_per_customer,
        default_currency=billing.default_currency,
        event_max_retries=event_max_retries,
        clock=clock,
        metrics=metrics,
    )
    lifecycle = SubscriptionLifecycleService(
        repository,
        gateway,
        publisher,
        processor,
        max_write_attempts=billing.max_write_attempts,
        event_max_retries=event_max_retries,
        clock=clock,
        metrics=metrics,
    )

    return BillingRuntime(
        settings=settings,
        repository=repository,
        gateway=gateway,
        publisher=publisher,
        metrics=metrics,
        guard=guard,
        processor=processor,
        scheduler=scheduler,
        orchestrator=orchestrator,
        lifecycle=lifecycle,
    )


def job_schedules(settings: Settings) -> list[JobSchedule]:
    """Triggers for the three billing jobs.

    Every job drops missed runs beyond the latest; selection is by due date,
    so the next run picks up whatever was missed.
    """
    sched = settings.scheduler
    tz = ZoneInfo(sched.timezone)
    return [
        JobSchedule(
            JobName.DAILY_BILLING,
            DailyAt(sched.daily_billing_hour, sched.daily_billing_minute, tz),
        ),
        JobSchedule(
            JobName.RETRY_FAILED_PAYMENTS,
            Every(timedelta(hours=sched.retry_interval_hours)),
        ),
        JobSchedule(
            JobName.EXPIRED_GRACE_PERIOD,
            DailyAt(sched.grace_sweep_hour, sched.grace_sweep_minute, tz),
        ),
    ]


def job_definitions(settings: Settings, scheduler: BillingScheduler) -> list[RecurringJob]:
    return [
        RecurringJob(
            name=schedule.job.value,
            trigger=schedule.trigger,
            callback=partial(scheduler.run, schedule.job),
            policy=schedule.policy,
        )
        for schedule in job_schedules(settings)
    ]


RuntimeFactory = Callable[[], BillingRuntime]

_runtime_factory: RuntimeFactory | None = None


def register_runtime_factory(factory: RuntimeFactory | None) -> None:
    """Install the factory used by worker tasks; ``None`` restores the default."""
    global _runtime_factory
    _runtime_factory = factory


def create_runtime() -> BillingRuntime:
    if _runtime_factory is not None:
        return _runtime_factory()
    return build_runtime(get_settings())
