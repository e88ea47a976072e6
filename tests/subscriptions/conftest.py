"""Shared fixtures for subscription billing tests.

All services run over the in-memory adapters with a fixed clock; nothing
here touches the network or the wall clock.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from dotmac.subscriptions.adapters import (
    InMemoryEventPublisher,
    InMemorySubscriptionRepository,
    SimulatedBillingGateway,
)
from dotmac.subscriptions.lifecycle import SubscriptionLifecycleService
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.models import BillingCycle, Subscription, SubscriptionStatus
from dotmac.subscriptions.orchestrator import SubscriptionCreationOrchestrator
from dotmac.subscriptions.processor import BillingProcessor
from dotmac.subscriptions.scheduler import BillingScheduler
from dotmac.subscriptions.settings import reset_settings

TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 8, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Build subscriptions in any state; fields not given get sensible defaults."""

    def _make(**overrides: Any) -> Subscription:
        base = Subscription.new(
            customer_id=overrides.pop("customer_id", "cust-1"),
            customer_email=overrides.pop("customer_email", "customer@example.com"),
            plan_id=overrides.pop("plan_id", "plan-basic"),
            billing_cycle=overrides.pop("billing_cycle", BillingCycle.MONTHLY),
            monthly_amount=Decimal(str(overrides.pop("monthly_amount", "29.90"))),
            start_date=overrides.pop("start_date", date(2025, 2, 10)),
            payment_method_token=overrides.pop("payment_method_token", "tok_visa"),
        )
        overrides.setdefault("status", SubscriptionStatus.ACTIVE)
        return base.model_copy(update=overrides)

    return _make


@pytest.fixture
def repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def gateway() -> SimulatedBillingGateway:
    return SimulatedBillingGateway(seed=7)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher(retry_base_seconds=0.0, retry_max_seconds=0.0)


@pytest.fixture
def metrics() -> MagicMock:
    return MagicMock(spec=SubscriptionMetrics)


@pytest.fixture
def processor(repository, gateway, publisher, metrics) -> BillingProcessor:
    return BillingProcessor(
        repository,
        gateway,
        publisher,
        max_attempts=3,
        grace_period_days=7,
        clock=lambda: TODAY,
        now=lambda: NOW,
        metrics=metrics,
    )


@pytest.fixture
def scheduler(repository, processor, metrics) -> BillingScheduler:
    return BillingScheduler(
        repository,
        processor,
        worker_pool_size=4,
        job_budget_seconds=60.0,
        clock=lambda: TODAY,
        metrics=metrics,
    )


@pytest.fixture
def orchestrator(repository, gateway, publisher, metrics) -> SubscriptionCreationOrchestrator:
    return SubscriptionCreationOrchestrator(
        repository,
        gateway,
        publisher,
        max_active_per_customer=10,
        clock=lambda: TODAY,
        metrics=metrics,
    )


@pytest.fixture
def lifecycle(repository, gateway, publisher, processor, metrics) -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(
        repository,
        gateway,
        publisher,
        processor,
        clock=lambda: TODAY,
        metrics=metrics,
    )


class SlowBillingGateway(SimulatedBillingGateway):
    """Simulated gateway whose calls yield to the event loop like network I/O."""

    def __init__(self, delay: float = 0.01, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delay = delay

    async def schedule_billing(self, **kwargs: Any):
        await asyncio.sleep(self.delay)
        return await super().schedule_billing(**kwargs)

    async def execute_charge(self, **kwargs: Any):
        await asyncio.sleep(self.delay)
        return await super().execute_charge(**kwargs)


@pytest.fixture
def slow_gateway() -> SlowBillingGateway:
    return SlowBillingGateway(seed=7)
