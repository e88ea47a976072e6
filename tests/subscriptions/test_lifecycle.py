"""Tests for customer-initiated lifecycle operations."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dotmac.subscriptions.adapters import InMemorySubscriptionRepository
from dotmac.subscriptions.events import SubscriptionEvents
from dotmac.subscriptions.exceptions import ConcurrentModificationError, SubscriptionNotFoundError
from dotmac.subscriptions.lifecycle import SubscriptionLifecycleService
from dotmac.subscriptions.models import BillingCycle, SubscriptionStatus
from dotmac.subscriptions.orchestrator import CreateSubscriptionCommand
from dotmac.subscriptions.ports import (
    BillingCancellationResult,
    BillingUpdateResult,
    GatewayBillingStatus,
)
from dotmac.subscriptions.processor import OutcomeStatus

pytestmark = pytest.mark.unit


class ConflictingRepository(InMemorySubscriptionRepository):
    """Raises a version conflict for the first ``conflicts`` saves."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def save(self, subscription):
        if subscription.version > 0 and self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrentModificationError(
                subscription.subscription_id, subscription.version, subscription.version + 1
            )
        return await super().save(subscription)


def _service(repository, gateway, publisher, processor, metrics, today):
    return SubscriptionLifecycleService(
        repository, gateway, publisher, processor, clock=lambda: today, metrics=metrics
    )


async def _create(orchestrator, **overrides):
    values = {
        "customer_id": "cust-1",
        "customer_email": "customer@example.com",
        "plan_id": "plan-basic",
        "billing_cycle": BillingCycle.MONTHLY,
        "monthly_amount": Decimal("29.90"),
        "payment_method_token": "tok_visa",
    }
    values.update(overrides)
    result = await orchestrator.create_subscription(CreateSubscriptionCommand(**values))
    assert result.success, result.message
    return result.subscription


@pytest.mark.asyncio
class TestPauseResume:
    """Test pausing and resuming."""

    async def test_pause_active(self, lifecycle, repository, publisher, make_subscription):
        sub = await repository.save(make_subscription())

        result = await lifecycle.pause(sub.subscription_id)

        assert result.success is True
        assert result.subscription.status == SubscriptionStatus.PAUSED
        assert [e.event_type for e in publisher.events] == [SubscriptionEvents.SUBSCRIPTION_PAUSED]

    async def test_pause_past_due_rejected(self, lifecycle, repository, make_subscription, today):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=1,
                grace_period_end=today + timedelta(days=3),
            )
        )

        result = await lifecycle.pause(sub.subscription_id)

        assert result.success is False
        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert (await repository.get(sub.subscription_id)).status == SubscriptionStatus.PAST_DUE

    async def test_paused_subscription_is_not_billed(
        self, lifecycle, scheduler, repository, gateway, make_subscription, today
    ):
        sub = await repository.save(make_subscription(next_billing_date=today))
        await lifecycle.pause(sub.subscription_id)

        result = await scheduler.run_daily_billing()

        assert result.candidates == 0
        assert gateway.charges == []

    async def test_resume_reschedules_missed_date(
        self, lifecycle, repository, publisher, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAUSED, next_billing_date=today - timedelta(days=12)
            )
        )

        result = await lifecycle.resume(sub.subscription_id)

        assert result.success is True
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.next_billing_date == today
        assert publisher.events[0].event_type == SubscriptionEvents.SUBSCRIPTION_RESUMED

    async def test_write_conflict_is_retried(
        self, gateway, publisher, processor, metrics, make_subscription, today
    ):
        repository = ConflictingRepository(conflicts=2)
        sub = await repository.save(make_subscription())
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.pause(sub.subscription_id)

        assert result.success is True
        assert repository.conflicts == 0

    async def test_persistent_conflict_fails_cleanly(
        self, gateway, publisher, processor, metrics, make_subscription, today
    ):
        repository = ConflictingRepository(conflicts=5)
        sub = await repository.save(make_subscription())
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.pause(sub.subscription_id)

        assert result.success is False
        assert result.error_code == "CONCURRENT_MODIFICATION"
        assert publisher.events == []


@pytest.mark.asyncio
class TestCancel:
    """Test customer cancellation."""

    async def test_cancel_stops_gateway_billing(
        self, lifecycle, orchestrator, gateway, publisher, metrics, today
    ):
        sub = await _create(orchestrator)

        result = await lifecycle.cancel(sub.subscription_id)

        assert result.success is True
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.subscription.cancelled_at == today
        assert result.subscription.cancellation_reason == "customer_request"
        status = await gateway.get_billing_status(sub.subscription_id)
        assert status == GatewayBillingStatus.CANCELLED
        event = publisher.of_type(SubscriptionEvents.SUBSCRIPTION_CANCELLED)[0]
        assert event.payload["reason"] == "customer_request"
        metrics.record_cancellation.assert_called_once_with("customer_request")

    async def test_cancel_twice_publishes_once(self, lifecycle, orchestrator, publisher):
        sub = await _create(orchestrator)

        first = await lifecycle.cancel(sub.subscription_id)
        second = await lifecycle.cancel(sub.subscription_id)

        assert first.success is True
        assert second.success is True
        assert second.message == "Subscription already cancelled"
        assert len(publisher.of_type(SubscriptionEvents.SUBSCRIPTION_CANCELLED)) == 1

    async def test_gateway_refusal_keeps_local_cancel(
        self, repository, publisher, processor, metrics, make_subscription, today
    ):
        gateway = AsyncMock()
        gateway.cancel_billing.return_value = BillingCancellationResult.failed("provider down")
        sub = await repository.save(make_subscription())
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.cancel(sub.subscription_id)

        assert result.success is True
        assert (await repository.get(sub.subscription_id)).status == SubscriptionStatus.CANCELLED

    async def test_cancel_unknown_subscription(self, lifecycle):
        result = await lifecycle.cancel("missing")

        assert result.success is False
        assert result.error_code == "SUBSCRIPTION_NOT_FOUND"

    async def test_cancelled_subscription_is_not_billed(
        self, lifecycle, repository, gateway, make_subscription, today
    ):
        sub = await repository.save(make_subscription(next_billing_date=today))
        await lifecycle.cancel(sub.subscription_id)

        outcome = await lifecycle.process_billing_now(sub.subscription_id)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert gateway.charges == []


@pytest.mark.asyncio
class TestChangePlan:
    """Test plan changes and gateway reconciliation."""

    async def test_change_plan_updates_gateway_and_publishes(
        self, lifecycle, orchestrator, publisher
    ):
        sub = await _create(orchestrator)

        result = await lifecycle.change_plan(sub.subscription_id, "plan-pro", "49.90")

        assert result.success is True
        assert result.subscription.plan_id == "plan-pro"
        assert result.subscription.monthly_amount == Decimal("49.90")
        event = publisher.of_type(SubscriptionEvents.SUBSCRIPTION_PLAN_CHANGED)[0]
        assert event.payload["previous_plan_id"] == "plan-basic"

    async def test_gateway_rejection_leaves_plan_unchanged(
        self, lifecycle, repository, make_subscription
    ):
        """No gateway schedule exists for a seeded subscription, so the update fails."""
        sub = await repository.save(make_subscription())

        result = await lifecycle.change_plan(sub.subscription_id, "plan-pro", "49.90")

        assert result.success is False
        assert result.error_code == "BILLING_UPDATE_FAILED"
        assert (await repository.get(sub.subscription_id)).plan_id == "plan-basic"

    async def test_change_plan_requires_active(
        self, repository, publisher, processor, metrics, make_subscription, today
    ):
        gateway = AsyncMock()
        sub = await repository.save(make_subscription(status=SubscriptionStatus.PAUSED))
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.change_plan(sub.subscription_id, "plan-pro", "49.90")

        assert result.error_code == "INVALID_STATE_TRANSITION"
        gateway.update_billing.assert_not_awaited()

    async def test_invalid_amount_rejected(self, lifecycle, repository, make_subscription):
        sub = await repository.save(make_subscription())

        result = await lifecycle.change_plan(sub.subscription_id, "plan-pro", "free")

        assert result.success is False
        assert result.error_code == "SUBSCRIPTION_VALIDATION_ERROR"

    async def test_amount_rounding_to_zero_rejected(
        self, repository, publisher, processor, metrics, make_subscription, today
    ):
        gateway = AsyncMock()
        sub = await repository.save(make_subscription())
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.change_plan(sub.subscription_id, "plan-pro", "0.004")

        assert result.success is False
        assert result.error_code == "SUBSCRIPTION_VALIDATION_ERROR"
        assert result.context == {"field": "monthly_amount"}
        assert result.recovery_hint is not None
        gateway.update_billing.assert_not_awaited()
        assert (await repository.get(sub.subscription_id)).monthly_amount == Decimal("29.90")

    async def test_failed_local_write_reverts_gateway(
        self, publisher, processor, metrics, make_subscription, today
    ):
        repository = ConflictingRepository(conflicts=5)
        sub = await repository.save(make_subscription())
        gateway = AsyncMock()
        gateway.update_billing.return_value = BillingUpdateResult.succeeded()
        service = _service(repository, gateway, publisher, processor, metrics, today)

        result = await service.change_plan(sub.subscription_id, "plan-pro", "49.90")

        assert result.success is False
        amounts = [call.kwargs["new_amount"] for call in gateway.update_billing.await_args_list]
        assert amounts == [Decimal("49.90"), Decimal("29.90")]


@pytest.mark.asyncio
class TestQueries:
    """Test status, stats and manual billing."""

    async def test_get_status(self, lifecycle, repository, make_subscription, today):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=2,
                grace_period_end=today + timedelta(days=1),
            )
        )

        view = await lifecycle.get_status(sub.subscription_id)

        assert view.status == SubscriptionStatus.PAST_DUE
        assert view.in_grace_period is True
        assert view.failed_payment_attempts == 2

    async def test_get_status_unknown(self, lifecycle):
        with pytest.raises(SubscriptionNotFoundError):
            await lifecycle.get_status("missing")

    async def test_process_billing_now(self, lifecycle, repository, make_subscription, today):
        sub = await repository.save(make_subscription(next_billing_date=today))

        outcome = await lifecycle.process_billing_now(sub.subscription_id)

        assert outcome.status == OutcomeStatus.CHARGED

    async def test_process_billing_now_unknown(self, lifecycle):
        outcome = await lifecycle.process_billing_now("missing")

        assert outcome.status == OutcomeStatus.ERROR

    async def test_stats(self, lifecycle, repository, make_subscription):
        await repository.save(make_subscription(customer_id="a", monthly_amount="29.90"))
        await repository.save(make_subscription(customer_id="a", monthly_amount="10.00"))
        await repository.save(make_subscription(customer_id="b", monthly_amount="50.00"))
        await repository.save(
            make_subscription(customer_id="c", status=SubscriptionStatus.PAUSED)
        )
        await repository.save(
            make_subscription(customer_id="d", status=SubscriptionStatus.CANCELLED)
        )

        stats = await lifecycle.stats()

        assert stats.total == 5
        assert stats.by_status[SubscriptionStatus.ACTIVE] == 3
        assert stats.by_status[SubscriptionStatus.PAUSED] == 1
        assert stats.by_status[SubscriptionStatus.EXPIRED] == 0
        assert stats.monthly_recurring_revenue == {"USD": Decimal("89.90")}
        assert stats.average_revenue_per_user == {"USD": Decimal("44.95")}
