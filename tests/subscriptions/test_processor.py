"""Tests for single-subscription billing."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dotmac.subscriptions import state_machine
from dotmac.subscriptions.adapters import InMemoryEventPublisher, SimulatedBillingGateway
from dotmac.subscriptions.events import SubscriptionEvents
from dotmac.subscriptions.exceptions import ConcurrentModificationError
from dotmac.subscriptions.models import SubscriptionStatus, add_months
from dotmac.subscriptions.ports import BillingResult
from dotmac.subscriptions.processor import BillingProcessor, OutcomeStatus

pytestmark = pytest.mark.unit

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=UTC)


def _processor(repository, gateway, publisher, metrics, today) -> BillingProcessor:
    return BillingProcessor(
        repository,
        gateway,
        publisher,
        claim_ttl_seconds=900.0,
        clock=lambda: today,
        now=lambda: NOW,
        metrics=metrics,
    )


@pytest.mark.asyncio
class TestDailyCharge:
    """Test charging ACTIVE subscriptions."""

    async def test_due_subscription_is_charged(
        self, processor, repository, gateway, publisher, metrics, make_subscription, today
    ):
        """A due subscription is charged once and moves to the next cycle."""
        sub = await repository.save(make_subscription(next_billing_date=today))

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.CHARGED
        assert outcome.transaction_id.startswith("sim_tx_")
        stored = await repository.get(sub.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.next_billing_date == add_months(today, 1)
        assert gateway.charges == [(sub.subscription_id, Decimal("29.90"), False)]
        assert [e.event_type for e in publisher.events] == [SubscriptionEvents.BILLING_SUCCEEDED]
        metrics.record_charge.assert_called_once_with(True, False)

    async def test_not_due_is_skipped(
        self, processor, repository, gateway, make_subscription, today
    ):
        sub = await repository.save(make_subscription(next_billing_date=today + timedelta(days=1)))

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert gateway.charges == []

    async def test_second_run_same_day_does_not_charge_again(
        self, processor, repository, gateway, make_subscription, today
    ):
        """Reprocessing a stale snapshot after a successful charge is a no-op."""
        sub = await repository.save(make_subscription(next_billing_date=today))

        first = await processor.process_single_billing(sub)
        second = await processor.process_single_billing(sub)

        assert first.status == OutcomeStatus.CHARGED
        assert second.status == OutcomeStatus.SKIPPED
        assert len(gateway.charges) == 1

    async def test_amount_below_minimum_fails(
        self, processor, repository, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(next_billing_date=today, monthly_amount="0.50")
        )

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_code == "INSUFFICIENT_FUNDS"

    async def test_publish_failure_does_not_change_outcome(
        self, repository, gateway, metrics, make_subscription, today
    ):
        publisher = InMemoryEventPublisher(fail_times=10, retry_base_seconds=0.0, retry_max_seconds=0.0)
        processor = _processor(repository, gateway, publisher, metrics, today)
        sub = await repository.save(make_subscription(next_billing_date=today))

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.CHARGED
        assert publisher.events == []
        assert publisher.attempts == 3
        metrics.record_publish_failure.assert_called_once_with(SubscriptionEvents.BILLING_SUCCEEDED)

    async def test_time_boxed_subscription_expires_instead_of_charging(
        self, processor, repository, gateway, publisher, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(next_billing_date=today, end_date=today)
        )

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.EXPIRED
        assert gateway.charges == []
        assert (await repository.get(sub.subscription_id)).status == SubscriptionStatus.EXPIRED
        assert [e.event_type for e in publisher.events] == [SubscriptionEvents.SUBSCRIPTION_EXPIRED]

    async def test_gateway_exception_becomes_error_outcome(
        self, repository, publisher, metrics, make_subscription, today
    ):
        gateway = AsyncMock()
        gateway.execute_charge.side_effect = RuntimeError("connection reset")
        processor = _processor(repository, gateway, publisher, metrics, today)
        sub = await repository.save(make_subscription(next_billing_date=today))

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.ERROR
        assert "connection reset" in outcome.message
        stored = await repository.get(sub.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.billing_claimed_at is None

        retry = _processor(repository, SimulatedBillingGateway(), publisher, metrics, today)
        assert (await retry.process_single_billing(sub)).status == OutcomeStatus.CHARGED


@pytest.mark.asyncio
class TestPaymentRetries:
    """Test the failure, retry and exhaustion path."""

    async def test_three_declines_cancel_subscription(
        self, processor, repository, publisher, metrics, make_subscription, today
    ):
        """Three consecutive declines: PAST_DUE, PAST_DUE, then CANCELLED."""
        sub = await repository.save(
            make_subscription(next_billing_date=today, payment_method_token="tok_declined")
        )

        first = await processor.process_single_billing(sub, today)
        stored = await repository.get(sub.subscription_id)
        assert first.status == OutcomeStatus.FAILED
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.failed_payment_attempts == 1
        assert stored.grace_period_end == today + timedelta(days=7)

        second = await processor.process_single_billing(sub, today + timedelta(days=1))
        stored = await repository.get(sub.subscription_id)
        assert second.status == OutcomeStatus.FAILED
        assert stored.failed_payment_attempts == 2
        assert stored.grace_period_end == today + timedelta(days=7)

        third = await processor.process_single_billing(sub, today + timedelta(days=2))
        stored = await repository.get(sub.subscription_id)
        assert third.status == OutcomeStatus.CANCELLED
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.failed_payment_attempts == 3
        assert stored.grace_period_end is None

        assert [e.event_type for e in publisher.for_aggregate(sub.subscription_id)] == [
            SubscriptionEvents.BILLING_FAILED,
            SubscriptionEvents.BILLING_FAILED,
            SubscriptionEvents.SUBSCRIPTION_CANCELLED,
        ]
        metrics.record_cancellation.assert_called_once_with(state_machine.EXHAUSTED_REASON)

    async def test_retry_success_restores_active(
        self, processor, repository, gateway, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=1,
                grace_period_end=today + timedelta(days=5),
                next_billing_date=today - timedelta(days=2),
            )
        )

        outcome = await processor.process_single_billing(sub)

        stored = await repository.get(sub.subscription_id)
        assert outcome.status == OutcomeStatus.CHARGED
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.failed_payment_attempts == 0
        assert stored.next_billing_date == add_months(today, 1)
        assert gateway.charges[0][2] is True

    async def test_past_due_outside_grace_is_not_retried(
        self, processor, repository, gateway, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=1,
                grace_period_end=today - timedelta(days=1),
            )
        )

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert gateway.charges == []


@pytest.mark.asyncio
class TestConcurrency:
    """Test claims and outcome application under concurrent writers."""

    async def test_lost_claim_skips_without_charging(
        self, publisher, metrics, make_subscription, today
    ):
        sub = make_subscription(next_billing_date=today)
        repository = AsyncMock()
        repository.get.return_value = sub
        repository.save.side_effect = ConcurrentModificationError(sub.subscription_id, 0, 1)
        gateway = AsyncMock()
        processor = _processor(repository, gateway, publisher, metrics, today)

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.SKIPPED
        gateway.execute_charge.assert_not_awaited()

    async def test_concurrent_runs_charge_once(
        self, repository, slow_gateway, publisher, metrics, make_subscription, today
    ):
        """Two workers billing the same row: the gateway call of the first is in flight."""
        first = _processor(repository, slow_gateway, publisher, metrics, today)
        second = _processor(repository, slow_gateway, publisher, metrics, today)
        sub = await repository.save(make_subscription(next_billing_date=today))

        outcomes = await asyncio.gather(
            first.process_single_billing(sub), second.process_single_billing(sub)
        )

        assert {o.status for o in outcomes} == {OutcomeStatus.CHARGED, OutcomeStatus.SKIPPED}
        assert len(slow_gateway.charges) == 1
        stored = await repository.get(sub.subscription_id)
        assert stored.next_billing_date == add_months(today, 1)
        assert stored.billing_claimed_at is None

    async def test_concurrent_retries_count_one_failure(
        self, repository, slow_gateway, publisher, metrics, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=1,
                grace_period_end=today + timedelta(days=5),
                payment_method_token="tok_declined",
            )
        )
        processor = _processor(repository, slow_gateway, publisher, metrics, today)

        outcomes = await asyncio.gather(
            processor.process_single_billing(sub), processor.process_single_billing(sub)
        )

        assert {o.status for o in outcomes} == {OutcomeStatus.FAILED, OutcomeStatus.SKIPPED}
        assert len(slow_gateway.charges) == 1
        assert (await repository.get(sub.subscription_id)).failed_payment_attempts == 2

    async def test_live_claim_is_skipped(
        self, repository, gateway, publisher, metrics, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                next_billing_date=today, billing_claimed_at=NOW - timedelta(minutes=1)
            )
        )
        processor = _processor(repository, gateway, publisher, metrics, today)

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.message == "Billing already in progress"
        assert gateway.charges == []

    async def test_stale_claim_is_taken_over(
        self, repository, gateway, publisher, metrics, make_subscription, today
    ):
        """A claim left behind by a crashed worker expires after the claim TTL."""
        sub = await repository.save(
            make_subscription(next_billing_date=today, billing_claimed_at=NOW - timedelta(hours=1))
        )
        processor = _processor(repository, gateway, publisher, metrics, today)

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.CHARGED
        assert len(gateway.charges) == 1
        assert (await repository.get(sub.subscription_id)).billing_claimed_at is None

    async def test_concurrent_write_during_charge_is_reapplied(
        self, repository, publisher, metrics, make_subscription, today
    ):
        """A payment method update between claim and apply causes a reload, not a lost charge."""
        sub = await repository.save(make_subscription(next_billing_date=today))

        async def charge_with_interleaved_write(**kwargs):
            current = await repository.get(sub.subscription_id)
            await repository.save(current.model_copy(update={"payment_method_token": "tok_new"}))
            return BillingResult.succeeded("tx-1", kwargs["amount"])

        gateway = AsyncMock()
        gateway.execute_charge.side_effect = charge_with_interleaved_write
        processor = _processor(repository, gateway, publisher, metrics, today)

        outcome = await processor.process_single_billing(sub)

        stored = await repository.get(sub.subscription_id)
        assert outcome.status == OutcomeStatus.CHARGED
        assert stored.next_billing_date == add_months(today, 1)
        gateway.execute_charge.assert_awaited_once()
        assert stored.payment_method_token == "tok_new"
        assert stored.billing_claimed_at is None

    async def test_pause_during_charge_reports_unapplied_transaction(
        self, repository, publisher, metrics, make_subscription, today
    ):
        sub = await repository.save(make_subscription(next_billing_date=today))

        async def charge_while_customer_pauses(**kwargs):
            current = await repository.get(sub.subscription_id)
            await repository.save(state_machine.pause(current))
            return BillingResult.succeeded("tx-42", kwargs["amount"])

        gateway = AsyncMock()
        gateway.execute_charge.side_effect = charge_while_customer_pauses
        processor = _processor(repository, gateway, publisher, metrics, today)

        outcome = await processor.process_single_billing(sub)

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.transaction_id == "tx-42"
        stored = await repository.get(sub.subscription_id)
        assert stored.status == SubscriptionStatus.PAUSED
        assert stored.billing_claimed_at is None


@pytest.mark.asyncio
class TestGraceExpiry:
    """Test cancelling subscriptions whose grace period ended."""

    async def test_expired_grace_cancels_and_publishes_once(
        self, processor, repository, publisher, make_subscription, today
    ):
        sub = await repository.save(
            make_subscription(
                status=SubscriptionStatus.PAST_DUE,
                failed_payment_attempts=1,
                grace_period_end=today - timedelta(days=1),
            )
        )

        first = await processor.cancel_expired_grace_period(sub)
        second = await processor.cancel_expired_grace_period(sub)

        assert first.status == OutcomeStatus.CANCELLED
        assert second.status == OutcomeStatus.SKIPPED
        assert len(publisher.of_type(SubscriptionEvents.SUBSCRIPTION_CANCELLED)) == 1

    async def test_missing_subscription_is_error(self, processor, make_subscription):
        outcome = await processor.cancel_expired_grace_period(make_subscription())

        assert outcome.status == OutcomeStatus.ERROR

