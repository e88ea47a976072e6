"""
Subscription lifecycle event types and event factories.

Every event carries the subscription id as ``aggregate_id``; transports use
it as the routing/partition key so events of one subscription stay ordered.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from dotmac.subscriptions.models import Subscription
from dotmac.subscriptions.ports import BillingResult


class SubscriptionEvents:
    """Event type constants."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"

    BILLING_SUCCEEDED = "billing.succeeded"
    BILLING_FAILED = "billing.failed"


class SubscriptionEvent(BaseModel):
    """Envelope for a lifecycle notification."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def routing_key(self) -> str:
        return self.aggregate_id


def _base_payload(subscription: Subscription) -> dict[str, Any]:
    return {
        "subscription_id": subscription.subscription_id,
        "customer_id": subscription.customer_id,
        "plan_id": subscription.plan_id,
        "status": subscription.status.value,
    }


def _event(event_type: str, subscription: Subscription, **extra: Any) -> SubscriptionEvent:
    return SubscriptionEvent(
        event_type=event_type,
        aggregate_id=subscription.subscription_id,
        payload={**_base_payload(subscription), **extra},
    )


def subscription_created(subscription: Subscription) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.SUBSCRIPTION_CREATED,
        subscription,
        customer_email=str(subscription.customer_email),
        billing_cycle=subscription.billing_cycle.value,
        monthly_amount=str(subscription.monthly_amount),
        currency=subscription.currency,
        next_billing_date=subscription.next_billing_date.isoformat(),
    )


def subscription_paused(subscription: Subscription) -> SubscriptionEvent:
    return _event(SubscriptionEvents.SUBSCRIPTION_PAUSED, subscription)


def subscription_resumed(subscription: Subscription) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.SUBSCRIPTION_RESUMED,
        subscription,
        next_billing_date=subscription.next_billing_date.isoformat(),
    )


def subscription_cancelled(subscription: Subscription, reason: str | None) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.SUBSCRIPTION_CANCELLED,
        subscription,
        reason=reason,
        cancelled_at=subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
    )


def subscription_expired(subscription: Subscription) -> SubscriptionEvent:
    return _event(SubscriptionEvents.SUBSCRIPTION_EXPIRED, subscription)


def subscription_plan_changed(
    subscription: Subscription, previous_plan_id: str
) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.SUBSCRIPTION_PLAN_CHANGED,
        subscription,
        previous_plan_id=previous_plan_id,
        monthly_amount=str(subscription.monthly_amount),
    )


def billing_succeeded(subscription: Subscription, result: BillingResult) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.BILLING_SUCCEEDED,
        subscription,
        transaction_id=result.transaction_id,
        charged_amount=str(result.charged_amount) if result.charged_amount is not None else None,
        currency=subscription.currency,
        next_billing_date=subscription.next_billing_date.isoformat(),
    )


def billing_failed(subscription: Subscription, result: BillingResult) -> SubscriptionEvent:
    return _event(
        SubscriptionEvents.BILLING_FAILED,
        subscription,
        error_code=result.error_code,
        message=result.message,
        failed_payment_attempts=subscription.failed_payment_attempts,
        grace_period_end=(
            subscription.grace_period_end.isoformat() if subscription.grace_period_end else None
        ),
    )
