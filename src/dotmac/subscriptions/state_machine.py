"""
Subscription lifecycle transitions.

Pure functions over an immutable :class:`Subscription`: each returns an
updated copy or raises :class:`InvalidTransitionError` when the current
status does not allow the operation. Nothing here performs I/O.

    PENDING  -> ACTIVE        activate (first billing schedule accepted)
    PENDING  -> CANCELLED     cancel (compensation)
    ACTIVE  <-> PAUSED        pause / resume
    ACTIVE   -> PAST_DUE      record_failed_charge
    PAST_DUE -> ACTIVE        record_successful_charge / activate
    PAST_DUE -> CANCELLED     record_failed_charge (exhausted) / expire_grace_period
    ACTIVE, PAST_DUE          claim_billing / release_billing_claim (status unchanged)
    *        -> CANCELLED     cancel (any non-terminal)
    *        -> EXPIRED       expire (time-boxed subscription reached end_date)
"""

from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from dotmac.subscriptions.exceptions import InvalidTransitionError, SubscriptionValidationError
from dotmac.subscriptions.models import (
    CENTS,
    Subscription,
    SubscriptionStatus,
    next_billing_date,
)

ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
PAUSED = SubscriptionStatus.PAUSED
PENDING = SubscriptionStatus.PENDING
CANCELLED = SubscriptionStatus.CANCELLED
EXPIRED = SubscriptionStatus.EXPIRED

EXHAUSTED_REASON = "payment_attempts_exhausted"
GRACE_EXPIRED_REASON = "grace_period_expired"


def _touch(subscription: Subscription, **changes: Any) -> Subscription:
    changes["updated_at"] = datetime.now(UTC)
    return subscription.model_copy(update=changes)


def _require(subscription: Subscription, operation: str, *allowed: SubscriptionStatus) -> None:
    if subscription.status not in allowed:
        raise InvalidTransitionError(
            subscription.subscription_id, subscription.status.value, operation
        )


def activate(subscription: Subscription) -> Subscription:
    """PENDING or PAST_DUE -> ACTIVE, clearing the failure bookkeeping."""
    _require(subscription, "activate", PENDING, PAST_DUE)
    return _touch(
        subscription,
        status=ACTIVE,
        failed_payment_attempts=0,
        grace_period_end=None,
    )


def claim_billing(subscription: Subscription, now: datetime) -> Subscription:
    """Mark a billable subscription as being charged.

    The claim is written with the version compare-and-swap, so concurrent
    runs see it and skip the subscription until the outcome is applied or
    the claim goes stale.
    """
    _require(subscription, "claim billing for", ACTIVE, PAST_DUE)
    return _touch(subscription, billing_claimed_at=now)


def release_billing_claim(subscription: Subscription) -> Subscription:
    """Drop a claim whose charge never reached the gateway outcome."""
    if subscription.billing_claimed_at is None:
        return subscription
    return _touch(subscription, billing_claimed_at=None)


def record_successful_charge(subscription: Subscription, charge_date: date) -> Subscription:
    """Apply a captured charge.

    The next billing date is computed from ``charge_date`` rather than the
    stored date so that late runs do not accumulate drift.
    """
    _require(subscription, "record a successful charge for", ACTIVE, PAST_DUE)
    return _touch(
        subscription,
        status=ACTIVE,
        failed_payment_attempts=0,
        grace_period_end=None,
        next_billing_date=next_billing_date(charge_date, subscription.billing_cycle),
        billing_claimed_at=None,
    )


def record_failed_charge(
    subscription: Subscription,
    max_attempts: int,
    grace_period_days: int,
    today: date,
) -> Subscription:
    """Count a declined charge.

    Below ``max_attempts`` the subscription becomes PAST_DUE and the grace
    window opens once; repeated failures inside the window keep its original
    end. Reaching ``max_attempts`` cancels immediately.
    """
    _require(subscription, "record a failed charge for", ACTIVE, PAST_DUE)
    attempts = subscription.failed_payment_attempts + 1

    if attempts >= max_attempts:
        return _touch(
            subscription,
            status=CANCELLED,
            failed_payment_attempts=attempts,
            grace_period_end=None,
            billing_claimed_at=None,
            cancelled_at=today,
            cancellation_reason=EXHAUSTED_REASON,
        )

    grace_period_end = subscription.grace_period_end or today + timedelta(days=grace_period_days)
    return _touch(
        subscription,
        status=PAST_DUE,
        failed_payment_attempts=attempts,
        grace_period_end=grace_period_end,
        billing_claimed_at=None,
    )


def expire_grace_period(subscription: Subscription, today: date) -> Subscription:
    """PAST_DUE whose grace window ended before ``today`` -> CANCELLED; otherwise unchanged."""
    if not subscription.is_grace_period_expired(today):
        return subscription
    return _touch(
        subscription,
        status=CANCELLED,
        grace_period_end=None,
        cancelled_at=today,
        cancellation_reason=GRACE_EXPIRED_REASON,
    )


def pause(subscription: Subscription) -> Subscription:
    _require(subscription, "pause", ACTIVE)
    return _touch(subscription, status=PAUSED)


def resume(subscription: Subscription, today: date) -> Subscription:
    """PAUSED -> ACTIVE.

    A billing date that passed while paused is rescheduled to ``today`` so the
    next daily run starts a fresh cycle.
    """
    _require(subscription, "resume", PAUSED)
    return _touch(
        subscription,
        status=ACTIVE,
        next_billing_date=max(subscription.next_billing_date, today),
    )


def cancel(subscription: Subscription, today: date, reason: str | None = None) -> Subscription:
    """Any non-terminal status -> CANCELLED. Cancelling twice is a no-op."""
    if subscription.status == CANCELLED:
        return subscription
    _require(subscription, "cancel", PENDING, ACTIVE, PAUSED, PAST_DUE)
    return _touch(
        subscription,
        status=CANCELLED,
        grace_period_end=None,
        cancelled_at=today,
        cancellation_reason=reason,
    )


def expire(subscription: Subscription, today: date) -> Subscription:
    """Time-boxed subscription whose end date arrived -> EXPIRED."""
    if not subscription.has_reached_end(today):
        raise InvalidTransitionError(
            subscription.subscription_id, subscription.status.value, "expire"
        )
    return _touch(subscription, status=EXPIRED, grace_period_end=None)


def change_plan(subscription: Subscription, plan_id: str, monthly_amount: Decimal) -> Subscription:
    """Swap the plan of an ACTIVE subscription."""
    _require(subscription, "change the plan of", ACTIVE)
    if not plan_id or not plan_id.strip():
        raise SubscriptionValidationError("Plan ID must not be empty", field="plan_id")
    amount = monthly_amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount < CENTS:
        raise SubscriptionValidationError(
            "Monthly amount must be at least 0.01", field="monthly_amount"
        )
    return _touch(subscription, plan_id=plan_id.strip(), monthly_amount=amount)
