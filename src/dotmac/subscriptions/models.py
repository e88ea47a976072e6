"""
Subscription aggregate and billing cycle value types.
"""

import calendar
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

CENTS = Decimal("0.01")


class BillingCycle(str, Enum):
    """Recurrence period of a subscription."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


_CYCLE_MONTHS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def cycle_months(cycle: BillingCycle) -> int:
    """Month multiplier of a billing cycle."""
    return _CYCLE_MONTHS[BillingCycle(cycle)]


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_billing_date(from_date: date, cycle: BillingCycle) -> date:
    """Billing date one cycle after ``from_date``."""
    return add_months(from_date, cycle_months(cycle))


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Subscription(BaseModel):
    """Aggregate root for a customer's recurring purchase of a plan.

    Instances are immutable; lifecycle transitions in
    :mod:`dotmac.subscriptions.state_machine` return updated copies.
    """

    model_config = ConfigDict(frozen=True)

    subscription_id: str = Field(default_factory=lambda: str(uuid4()))
    customer_id: str = Field(min_length=1)
    customer_email: EmailStr
    plan_id: str = Field(min_length=1)
    billing_cycle: BillingCycle
    monthly_amount: Decimal = Field(gt=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    status: SubscriptionStatus = SubscriptionStatus.PENDING

    start_date: date
    next_billing_date: date
    end_date: date | None = None
    cancelled_at: date | None = None
    grace_period_end: date | None = None
    failed_payment_attempts: int = Field(0, ge=0)

    payment_method_token: str | None = None
    cancellation_reason: str | None = None
    billing_claimed_at: datetime | None = None
    version: int = Field(0, ge=0)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("customer_id", "plan_id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Identifier must not be blank")
        return v.strip()

    @field_validator("monthly_amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        amount = v.quantize(CENTS, rounding=ROUND_HALF_UP)
        if amount < CENTS:
            raise ValueError("Monthly amount must be at least 0.01")
        return amount

    @classmethod
    def new(
        cls,
        *,
        customer_id: str,
        customer_email: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        monthly_amount: Decimal,
        start_date: date,
        currency: str = "USD",
        payment_method_token: str | None = None,
        end_date: date | None = None,
    ) -> "Subscription":
        """Build a PENDING subscription whose first charge falls one cycle after start."""
        return cls(
            customer_id=customer_id,
            customer_email=customer_email,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            monthly_amount=monthly_amount,
            currency=currency,
            start_date=start_date,
            next_billing_date=next_billing_date(start_date, billing_cycle),
            end_date=end_date,
            payment_method_token=payment_method_token,
        )

    def billing_amount(self) -> Decimal:
        """Amount charged per cycle."""
        return (self.monthly_amount * cycle_months(self.billing_cycle)).quantize(
            CENTS, rounding=ROUND_HALF_UP
        )

    def needs_billing(self, today: date) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and self.next_billing_date <= today

    def is_in_grace_period(self, today: date) -> bool:
        return (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_end is not None
            and self.grace_period_end >= today
        )

    def is_grace_period_expired(self, today: date) -> bool:
        return (
            self.status == SubscriptionStatus.PAST_DUE
            and self.grace_period_end is not None
            and self.grace_period_end < today
        )

    def has_reached_end(self, today: date) -> bool:
        return (
            not self.status.is_terminal
            and self.end_date is not None
            and self.end_date <= today
        )

    def is_billing_claimed(self, now: datetime, ttl: timedelta) -> bool:
        """True while a charge claimed at ``billing_claimed_at`` may still be in flight."""
        return self.billing_claimed_at is not None and now < self.billing_claimed_at + ttl


# Statuses that hold a plan slot for duplicate and limit checks; PENDING rows
# reserve theirs while billing is being scheduled.
LIVE_STATUSES = frozenset(
    {
        SubscriptionStatus.PENDING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.PAST_DUE,
    }
)
