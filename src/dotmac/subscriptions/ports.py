"""
Ports to the systems the billing engine depends on.

Concrete adapters live in :mod:`dotmac.subscriptions.adapters`; production
deployments supply their own (ORM repository, provider SDK gateway,
message-bus publisher) implementing the same protocols.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from dotmac.subscriptions.models import BillingCycle, Subscription, SubscriptionStatus

if TYPE_CHECKING:
    from dotmac.subscriptions.events import SubscriptionEvent


# ============================================================================
# Gateway results
# ============================================================================


class GatewayResult(BaseModel):
    """Common shape of a billing gateway response."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str = ""


class BillingScheduleResult(GatewayResult):
    billing_id: str | None = None
    next_billing_date: date | None = None

    @classmethod
    def succeeded(cls, billing_id: str, next_billing_date: date) -> "BillingScheduleResult":
        return cls(
            success=True,
            message="Billing scheduled",
            billing_id=billing_id,
            next_billing_date=next_billing_date,
        )

    @classmethod
    def failed(cls, message: str) -> "BillingScheduleResult":
        return cls(success=False, message=message)


class BillingUpdateResult(GatewayResult):
    @classmethod
    def succeeded(cls, message: str = "Billing updated") -> "BillingUpdateResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> "BillingUpdateResult":
        return cls(success=False, message=message)


class BillingCancellationResult(GatewayResult):
    @classmethod
    def succeeded(cls, message: str = "Billing cancelled") -> "BillingCancellationResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, message: str) -> "BillingCancellationResult":
        return cls(success=False, message=message)


class BillingResult(GatewayResult):
    """Outcome of a single charge."""

    transaction_id: str | None = None
    charged_amount: Decimal | None = None
    error_code: str | None = None

    @classmethod
    def succeeded(cls, transaction_id: str, charged_amount: Decimal) -> "BillingResult":
        return cls(
            success=True,
            message="Charge captured",
            transaction_id=transaction_id,
            charged_amount=charged_amount,
        )

    @classmethod
    def failed(cls, error_code: str, message: str) -> "BillingResult":
        return cls(success=False, message=message, error_code=error_code)


class GatewayBillingStatus(str, Enum):
    """Provider-side view of a recurring billing schedule."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PENDING = "pending"


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class BillingGateway(Protocol):
    """External payment/billing provider."""

    async def schedule_billing(
        self,
        subscription_id: str,
        customer_id: str,
        customer_email: str,
        amount: Decimal,
        cycle: BillingCycle,
        first_billing_date: date,
        payment_method_token: str,
    ) -> BillingScheduleResult: ...

    async def update_billing(
        self,
        subscription_id: str,
        new_amount: Decimal | None = None,
        new_cycle: BillingCycle | None = None,
        new_payment_method_token: str | None = None,
    ) -> BillingUpdateResult: ...

    async def execute_charge(
        self,
        subscription_id: str,
        customer_id: str,
        amount: Decimal,
        payment_method_token: str,
        is_retry: bool,
    ) -> BillingResult: ...

    async def cancel_billing(self, subscription_id: str) -> BillingCancellationResult: ...

    async def get_billing_status(self, subscription_id: str) -> GatewayBillingStatus: ...


@runtime_checkable
class SubscriptionRepository(Protocol):
    """Persistence for Subscription aggregates.

    ``save`` performs a compare-and-swap on ``version``: it succeeds only when
    the stored version equals the version of the argument, returns the stored
    copy with the version incremented, and raises
    :class:`~dotmac.subscriptions.exceptions.ConcurrentModificationError`
    otherwise. A subscription with version 0 that is not yet stored is
    inserted.
    """

    async def save(self, subscription: Subscription) -> Subscription: ...

    async def get(self, subscription_id: str) -> Subscription | None: ...

    async def find_by_customer(self, customer_id: str) -> list[Subscription]: ...

    async def find_due_for_billing(self, today: date) -> list[Subscription]:
        """ACTIVE subscriptions with ``next_billing_date <= today``."""
        ...

    async def find_past_due_in_grace(self, today: date) -> list[Subscription]:
        """PAST_DUE subscriptions whose grace period has not passed."""
        ...

    async def find_past_due_grace_expired(self, today: date) -> list[Subscription]:
        """PAST_DUE subscriptions with ``grace_period_end < today``."""
        ...

    async def count_active_by_customer(self, customer_id: str) -> int: ...

    async def exists_active_for_customer_and_plan(self, customer_id: str, plan_id: str) -> bool: ...

    async def count_by_status(self) -> dict[SubscriptionStatus, int]: ...

    async def find_by_status(self, status: SubscriptionStatus) -> list[Subscription]: ...


@runtime_checkable
class EventPublisher(Protocol):
    """Outbound lifecycle notifications, keyed by aggregate id."""

    async def publish(self, event: "SubscriptionEvent") -> None: ...

    async def publish_all(self, events: list["SubscriptionEvent"]) -> list["SubscriptionEvent"]:
        """Publish every event; returns the ones that failed."""
        ...

    async def publish_with_retry(self, event: "SubscriptionEvent", max_retries: int) -> None: ...
