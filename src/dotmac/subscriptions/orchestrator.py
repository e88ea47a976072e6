"""
Subscription creation saga.

Creates a PENDING subscription, asks the billing gateway to schedule the
recurring charge, then either activates the subscription or compensates by
cancelling it. There is no distributed transaction: the local row is always
reconciled after the gateway call returns, and any unexpected error leaves
the row CANCELLED rather than PENDING.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from dotmac.subscriptions import events, state_machine
from dotmac.subscriptions.exceptions import (
    DuplicateSubscriptionError,
    SubscriptionError,
    SubscriptionLimitExceededError,
    SubscriptionValidationError,
)
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.models import (
    CENTS,
    LIVE_STATUSES,
    BillingCycle,
    Subscription,
    SubscriptionStatus,
)
from dotmac.subscriptions.ports import (
    BillingGateway,
    BillingScheduleResult,
    EventPublisher,
    SubscriptionRepository,
)
from dotmac.subscriptions.processor import utc_today
from dotmac.subscriptions.publisher import publish_safely

SCHEDULE_FAILED_REASON = "billing_schedule_failed"
CREATION_ERROR_REASON = "creation_error"


@dataclass(frozen=True)
class CreateSubscriptionCommand:
    """Input for creating a subscription; validated by the orchestrator."""

    customer_id: str
    customer_email: str
    plan_id: str
    billing_cycle: BillingCycle | str
    monthly_amount: Decimal | str | int
    payment_method_token: str
    currency: str | None = None
    end_date: date | None = None


class CreateSubscriptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    subscription: Subscription | None = None
    error_code: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    recovery_hint: str | None = None

    @classmethod
    def succeeded(cls, subscription: Subscription) -> "CreateSubscriptionResult":
        return cls(success=True, message="Subscription created", subscription=subscription)

    @classmethod
    def failed(
        cls,
        message: str,
        error_code: str | None = None,
        subscription: Subscription | None = None,
    ) -> "CreateSubscriptionResult":
        return cls(success=False, message=message, error_code=error_code, subscription=subscription)

    @classmethod
    def rejected(
        cls, error: SubscriptionError, subscription: Subscription | None = None
    ) -> "CreateSubscriptionResult":
        return cls(success=False, subscription=subscription, **error.to_dict())


class SubscriptionCreationOrchestrator:
    """Runs the create -> schedule billing -> activate/compensate saga."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: BillingGateway,
        publisher: EventPublisher,
        *,
        max_active_per_customer: int = 10,
        default_currency: str = "USD",
        event_max_retries: int = 3,
        clock: Callable[[], date] = utc_today,
        metrics: SubscriptionMetrics | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.publisher = publisher
        self.max_active_per_customer = max_active_per_customer
        self.default_currency = default_currency
        self.event_max_retries = event_max_retries
        self.clock = clock
        self.metrics = metrics or SubscriptionMetrics()
        self.log = logger or structlog.get_logger(__name__)

    async def create_subscription(
        self, command: CreateSubscriptionCommand
    ) -> CreateSubscriptionResult:
        """Create and activate a subscription, or explain why it was not created."""
        log = self.log.bind(customer_id=command.customer_id, plan_id=command.plan_id)
        today = self.clock()
        subscription: Subscription | None = None
        scheduled = False

        try:
            draft = self._build(command, today)
            await self._check_business_rules(draft)

            subscription = await self.repository.save(draft)
            log.info("subscription.created_pending", subscription_id=subscription.subscription_id)

            schedule = await self._schedule_billing(subscription, command.payment_method_token)
            if not schedule.success:
                log.warning(
                    "subscription.billing_schedule_failed",
                    subscription_id=subscription.subscription_id,
                    message=schedule.message,
                )
                subscription = await self.repository.save(
                    state_machine.cancel(subscription, today, SCHEDULE_FAILED_REASON)
                )
                self.metrics.record_cancellation(SCHEDULE_FAILED_REASON)
                return CreateSubscriptionResult.failed(
                    f"Failed to set up billing: {schedule.message}",
                    error_code="BILLING_SCHEDULE_FAILED",
                    subscription=subscription,
                )

            scheduled = True
            await self._confirm_reservation(subscription)
            subscription = await self.repository.save(state_machine.activate(subscription))
            log.info(
                "subscription.activated",
                subscription_id=subscription.subscription_id,
                billing_id=schedule.billing_id,
                next_billing_date=subscription.next_billing_date.isoformat(),
            )
            await publish_safely(
                self.publisher,
                events.subscription_created(subscription),
                max_retries=self.event_max_retries,
                metrics=self.metrics,
                log=log,
            )
            return CreateSubscriptionResult.succeeded(subscription)

        except SubscriptionError as e:
            log.info("subscription.create_rejected", error_code=e.error_code, reason=e.message)
            compensated = await self._compensate(subscription, scheduled, today, log)
            return CreateSubscriptionResult.rejected(e, compensated)
        except Exception as e:
            log.error("subscription.create_error", error=str(e), exc_info=True)
            compensated = await self._compensate(subscription, scheduled, today, log)
            return CreateSubscriptionResult.failed(
                f"Internal error: {e}", "INTERNAL_ERROR", compensated
            )

    # ==================== Steps ====================

    def _build(self, command: CreateSubscriptionCommand, today: date) -> Subscription:
        for field in ("customer_id", "customer_email", "plan_id", "payment_method_token"):
            value = getattr(command, field)
            if not isinstance(value, str) or not value.strip():
                raise SubscriptionValidationError(f"{field} must not be empty", field=field)

        try:
            cycle = BillingCycle(command.billing_cycle)
        except ValueError:
            raise SubscriptionValidationError(
                f"Invalid billing cycle: {command.billing_cycle}", field="billing_cycle"
            ) from None

        try:
            amount = Decimal(str(command.monthly_amount))
        except InvalidOperation:
            raise SubscriptionValidationError(
                "Monthly amount must be a number", field="monthly_amount"
            ) from None
        if not amount.is_finite() or amount.quantize(CENTS, rounding=ROUND_HALF_UP) < CENTS:
            raise SubscriptionValidationError(
                "Monthly amount must be at least 0.01", field="monthly_amount"
            )

        if command.end_date is not None and command.end_date <= today:
            raise SubscriptionValidationError("End date must be in the future", field="end_date")

        try:
            return Subscription.new(
                customer_id=command.customer_id,
                customer_email=command.customer_email,
                plan_id=command.plan_id,
                billing_cycle=cycle,
                monthly_amount=amount,
                start_date=today,
                currency=(command.currency or self.default_currency).upper(),
                payment_method_token=command.payment_method_token,
                end_date=command.end_date,
            )
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or None
            raise SubscriptionValidationError(
                f"Invalid {field}: {error['msg']}", field=field
            ) from None

    async def _check_business_rules(self, draft: Subscription) -> None:
        if await self.repository.exists_active_for_customer_and_plan(
            draft.customer_id, draft.plan_id
        ):
            raise DuplicateSubscriptionError(draft.customer_id, draft.plan_id)

        active = await self.repository.count_active_by_customer(draft.customer_id)
        if active >= self.max_active_per_customer:
            raise SubscriptionLimitExceededError(draft.customer_id, self.max_active_per_customer)

    async def _confirm_reservation(self, pending: Subscription) -> None:
        """Re-check the customer's slots now that the PENDING row is visible to others.

        Two creates can both pass the first check before either row exists.
        Each re-checks against the other's PENDING row before activating, so at
        most one of them goes live; on an exact tie both are compensated.
        """
        siblings = [
            s
            for s in await self.repository.find_by_customer(pending.customer_id)
            if s.subscription_id != pending.subscription_id and s.status in LIVE_STATUSES
        ]
        if any(s.plan_id == pending.plan_id for s in siblings):
            raise DuplicateSubscriptionError(pending.customer_id, pending.plan_id)
        if len(siblings) >= self.max_active_per_customer:
            raise SubscriptionLimitExceededError(pending.customer_id, self.max_active_per_customer)

    async def _schedule_billing(
        self, subscription: Subscription, payment_method_token: str
    ) -> BillingScheduleResult:
        try:
            return await self.gateway.schedule_billing(
                subscription_id=subscription.subscription_id,
                customer_id=subscription.customer_id,
                customer_email=str(subscription.customer_email),
                amount=subscription.billing_amount(),
                cycle=subscription.billing_cycle,
                first_billing_date=subscription.next_billing_date,
                payment_method_token=payment_method_token,
            )
        except Exception as e:
            self.log.error(
                "subscription.billing_schedule_error",
                subscription_id=subscription.subscription_id,
                error=str(e),
                exc_info=True,
            )
            return BillingScheduleResult.failed(f"Billing gateway error: {e}")

    async def _compensate(
        self,
        subscription: Subscription | None,
        scheduled: bool,
        today: date,
        log: structlog.stdlib.BoundLogger,
    ) -> Subscription | None:
        """Make sure a persisted subscription never stays PENDING after a failure."""
        if subscription is None:
            return None
        try:
            current = await self.repository.get(subscription.subscription_id) or subscription
            if current.status == SubscriptionStatus.PENDING:
                current = await self.repository.save(
                    state_machine.cancel(current, today, CREATION_ERROR_REASON)
                )
                self.metrics.record_cancellation(CREATION_ERROR_REASON)
                log.warning(
                    "subscription.compensated",
                    subscription_id=current.subscription_id,
                )
            if scheduled and current.status == SubscriptionStatus.CANCELLED:
                cancellation = await self.gateway.cancel_billing(current.subscription_id)
                if not cancellation.success:
                    log.error(
                        "subscription.compensation.gateway_cancel_failed",
                        subscription_id=current.subscription_id,
                        message=cancellation.message,
                    )
            return current
        except Exception as e:
            log.error(
                "subscription.compensation.failed",
                subscription_id=subscription.subscription_id,
                error=str(e),
                exc_info=True,
            )
            return subscription
