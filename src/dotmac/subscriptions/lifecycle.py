"""
Customer-initiated lifecycle operations.

Pause, resume, cancel and plan changes interleave with scheduled billing, so
every operation is a read-modify-write guarded by the repository's version
compare-and-swap and retried a bounded number of times.
"""

from collections import defaultdict
from collections.abc import Callable
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from dotmac.subscriptions import events, state_machine
from dotmac.subscriptions.exceptions import (
    ConcurrentModificationError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.models import CENTS, Subscription, SubscriptionStatus
from dotmac.subscriptions.ports import (
    BillingGateway,
    BillingUpdateResult,
    EventPublisher,
    SubscriptionRepository,
)
from dotmac.subscriptions.processor import (
    BillingOutcome,
    BillingProcessor,
    OutcomeStatus,
    Transition,
    utc_today,
)
from dotmac.subscriptions.publisher import publish_safely

CUSTOMER_REQUEST_REASON = "customer_request"


class LifecycleResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    subscription: Subscription | None = None
    error_code: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    recovery_hint: str | None = None

    @classmethod
    def succeeded(cls, subscription: Subscription, message: str) -> "LifecycleResult":
        return cls(success=True, message=message, subscription=subscription)

    @classmethod
    def failed(
        cls, message: str, error_code: str | None = None, subscription: Subscription | None = None
    ) -> "LifecycleResult":
        return cls(success=False, message=message, error_code=error_code, subscription=subscription)

    @classmethod
    def rejected(cls, error: SubscriptionError) -> "LifecycleResult":
        return cls(success=False, **error.to_dict())


class SubscriptionStatusView(BaseModel):
    """Compact status snapshot for customer-facing views."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    status: SubscriptionStatus
    next_billing_date: date
    in_grace_period: bool
    grace_period_end: date | None
    failed_payment_attempts: int


class SubscriptionStats(BaseModel):
    """Portfolio counters and revenue figures, revenue keyed by currency."""

    total: int
    by_status: dict[SubscriptionStatus, int]
    monthly_recurring_revenue: dict[str, Decimal] = Field(default_factory=dict)
    average_revenue_per_user: dict[str, Decimal] = Field(default_factory=dict)


class SubscriptionLifecycleService:
    """Pause, resume, cancel, change plan, status and stats for subscriptions."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: BillingGateway,
        publisher: EventPublisher,
        processor: BillingProcessor,
        *,
        max_write_attempts: int = 3,
        event_max_retries: int = 3,
        clock: Callable[[], date] = utc_today,
        metrics: SubscriptionMetrics | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.publisher = publisher
        self.processor = processor
        self.max_write_attempts = max_write_attempts
        self.event_max_retries = event_max_retries
        self.clock = clock
        self.metrics = metrics or SubscriptionMetrics()
        self.log = logger or structlog.get_logger(__name__)

    # ==================== Commands ====================

    async def pause(self, subscription_id: str) -> LifecycleResult:
        try:
            updated, _ = await self._mutate(subscription_id, state_machine.pause)
        except SubscriptionError as e:
            return self._rejected("pause", subscription_id, e)
        except Exception as e:
            return self._errored("pause", subscription_id, e)

        self.log.info("subscription.paused", subscription_id=subscription_id)
        await self._publish(events.subscription_paused(updated))
        return LifecycleResult.succeeded(updated, "Subscription paused")

    async def resume(self, subscription_id: str, today: date | None = None) -> LifecycleResult:
        today = today or self.clock()
        try:
            updated, _ = await self._mutate(
                subscription_id, lambda s: state_machine.resume(s, today)
            )
        except SubscriptionError as e:
            return self._rejected("resume", subscription_id, e)
        except Exception as e:
            return self._errored("resume", subscription_id, e)

        self.log.info(
            "subscription.resumed",
            subscription_id=subscription_id,
            next_billing_date=updated.next_billing_date.isoformat(),
        )
        await self._publish(events.subscription_resumed(updated))
        return LifecycleResult.succeeded(updated, "Subscription resumed")

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = CUSTOMER_REQUEST_REASON,
        today: date | None = None,
    ) -> LifecycleResult:
        """Cancel locally, then stop the gateway schedule.

        The local cancellation stands even when the gateway refuses; the
        failure is logged for reconciliation.
        """
        today = today or self.clock()
        try:
            updated, changed = await self._mutate(
                subscription_id, lambda s: state_machine.cancel(s, today, reason)
            )
        except SubscriptionError as e:
            return self._rejected("cancel", subscription_id, e)
        except Exception as e:
            return self._errored("cancel", subscription_id, e)

        if not changed:
            return LifecycleResult.succeeded(updated, "Subscription already cancelled")

        self.log.info("subscription.cancelled", subscription_id=subscription_id, reason=reason)
        self.metrics.record_cancellation(reason)
        await self._cancel_gateway_billing(subscription_id)
        await self._publish(events.subscription_cancelled(updated, reason))
        return LifecycleResult.succeeded(updated, "Subscription cancelled")

    async def change_plan(
        self, subscription_id: str, plan_id: str, monthly_amount: Decimal | str
    ) -> LifecycleResult:
        """Move an ACTIVE subscription to another plan.

        The gateway schedule is updated first; if the local write then fails
        the gateway is reverted to the previous amount.
        """
        try:
            amount = Decimal(str(monthly_amount))
            current = await self.repository.get(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(subscription_id)
            candidate = state_machine.change_plan(current, plan_id, amount)
        except SubscriptionError as e:
            return self._rejected("change_plan", subscription_id, e)
        except ArithmeticError:
            return self._rejected(
                "change_plan",
                subscription_id,
                SubscriptionValidationError(
                    "Monthly amount must be a number", field="monthly_amount"
                ),
            )
        except Exception as e:
            return self._errored("change_plan", subscription_id, e)

        update = await self._update_gateway_amount(subscription_id, candidate.billing_amount())
        if not update.success:
            self.log.warning(
                "subscription.plan_change.gateway_failed",
                subscription_id=subscription_id,
                message=update.message,
            )
            return LifecycleResult.failed(
                f"Failed to update billing: {update.message}",
                error_code="BILLING_UPDATE_FAILED",
                subscription=current,
            )

        try:
            updated, _ = await self._mutate(
                subscription_id, lambda s: state_machine.change_plan(s, plan_id, amount)
            )
        except Exception as e:
            revert = await self._update_gateway_amount(subscription_id, current.billing_amount())
            if not revert.success:
                self.log.error(
                    "subscription.plan_change.gateway_revert_failed",
                    subscription_id=subscription_id,
                    message=revert.message,
                )
            if isinstance(e, SubscriptionError):
                return self._rejected("change_plan", subscription_id, e)
            return self._errored("change_plan", subscription_id, e)

        self.log.info(
            "subscription.plan_changed",
            subscription_id=subscription_id,
            previous_plan_id=current.plan_id,
            plan_id=updated.plan_id,
            monthly_amount=str(updated.monthly_amount),
        )
        await self._publish(events.subscription_plan_changed(updated, current.plan_id))
        return LifecycleResult.succeeded(updated, "Plan changed")

    async def process_billing_now(
        self, subscription_id: str, today: date | None = None
    ) -> BillingOutcome:
        """Run a single billing attempt outside the scheduled jobs."""
        subscription = await self.repository.get(subscription_id)
        if subscription is None:
            return BillingOutcome(
                subscription_id=subscription_id,
                status=OutcomeStatus.ERROR,
                message=f"Subscription not found: {subscription_id}",
            )
        self.log.info("billing.manual.requested", subscription_id=subscription_id)
        return await self.processor.process_single_billing(subscription, today)

    # ==================== Queries ====================

    async def get_status(
        self, subscription_id: str, today: date | None = None
    ) -> SubscriptionStatusView:
        today = today or self.clock()
        subscription = await self.repository.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return SubscriptionStatusView(
            subscription_id=subscription.subscription_id,
            status=subscription.status,
            next_billing_date=subscription.next_billing_date,
            in_grace_period=subscription.is_in_grace_period(today),
            grace_period_end=subscription.grace_period_end,
            failed_payment_attempts=subscription.failed_payment_attempts,
        )

    async def stats(self) -> SubscriptionStats:
        counts = await self.repository.count_by_status()
        active = await self.repository.find_by_status(SubscriptionStatus.ACTIVE)

        revenue: dict[str, Decimal] = defaultdict(Decimal)
        customers: dict[str, set[str]] = defaultdict(set)
        for subscription in active:
            revenue[subscription.currency] += subscription.monthly_amount
            customers[subscription.currency].add(subscription.customer_id)

        arpu = {
            currency: (total / len(customers[currency])).quantize(CENTS, rounding=ROUND_HALF_UP)
            for currency, total in revenue.items()
        }
        return SubscriptionStats(
            total=sum(counts.values()),
            by_status=counts,
            monthly_recurring_revenue=dict(revenue),
            average_revenue_per_user=arpu,
        )

    # ==================== Helpers ====================

    async def _mutate(
        self, subscription_id: str, transition: Transition
    ) -> tuple[Subscription, bool]:
        """Apply ``transition`` to the stored subscription with CAS retry.

        Returns the stored subscription and whether it changed.
        """
        conflict: ConcurrentModificationError | None = None
        for attempt in range(1, self.max_write_attempts + 1):
            current = await self.repository.get(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(subscription_id)

            updated = transition(current)
            if updated is current:
                return current, False

            try:
                return await self.repository.save(updated), True
            except ConcurrentModificationError as e:
                conflict = e
                self.log.info(
                    "subscription.write.conflict",
                    subscription_id=subscription_id,
                    attempt=attempt,
                )

        assert conflict is not None
        raise conflict

    async def _update_gateway_amount(
        self, subscription_id: str, amount: Decimal
    ) -> BillingUpdateResult:
        try:
            return await self.gateway.update_billing(subscription_id, new_amount=amount)
        except Exception as e:
            self.log.error(
                "subscription.update.gateway_error",
                subscription_id=subscription_id,
                error=str(e),
                exc_info=True,
            )
            return BillingUpdateResult.failed(f"Billing gateway error: {e}")

    async def _cancel_gateway_billing(self, subscription_id: str) -> None:
        try:
            result = await self.gateway.cancel_billing(subscription_id)
        except Exception as e:
            self.log.error(
                "subscription.cancel.gateway_error",
                subscription_id=subscription_id,
                error=str(e),
                exc_info=True,
            )
            return
        if not result.success:
            self.log.error(
                "subscription.cancel.gateway_failed",
                subscription_id=subscription_id,
                message=result.message,
            )

    async def _publish(self, event: events.SubscriptionEvent) -> None:
        await publish_safely(
            self.publisher,
            event,
            max_retries=self.event_max_retries,
            metrics=self.metrics,
            log=self.log,
        )

    def _rejected(
        self, operation: str, subscription_id: str, error: SubscriptionError
    ) -> LifecycleResult:
        self.log.info(
            "subscription.operation.rejected",
            operation=operation,
            subscription_id=subscription_id,
            error_code=error.error_code,
            reason=error.message,
        )
        return LifecycleResult.rejected(error)

    def _errored(self, operation: str, subscription_id: str, error: Exception) -> LifecycleResult:
        self.log.error(
            "subscription.operation.error",
            operation=operation,
            subscription_id=subscription_id,
            error=str(error),
            exc_info=True,
        )
        return LifecycleResult.failed(f"Internal error: {error}", "INTERNAL_ERROR")
