"""
Single-subscription billing.

The processor is the per-item unit of work used by every scheduler job and
by manual "bill now" requests. It never raises for one subscription's
failure; callers always get a :class:`BillingOutcome`.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from dotmac.subscriptions import events, state_machine
from dotmac.subscriptions.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
)
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.models import Subscription, SubscriptionStatus
from dotmac.subscriptions.ports import (
    BillingGateway,
    BillingResult,
    EventPublisher,
    SubscriptionRepository,
)
from dotmac.subscriptions.publisher import publish_safely

Transition = Callable[[Subscription], Subscription]


def utc_today() -> date:
    return datetime.now(UTC).date()


def utc_now() -> datetime:
    return datetime.now(UTC)


class OutcomeStatus(str, Enum):
    """What happened to a subscription during one processing attempt."""

    CHARGED = "charged"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    ERROR = "error"


class BillingOutcome(BaseModel):
    """Structured result of processing one subscription."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str
    status: OutcomeStatus
    message: str = ""
    transaction_id: str | None = None
    error_code: str | None = None
    subscription: Subscription | None = None

    @property
    def is_failure(self) -> bool:
        return self.status in (OutcomeStatus.FAILED, OutcomeStatus.CANCELLED, OutcomeStatus.ERROR)


class BillingProcessor:
    """Executes one billing attempt and applies its outcome.

    Sequence for a charge:
        1. reload and re-check eligibility (due, or past due inside grace)
        2. claim the row by writing a claim marker with a version
           compare-and-swap; rows with a live claim and CAS losers skip
        3. call the gateway once
        4. apply success/failure to the state machine and persist,
           re-reading and re-applying on concurrent modification
        5. publish the resulting event (best effort)

    Applying the outcome clears the claim. A claim older than
    ``claim_ttl_seconds`` is treated as abandoned by a crashed worker.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        gateway: BillingGateway,
        publisher: EventPublisher,
        *,
        max_attempts: int = 3,
        grace_period_days: int = 7,
        default_payment_method_token: str = "stored_payment_method",
        max_write_attempts: int = 3,
        event_max_retries: int = 3,
        claim_ttl_seconds: float = 900.0,
        clock: Callable[[], date] = utc_today,
        now: Callable[[], datetime] = utc_now,
        metrics: SubscriptionMetrics | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.publisher = publisher
        self.max_attempts = max_attempts
        self.grace_period_days = grace_period_days
        self.default_payment_method_token = default_payment_method_token
        self.max_write_attempts = max_write_attempts
        self.event_max_retries = event_max_retries
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.clock = clock
        self.now = now
        self.metrics = metrics or SubscriptionMetrics()
        self.log = logger or structlog.get_logger(__name__)

    # ==================== Public API ====================

    async def process_single_billing(
        self, subscription: Subscription, today: date | None = None
    ) -> BillingOutcome:
        """Charge a due ACTIVE subscription, or retry a PAST_DUE one inside its grace period."""
        today = today or self.clock()
        subscription_id = subscription.subscription_id
        try:
            return await self._charge(subscription_id, today)
        except Exception as e:
            self.log.error(
                "billing.process.error",
                subscription_id=subscription_id,
                error=str(e),
                exc_info=True,
            )
            return BillingOutcome(
                subscription_id=subscription_id,
                status=OutcomeStatus.ERROR,
                message=f"Internal error: {e}",
            )

    async def cancel_expired_grace_period(
        self, subscription: Subscription, today: date | None = None
    ) -> BillingOutcome:
        """Cancel a PAST_DUE subscription whose grace period ended before ``today``."""
        today = today or self.clock()
        subscription_id = subscription.subscription_id
        try:
            return await self._expire_grace(subscription_id, today)
        except Exception as e:
            self.log.error(
                "billing.grace_expiry.error",
                subscription_id=subscription_id,
                error=str(e),
                exc_info=True,
            )
            return BillingOutcome(
                subscription_id=subscription_id,
                status=OutcomeStatus.ERROR,
                message=f"Internal error: {e}",
            )

    # ==================== Charge flow ====================

    async def _charge(self, subscription_id: str, today: date) -> BillingOutcome:
        current = await self.repository.get(subscription_id)
        if current is None:
            raise SubscriptionNotFoundError(subscription_id)

        if current.has_reached_end(today):
            return await self._expire_term(current, today)

        if current.needs_billing(today):
            is_retry = False
        elif current.is_in_grace_period(today):
            is_retry = True
        else:
            return self._skipped(current, "Subscription is not due for billing")

        now = self.now()
        if current.is_billing_claimed(now, self.claim_ttl):
            return self._skipped(current, "Billing already in progress")

        try:
            claimed = await self.repository.save(state_machine.claim_billing(current, now))
        except ConcurrentModificationError:
            return self._skipped(current, "Subscription claimed by a concurrent run")

        try:
            result = await self.gateway.execute_charge(
                subscription_id=subscription_id,
                customer_id=claimed.customer_id,
                amount=claimed.billing_amount(),
                payment_method_token=claimed.payment_method_token
                or self.default_payment_method_token,
                is_retry=is_retry,
            )
        except Exception:
            await self._release_claim(claimed)
            raise
        self.metrics.record_charge(result.success, is_retry)

        if result.success:
            return await self._apply_success(claimed, result, today)
        return await self._apply_failure(claimed, result, today)

    async def _apply_success(
        self, subscription: Subscription, result: BillingResult, today: date
    ) -> BillingOutcome:
        try:
            updated = await self._persist(
                subscription,
                lambda s: state_machine.record_successful_charge(s, today),
            )
        except InvalidTransitionError as e:
            # Money was captured but the subscription left a billable state mid-flight.
            await self._release_claim(subscription)
            self.log.error(
                "billing.charge.unapplied",
                subscription_id=subscription.subscription_id,
                transaction_id=result.transaction_id,
                status=e.current_status,
            )
            return BillingOutcome(
                subscription_id=subscription.subscription_id,
                status=OutcomeStatus.ERROR,
                message=f"Charge captured but not applied: {e.message}",
                transaction_id=result.transaction_id,
            )

        self.log.info(
            "billing.charge.succeeded",
            subscription_id=updated.subscription_id,
            transaction_id=result.transaction_id,
            amount=str(result.charged_amount),
            next_billing_date=updated.next_billing_date.isoformat(),
        )
        await self._publish(events.billing_succeeded(updated, result))
        return BillingOutcome(
            subscription_id=updated.subscription_id,
            status=OutcomeStatus.CHARGED,
            message="Charge captured",
            transaction_id=result.transaction_id,
            subscription=updated,
        )

    async def _apply_failure(
        self, subscription: Subscription, result: BillingResult, today: date
    ) -> BillingOutcome:
        try:
            updated = await self._persist(
                subscription,
                lambda s: state_machine.record_failed_charge(
                    s, self.max_attempts, self.grace_period_days, today
                ),
            )
        except InvalidTransitionError as e:
            await self._release_claim(subscription)
            self.log.warning(
                "billing.charge.failure_unapplied",
                subscription_id=subscription.subscription_id,
                status=e.current_status,
                error_code=result.error_code,
            )
            return BillingOutcome(
                subscription_id=subscription.subscription_id,
                status=OutcomeStatus.ERROR,
                message=f"Charge failed and could not be recorded: {e.message}",
                error_code=result.error_code,
            )

        if updated.status == SubscriptionStatus.CANCELLED:
            self.log.warning(
                "billing.charge.attempts_exhausted",
                subscription_id=updated.subscription_id,
                failed_payment_attempts=updated.failed_payment_attempts,
                error_code=result.error_code,
            )
            self.metrics.record_cancellation(updated.cancellation_reason)
            await self._publish(events.subscription_cancelled(updated, updated.cancellation_reason))
            return BillingOutcome(
                subscription_id=updated.subscription_id,
                status=OutcomeStatus.CANCELLED,
                message=f"Payment attempts exhausted: {result.message}",
                error_code=result.error_code,
                subscription=updated,
            )

        self.log.warning(
            "billing.charge.failed",
            subscription_id=updated.subscription_id,
            failed_payment_attempts=updated.failed_payment_attempts,
            grace_period_end=updated.grace_period_end.isoformat()
            if updated.grace_period_end
            else None,
            error_code=result.error_code,
            message=result.message,
        )
        await self._publish(events.billing_failed(updated, result))
        return BillingOutcome(
            subscription_id=updated.subscription_id,
            status=OutcomeStatus.FAILED,
            message=f"Charge failed: {result.message}",
            error_code=result.error_code,
            subscription=updated,
        )

    # ==================== Expiry flows ====================

    async def _expire_term(self, subscription: Subscription, today: date) -> BillingOutcome:
        try:
            updated = await self.repository.save(state_machine.expire(subscription, today))
        except ConcurrentModificationError:
            return self._skipped(subscription, "Subscription modified by a concurrent run")

        self.log.info(
            "subscription.term_expired",
            subscription_id=updated.subscription_id,
            end_date=updated.end_date.isoformat() if updated.end_date else None,
        )
        await self._publish(events.subscription_expired(updated))
        return BillingOutcome(
            subscription_id=updated.subscription_id,
            status=OutcomeStatus.EXPIRED,
            message="Subscription term ended",
            subscription=updated,
        )

    async def _expire_grace(self, subscription_id: str, today: date) -> BillingOutcome:
        conflict: ConcurrentModificationError | None = None
        for _ in range(self.max_write_attempts):
            current = await self.repository.get(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(subscription_id)

            cancelled = state_machine.expire_grace_period(current, today)
            if cancelled is current:
                return self._skipped(current, "Grace period has not expired")

            try:
                updated = await self.repository.save(cancelled)
            except ConcurrentModificationError as e:
                conflict = e
                continue

            self.log.info(
                "subscription.grace_period_expired",
                subscription_id=subscription_id,
                failed_payment_attempts=updated.failed_payment_attempts,
            )
            self.metrics.record_cancellation(updated.cancellation_reason)
            await self._publish(events.subscription_cancelled(updated, updated.cancellation_reason))
            return BillingOutcome(
                subscription_id=subscription_id,
                status=OutcomeStatus.CANCELLED,
                message="Grace period expired",
                subscription=updated,
            )

        assert conflict is not None
        raise conflict

    # ==================== Helpers ====================

    async def _persist(self, subscription: Subscription, transition: Transition) -> Subscription:
        """Apply ``transition`` and save, re-reading on version conflicts."""
        current = subscription
        attempt = 1
        while True:
            try:
                return await self.repository.save(transition(current))
            except ConcurrentModificationError:
                if attempt >= self.max_write_attempts:
                    raise
                self.log.info(
                    "billing.persist.conflict",
                    subscription_id=subscription.subscription_id,
                    attempt=attempt,
                )
                reloaded = await self.repository.get(subscription.subscription_id)
                if reloaded is None:
                    raise SubscriptionNotFoundError(subscription.subscription_id) from None
                current = reloaded
                attempt += 1

    async def _release_claim(self, subscription: Subscription) -> None:
        try:
            await self._persist(subscription, state_machine.release_billing_claim)
        except Exception as e:
            self.log.warning(
                "billing.claim.release_failed",
                subscription_id=subscription.subscription_id,
                error=str(e),
            )

    async def _publish(self, event: events.SubscriptionEvent) -> None:
        await publish_safely(
            self.publisher,
            event,
            max_retries=self.event_max_retries,
            metrics=self.metrics,
            log=self.log,
        )

    def _skipped(self, subscription: Subscription, reason: str) -> BillingOutcome:
        self.log.debug(
            "billing.process.skipped",
            subscription_id=subscription.subscription_id,
            reason=reason,
        )
        return BillingOutcome(
            subscription_id=subscription.subscription_id,
            status=OutcomeStatus.SKIPPED,
            message=reason,
            subscription=subscription,
        )
