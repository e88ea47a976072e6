"""
Simulated billing provider.

Declines follow deterministic rules so scenarios are reproducible, plus an
optional random decline rate driven by a seeded RNG.
"""

import random
from datetime import date
from decimal import Decimal
from uuid import uuid4

import structlog

from dotmac.subscriptions.models import BillingCycle
from dotmac.subscriptions.ports import (
    BillingCancellationResult,
    BillingResult,
    BillingScheduleResult,
    BillingUpdateResult,
    GatewayBillingStatus,
)

logger = structlog.get_logger(__name__)

DECLINED_TOKEN = "tok_declined"
MIN_CHARGE = Decimal("1.00")
MAX_CHARGE = Decimal("10000.00")


class SimulatedBillingGateway:
    """In-process stand-in for a payment provider.

    Rules:
        - amount below 1.00 -> INSUFFICIENT_FUNDS
        - amount above 10000.00 -> LIMIT_EXCEEDED
        - payment method ``tok_declined`` -> PAYMENT_DECLINED
        - otherwise declined with probability ``failure_rate``
    """

    def __init__(self, failure_rate: float = 0.0, seed: int | None = None) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        self.failure_rate = failure_rate
        self._random = random.Random(seed)
        self._schedules: dict[str, GatewayBillingStatus] = {}
        self.charges: list[tuple[str, Decimal, bool]] = []

    def _simulated_failure(self) -> bool:
        return self.failure_rate > 0 and self._random.random() < self.failure_rate

    async def schedule_billing(
        self,
        subscription_id: str,
        customer_id: str,
        customer_email: str,
        amount: Decimal,
        cycle: BillingCycle,
        first_billing_date: date,
        payment_method_token: str,
    ) -> BillingScheduleResult:
        logger.info(
            "gateway.schedule_billing",
            subscription_id=subscription_id,
            amount=str(amount),
            cycle=cycle.value,
        )
        if payment_method_token == DECLINED_TOKEN:
            return BillingScheduleResult.failed("card declined")
        if self._simulated_failure():
            return BillingScheduleResult.failed("simulated scheduling failure")

        self._schedules[subscription_id] = GatewayBillingStatus.ACTIVE
        return BillingScheduleResult.succeeded(f"sim_billing_{uuid4().hex}", first_billing_date)

    async def update_billing(
        self,
        subscription_id: str,
        new_amount: Decimal | None = None,
        new_cycle: BillingCycle | None = None,
        new_payment_method_token: str | None = None,
    ) -> BillingUpdateResult:
        if subscription_id not in self._schedules:
            return BillingUpdateResult.failed("no billing schedule for subscription")
        if new_payment_method_token == DECLINED_TOKEN:
            return BillingUpdateResult.failed("card declined")
        if self._simulated_failure():
            return BillingUpdateResult.failed("simulated update failure")
        return BillingUpdateResult.succeeded()

    async def execute_charge(
        self,
        subscription_id: str,
        customer_id: str,
        amount: Decimal,
        payment_method_token: str,
        is_retry: bool,
    ) -> BillingResult:
        self.charges.append((subscription_id, amount, is_retry))

        if amount < MIN_CHARGE:
            return BillingResult.failed("INSUFFICIENT_FUNDS", "amount too low to process")
        if amount > MAX_CHARGE:
            return BillingResult.failed("LIMIT_EXCEEDED", "amount exceeds card limit")
        if payment_method_token == DECLINED_TOKEN or self._simulated_failure():
            self._schedules[subscription_id] = GatewayBillingStatus.FAILED
            return BillingResult.failed("PAYMENT_DECLINED", "card declined")

        self._schedules[subscription_id] = GatewayBillingStatus.ACTIVE
        return BillingResult.succeeded(f"sim_tx_{uuid4().hex}", amount)

    async def cancel_billing(self, subscription_id: str) -> BillingCancellationResult:
        if self._simulated_failure():
            return BillingCancellationResult.failed("simulated cancellation failure")
        self._schedules[subscription_id] = GatewayBillingStatus.CANCELLED
        return BillingCancellationResult.succeeded()

    async def get_billing_status(self, subscription_id: str) -> GatewayBillingStatus:
        return self._schedules.get(subscription_id, GatewayBillingStatus.PENDING)
