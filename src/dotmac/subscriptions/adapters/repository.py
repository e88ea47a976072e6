"""
In-memory subscription repository with optimistic concurrency.
"""

import asyncio
from collections import Counter
from collections.abc import Iterable
from datetime import date

from dotmac.subscriptions.exceptions import ConcurrentModificationError
from dotmac.subscriptions.models import LIVE_STATUSES, Subscription, SubscriptionStatus


class InMemorySubscriptionRepository:
    """Dictionary-backed repository.

    ``save`` is a compare-and-swap on ``version`` guarded by an asyncio lock,
    the same contract a SQL adapter fulfils with
    ``UPDATE ... WHERE id = :id AND version = :version``.
    """

    def __init__(self, subscriptions: list[Subscription] | None = None) -> None:
        self._rows: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        for subscription in subscriptions or []:
            self._rows[subscription.subscription_id] = subscription

    async def save(self, subscription: Subscription) -> Subscription:
        async with self._lock:
            stored = self._rows.get(subscription.subscription_id)
            stored_version = stored.version if stored is not None else 0
            if (stored is None and subscription.version != 0) or (
                stored is not None and stored.version != subscription.version
            ):
                raise ConcurrentModificationError(
                    subscription.subscription_id,
                    subscription.version,
                    stored.version if stored is not None else None,
                )
            saved = subscription.model_copy(update={"version": stored_version + 1})
            self._rows[saved.subscription_id] = saved
            return saved

    async def get(self, subscription_id: str) -> Subscription | None:
        return self._rows.get(subscription_id)

    async def find_by_customer(self, customer_id: str) -> list[Subscription]:
        rows = [s for s in self._rows.values() if s.customer_id == customer_id]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)

    async def find_by_status(self, status: SubscriptionStatus) -> list[Subscription]:
        return self._ordered(s for s in self._rows.values() if s.status == status)

    async def find_due_for_billing(self, today: date) -> list[Subscription]:
        return self._ordered(s for s in self._rows.values() if s.needs_billing(today))

    async def find_past_due_in_grace(self, today: date) -> list[Subscription]:
        return self._ordered(s for s in self._rows.values() if s.is_in_grace_period(today))

    async def find_past_due_grace_expired(self, today: date) -> list[Subscription]:
        return self._ordered(s for s in self._rows.values() if s.is_grace_period_expired(today))

    async def count_active_by_customer(self, customer_id: str) -> int:
        return sum(
            1
            for s in self._rows.values()
            if s.customer_id == customer_id and s.status in LIVE_STATUSES
        )

    async def exists_active_for_customer_and_plan(self, customer_id: str, plan_id: str) -> bool:
        return any(
            s.customer_id == customer_id and s.plan_id == plan_id and s.status in LIVE_STATUSES
            for s in self._rows.values()
        )

    async def count_by_status(self) -> dict[SubscriptionStatus, int]:
        counts = Counter(s.status for s in self._rows.values())
        return {status: counts.get(status, 0) for status in SubscriptionStatus}

    @staticmethod
    def _ordered(rows: Iterable[Subscription]) -> list[Subscription]:
        return sorted(rows, key=lambda s: (s.next_billing_date, s.created_at))
