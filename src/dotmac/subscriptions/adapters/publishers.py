"""
Reference event publishers.
"""

from collections import defaultdict

import structlog

from dotmac.subscriptions.events import SubscriptionEvent
from dotmac.subscriptions.exceptions import EventPublishError
from dotmac.subscriptions.publisher import BaseEventPublisher

logger = structlog.get_logger(__name__)


class InMemoryEventPublisher(BaseEventPublisher):
    """Keeps published events, in order, per aggregate."""

    def __init__(self, fail_times: int = 0, **kwargs: float) -> None:
        super().__init__(**kwargs)
        self.events: list[SubscriptionEvent] = []
        self._by_aggregate: dict[str, list[SubscriptionEvent]] = defaultdict(list)
        self._fail_times = fail_times
        self.attempts = 0

    async def publish(self, event: SubscriptionEvent) -> None:
        self.attempts += 1
        if self._fail_times > 0:
            self._fail_times -= 1
            raise EventPublishError("transport unavailable", event_id=event.event_id)
        self.events.append(event)
        self._by_aggregate[event.routing_key].append(event)

    def for_aggregate(self, aggregate_id: str) -> list[SubscriptionEvent]:
        return list(self._by_aggregate.get(aggregate_id, []))

    def of_type(self, event_type: str) -> list[SubscriptionEvent]:
        return [e for e in self.events if e.event_type == event_type]


class LoggingEventPublisher(BaseEventPublisher):
    """Writes events to the structured log; used when no bus is configured."""

    async def publish(self, event: SubscriptionEvent) -> None:
        logger.info(
            "events.published",
            event_id=event.event_id,
            event_type=event.event_type,
            routing_key=event.routing_key,
            payload=event.payload,
        )
