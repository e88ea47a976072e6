"""
Event publisher base class and best-effort publishing helper.

Transport adapters subclass :class:`BaseEventPublisher` and implement
``publish``; batching and retry come for free.
"""

from abc import ABC, abstractmethod

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from dotmac.subscriptions.events import SubscriptionEvent
from dotmac.subscriptions.metrics import SubscriptionMetrics
from dotmac.subscriptions.ports import EventPublisher

logger = structlog.get_logger(__name__)


class BaseEventPublisher(ABC):
    """Implements ``publish_all`` and ``publish_with_retry`` on top of ``publish``."""

    def __init__(self, retry_base_seconds: float = 0.5, retry_max_seconds: float = 8.0) -> None:
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds

    @abstractmethod
    async def publish(self, event: SubscriptionEvent) -> None:
        """Hand one event to the transport, raising on failure."""

    async def publish_all(self, events: list[SubscriptionEvent]) -> list[SubscriptionEvent]:
        """Publish events in order, continuing past individual failures.

        Returns:
            The events that could not be published.
        """
        failed: list[SubscriptionEvent] = []
        for event in events:
            try:
                await self.publish(event)
            except Exception as e:
                logger.warning(
                    "events.publish_all.item_failed",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    aggregate_id=event.aggregate_id,
                    error=str(e),
                )
                failed.append(event)
        return failed

    async def publish_with_retry(self, event: SubscriptionEvent, max_retries: int = 3) -> None:
        """Publish with exponential backoff, re-raising the last error when attempts run out."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(
                multiplier=self.retry_base_seconds,
                min=self.retry_base_seconds,
                max=self.retry_max_seconds,
            ),
            reraise=True,
        ):
            with attempt:
                await self.publish(event)


async def publish_safely(
    publisher: EventPublisher,
    event: SubscriptionEvent,
    *,
    max_retries: int = 3,
    metrics: SubscriptionMetrics | None = None,
    log: structlog.stdlib.BoundLogger | None = None,
) -> bool:
    """Publish an event without letting a failure reach the business operation.

    Returns:
        True when the event was published.
    """
    log = log or logger
    try:
        await publisher.publish_with_retry(event, max_retries)
    except Exception as e:
        log.error(
            "events.publish.failed",
            event_id=event.event_id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
            error=str(e),
        )
        if metrics is not None:
            metrics.record_publish_failure(event.event_type)
        return False
    return True
