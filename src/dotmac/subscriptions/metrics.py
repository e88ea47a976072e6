"""
Subscription billing metrics.

Counters are created through the OpenTelemetry metrics API; when no SDK
meter provider is installed they are no-ops.
"""

from typing import Any

from opentelemetry import metrics


class SubscriptionMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        self.meter = meter or metrics.get_meter("dotmac.subscriptions")

        self.charges_succeeded = self.meter.create_counter(
            "subscriptions.charge.succeeded",
            description="Charges captured by the billing gateway",
        )
        self.charges_failed = self.meter.create_counter(
            "subscriptions.charge.failed",
            description="Charges declined by the billing gateway",
        )
        self.subscriptions_cancelled = self.meter.create_counter(
            "subscriptions.cancelled",
            description="Subscriptions cancelled, by reason",
        )
        self.event_publish_failures = self.meter.create_counter(
            "subscriptions.events.publish_failed",
            description="Events that could not be published",
        )
        self.job_items = self.meter.create_counter(
            "subscriptions.job.items",
            description="Subscriptions handled by scheduler jobs, by job and outcome",
        )

    def record_charge(self, success: bool, is_retry: bool) -> None:
        counter = self.charges_succeeded if success else self.charges_failed
        counter.add(1, {"retry": is_retry})

    def record_cancellation(self, reason: str | None) -> None:
        self.subscriptions_cancelled.add(1, {"reason": reason or "unspecified"})

    def record_publish_failure(self, event_type: str) -> None:
        self.event_publish_failures.add(1, {"event_type": event_type})

    def record_job_item(self, job: str, outcome: str, **attributes: Any) -> None:
        self.job_items.add(1, {"job": job, "outcome": outcome, **attributes})
