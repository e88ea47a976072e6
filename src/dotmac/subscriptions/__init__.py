"""
DotMac Subscription Billing - recurring billing lifecycle engine.

This package provides:
- The subscription state machine (activate, charge outcomes, grace periods, pause/cancel)
- Scheduled billing jobs (daily billing, payment retries, grace-period sweep)
- Subscription creation with gateway scheduling and compensation
- Ports for the billing gateway, repository and event publisher, plus reference adapters
"""

from dotmac.subscriptions.exceptions import (
    ConcurrentModificationError,
    DuplicateSubscriptionError,
    EventPublishError,
    InvalidTransitionError,
    SubscriptionError,
    SubscriptionLimitExceededError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from dotmac.subscriptions.lifecycle import LifecycleResult, SubscriptionLifecycleService
from dotmac.subscriptions.models import BillingCycle, Subscription, SubscriptionStatus
from dotmac.subscriptions.orchestrator import (
    CreateSubscriptionCommand,
    CreateSubscriptionResult,
    SubscriptionCreationOrchestrator,
)
from dotmac.subscriptions.processor import BillingOutcome, BillingProcessor, OutcomeStatus
from dotmac.subscriptions.runtime import BillingRuntime, build_runtime
from dotmac.subscriptions.scheduler import BillingScheduler, JobName, JobRunResult

__version__ = "1.0.0"


def get_version() -> str:
    """Get subscription billing version."""
    return __version__


__all__ = [
    "BillingCycle",
    "BillingOutcome",
    "BillingProcessor",
    "BillingRuntime",
    "BillingScheduler",
    "ConcurrentModificationError",
    "CreateSubscriptionCommand",
    "CreateSubscriptionResult",
    "DuplicateSubscriptionError",
    "EventPublishError",
    "InvalidTransitionError",
    "JobName",
    "JobRunResult",
    "LifecycleResult",
    "OutcomeStatus",
    "Subscription",
    "SubscriptionCreationOrchestrator",
    "SubscriptionError",
    "SubscriptionLifecycleService",
    "SubscriptionLimitExceededError",
    "SubscriptionNotFoundError",
    "SubscriptionStatus",
    "SubscriptionValidationError",
    "build_runtime",
    "get_version",
]
