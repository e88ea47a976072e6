"""
Subscription billing exceptions.

Every error carries a human-readable message, a machine-readable error code
and optional context so callers can surface failures without parsing text.
"""

from typing import Any


class SubscriptionError(Exception):
    """
    Base subscription billing error.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIPTION_ERROR"
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for result payloads."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class SubscriptionValidationError(SubscriptionError):
    """Invalid command input or entity data."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(
            message,
            "SUBSCRIPTION_VALIDATION_ERROR",
            context={"field": field} if field else None,
            recovery_hint="Correct the input and submit again",
        )
        self.field = field


class InvalidTransitionError(SubscriptionError):
    """A lifecycle operation was attempted from a status that does not allow it.

    This signals a logic bug in the caller, never a retryable condition.
    """

    def __init__(self, subscription_id: str, current_status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} subscription {subscription_id} in status {current_status}",
            "INVALID_STATE_TRANSITION",
            context={
                "subscription_id": subscription_id,
                "current_status": current_status,
                "operation": operation,
            },
        )
        self.subscription_id = subscription_id
        self.current_status = current_status
        self.operation = operation


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription not found."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} not found",
            "SUBSCRIPTION_NOT_FOUND",
            context={"subscription_id": subscription_id},
            recovery_hint="Verify the subscription ID",
        )
        self.subscription_id = subscription_id


class ConcurrentModificationError(SubscriptionError):
    """Optimistic-lock conflict: the stored version moved since it was read."""

    def __init__(
        self, subscription_id: str, expected_version: int, actual_version: int | None
    ) -> None:
        super().__init__(
            f"Subscription {subscription_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            "CONCURRENT_MODIFICATION",
            context={
                "subscription_id": subscription_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            recovery_hint="Reload the subscription and retry the operation",
        )
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DuplicateSubscriptionError(SubscriptionError):
    """Customer already holds an active subscription to the plan."""

    def __init__(self, customer_id: str, plan_id: str) -> None:
        super().__init__(
            f"Customer {customer_id} already has an active subscription to plan {plan_id}",
            "DUPLICATE_SUBSCRIPTION",
            context={"customer_id": customer_id, "plan_id": plan_id},
        )


class SubscriptionLimitExceededError(SubscriptionError):
    """Customer reached the active subscription limit."""

    def __init__(self, customer_id: str, limit: int) -> None:
        super().__init__(
            f"Customer {customer_id} already holds the maximum of {limit} active subscriptions",
            "SUBSCRIPTION_LIMIT_EXCEEDED",
            context={"customer_id": customer_id, "limit": limit},
            recovery_hint="Cancel an existing subscription before creating a new one",
        )


class EventPublishError(SubscriptionError):
    """An event could not be handed to the transport."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        super().__init__(
            message,
            "EVENT_PUBLISH_FAILED",
            context={"event_id": event_id} if event_id else None,
        )
