"""
Reference adapters for the billing engine ports.

Used by tests, local development and the CLI; production deployments wire
their own implementations of the protocols in :mod:`dotmac.subscriptions.ports`.
"""

from dotmac.subscriptions.adapters.gateway import SimulatedBillingGateway
from dotmac.subscriptions.adapters.publishers import InMemoryEventPublisher, LoggingEventPublisher
from dotmac.subscriptions.adapters.repository import InMemorySubscriptionRepository

__all__ = [
    "InMemoryEventPublisher",
    "InMemorySubscriptionRepository",
    "LoggingEventPublisher",
    "SimulatedBillingGateway",
]
