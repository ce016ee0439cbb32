"""Storage for webhook subscriptions and delivery logs.

The delivery core depends only on the SubscriptionRegistry and
DeliveryLogSink protocols. Two implementations are provided:

- InMemoryWebhookStore: dictionaries, for tests and single processes
- QdrantWebhookStore: Qdrant collections with payload filtering
"""

from .base import DeliveryLogSink, SubscriptionRegistry
from .memory import InMemoryWebhookStore
from .qdrant import QdrantWebhookStore

__all__ = [
    "DeliveryLogSink",
    "InMemoryWebhookStore",
    "QdrantWebhookStore",
    "SubscriptionRegistry",
]
