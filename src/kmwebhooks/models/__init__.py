"""Data models for kmwebhooks.

- Subscription: a third-party endpoint and its encrypted signing secret
- EventPayload: the body delivered for one fired event
- DeliveryAttempt: log record for an attempt that did not succeed
"""

from .base import generate_id, utc_timestamp
from .webhook import (
    ALL_EVENT_TYPES,
    MAX_LOGGED_PAYLOAD_BYTES,
    DeliveryAttempt,
    DeliveryStatus,
    EventPayload,
    EventType,
    Subscription,
    canonical_json,
    loggable_payload,
)

__all__ = [
    "generate_id",
    "utc_timestamp",
    # Webhooks
    "ALL_EVENT_TYPES",
    "MAX_LOGGED_PAYLOAD_BYTES",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EventPayload",
    "EventType",
    "Subscription",
    "canonical_json",
    "loggable_payload",
]
