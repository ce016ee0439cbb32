"""Outbound webhook delivery for the knowledge marketplace.

Provides SSRF-guarded, HMAC-signed webhook delivery with bounded retries.

Example:
    ```python
    from kmwebhooks.storage import InMemoryWebhookStore
    from kmwebhooks.webhooks import fire_webhook_event

    store = InMemoryWebhookStore()
    await fire_webhook_event(
        "user_123",
        "purchase.completed",
        {"knowledge_id": "k_1", "transaction_id": "tx_1", "amount": 1.5, "token": "SOL"},
        registry=store,
        sink=store,
    )
    ```
"""

from .crypto import SecretCipher, generate_signing_secret, hash_secret
from .delivery import (
    Dispatcher,
    DispatchError,
    DispatchResult,
    compute_signature,
    verify_signature,
)
from .events import EventFanout, build_fanout, fire_webhook_event
from .retry import RetryOrchestrator
from .ssrf import (
    OriginCheck,
    OriginGuard,
    SafeOrigin,
    UnsafeOrigin,
    UnsafeReason,
    check_url_syntax,
    is_private_ip,
    safe_origin,
)
from .transport import PinnedNetworkBackend, PinnedTransport

__all__ = [
    "DispatchError",
    "DispatchResult",
    "Dispatcher",
    "EventFanout",
    "OriginCheck",
    "OriginGuard",
    "PinnedNetworkBackend",
    "PinnedTransport",
    "RetryOrchestrator",
    "SafeOrigin",
    "SecretCipher",
    "UnsafeOrigin",
    "UnsafeReason",
    "build_fanout",
    "check_url_syntax",
    "compute_signature",
    "fire_webhook_event",
    "generate_signing_secret",
    "hash_secret",
    "is_private_ip",
    "safe_origin",
    "verify_signature",
]
