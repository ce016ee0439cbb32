"""kmwebhooks: outbound webhooks for the knowledge marketplace.

Turns marketplace events (purchase completed, review created, listing
published) into signed HTTP deliveries to third-party endpoints, with
SSRF and DNS-rebinding protection and bounded retries.

Quick Start:
    from kmwebhooks.storage import InMemoryWebhookStore
    from kmwebhooks.webhooks import SecretCipher, fire_webhook_event
    from kmwebhooks.models import Subscription

    store = InMemoryWebhookStore()
    cipher = SecretCipher.from_settings()
    subscription, secret = Subscription.create(
        user_id="user_123",
        url="https://hooks.example.com/km",
        events=["purchase.completed"],
        cipher=cipher,
    )
    await store.store_subscription(subscription)

    await fire_webhook_event(
        "user_123",
        "purchase.completed",
        {"knowledge_id": "k_1"},
        registry=store,
        sink=store,
    )
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    KMWebhookError,
    SecretAuthenticationError,
    SecretError,
    SecretFormatError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    logger,
    unbind_context,
)

# Models
from .models import (
    ALL_EVENT_TYPES,
    DeliveryAttempt,
    EventPayload,
    EventType,
    Subscription,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "ConfigurationError",
    "KMWebhookError",
    "SecretAuthenticationError",
    "SecretError",
    "SecretFormatError",
    "StorageError",
    "ValidationError",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "logger",
    "unbind_context",
    # Models
    "ALL_EVENT_TYPES",
    "DeliveryAttempt",
    "EventPayload",
    "EventType",
    "Subscription",
]
