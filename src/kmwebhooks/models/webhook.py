"""Webhook models for outbound event notifications.

Provides subscription records, event payloads, and delivery attempt logs
for the marketplace's third-party integrations.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_timestamp

if TYPE_CHECKING:
    from kmwebhooks.webhooks.crypto import SecretCipher

# Event types that can trigger webhooks
EventType = Literal[
    "purchase.completed",
    "review.created",
    "listing.published",
]

# All available event types for subscription
ALL_EVENT_TYPES: list[EventType] = [
    "purchase.completed",
    "review.created",
    "listing.published",
]

# Delivery log status. Successful attempts are never logged.
DeliveryStatus = Literal["failed", "dead"]

# Payloads whose canonical JSON exceeds this many UTF-8 bytes are replaced
# by a placeholder in delivery logs.
MAX_LOGGED_PAYLOAD_BYTES = 4096


def canonical_json(value: Any) -> str:
    """Serialize to compact JSON, preserving key order and non-ASCII text."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class Subscription(BaseModel):
    """A third-party endpoint subscribed to marketplace events.

    The signing secret is only ever stored encrypted; ``secret_hash`` lets
    the owner verify a secret they hold without decrypting anything.

    Attributes:
        id: Unique identifier for this subscription.
        user_id: User who owns this subscription.
        url: HTTPS endpoint to receive events.
        secret_encrypted: AES-256-GCM encrypted signing secret (nonce.ciphertext.tag).
        secret_hash: SHA-256 hex digest of the plaintext signing secret.
        events: Event types this subscription receives.
        active: Whether this subscription is active.
        description: Optional human-readable description.
        created_at: When the subscription was registered.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("whk"))
    user_id: str = Field(description="User who owns this subscription")
    url: str = Field(description="HTTPS endpoint to receive events")
    secret_encrypted: str | None = Field(
        default=None,
        description="Encrypted signing secret",
    )
    secret_hash: str | None = Field(
        default=None,
        description="SHA-256 of the plaintext signing secret",
    )
    events: list[EventType] = Field(
        default_factory=lambda: list(ALL_EVENT_TYPES),
        description="Event types to subscribe to",
    )
    active: bool = Field(default=True, description="Whether subscription is active")
    description: str | None = Field(default=None, description="Human-readable description")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the subscription was registered",
    )

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription is active and receives the given event type."""
        return self.active and event_type in self.events

    @classmethod
    def create(
        cls,
        user_id: str,
        url: str,
        events: list[str],
        cipher: SecretCipher,
        description: str | None = None,
    ) -> tuple[Subscription, str]:
        """Validate and register a new subscription.

        The URL is checked syntactically (HTTPS, no credentials, no private
        address literal). Hostnames are resolved again on every delivery.

        Args:
            user_id: Owner of the subscription.
            url: Endpoint URL.
            events: Event types to subscribe to (non-empty, known events only).
            cipher: Cipher used to encrypt the generated signing secret.
            description: Optional description.

        Returns:
            The new subscription and its plaintext signing secret. The
            plaintext is shown to the owner once and never stored.

        Raises:
            ValidationError: If the URL or event list is invalid.
            ConfigurationError: If the cipher key is not configured.
        """
        from kmwebhooks.exceptions import ValidationError
        from kmwebhooks.webhooks.crypto import generate_signing_secret, hash_secret
        from kmwebhooks.webhooks.ssrf import check_url_syntax

        if check_url_syntax(url) is not None:
            raise ValidationError(
                "url", "must be a public HTTPS URL (no private/internal addresses)"
            )

        if not events:
            raise ValidationError(
                "events",
                f"must be a non-empty list. Valid events: {', '.join(ALL_EVENT_TYPES)}",
            )
        invalid = [e for e in events if e not in ALL_EVENT_TYPES]
        if invalid:
            raise ValidationError(
                "events",
                f"invalid events: {', '.join(invalid)}. Valid: {', '.join(ALL_EVENT_TYPES)}",
            )

        secret = generate_signing_secret()
        subscription = cls(
            user_id=user_id,
            url=url,
            events=list(dict.fromkeys(events)),
            secret_encrypted=cipher.encrypt(secret),
            secret_hash=hash_secret(secret),
            description=description,
        )
        return subscription, secret

    def with_rotated_secret(self, cipher: SecretCipher) -> tuple[Subscription, str]:
        """Issue a fresh signing secret and reactivate the subscription.

        Returns:
            The updated subscription and the new plaintext secret.
        """
        from kmwebhooks.webhooks.crypto import generate_signing_secret, hash_secret

        secret = generate_signing_secret()
        updated = self.model_copy(
            update={
                "secret_encrypted": cipher.encrypt(secret),
                "secret_hash": hash_secret(secret),
                "active": True,
            }
        )
        return updated, secret


class EventPayload(BaseModel):
    """Event body sent to every subscriber of an event.

    Built once per fan-out and shared read-only by all deliveries.

    Attributes:
        event: Event type.
        data: Event-specific payload (any JSON value).
        timestamp: When the event was fired (ISO-8601, UTC).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event: EventType = Field(description="Event type")
    data: Any = Field(default_factory=dict, description="Event-specific payload")
    timestamp: str = Field(
        default_factory=utc_timestamp,
        description="When the event was fired",
    )

    def to_json(self) -> str:
        """Canonical JSON body: keys in declaration order, compact separators."""
        return canonical_json(self.model_dump(mode="json"))

    @classmethod
    def for_purchase_completed(
        cls,
        knowledge_id: str,
        transaction_id: str,
        amount: float,
        token: str,
    ) -> EventPayload:
        """Create event for a confirmed purchase."""
        return cls(
            event="purchase.completed",
            data={
                "knowledge_id": knowledge_id,
                "transaction_id": transaction_id,
                "amount": amount,
                "token": token,
            },
        )

    @classmethod
    def for_review_created(cls, knowledge_id: str, useful: bool) -> EventPayload:
        """Create event for a new review."""
        return cls(
            event="review.created",
            data={
                "knowledge_id": knowledge_id,
                "useful": useful,
            },
        )

    @classmethod
    def for_listing_published(cls, knowledge_id: str, title: str) -> EventPayload:
        """Create event for a newly published listing."""
        return cls(
            event="listing.published",
            data={
                "knowledge_id": knowledge_id,
                "title": title,
            },
        )


class DeliveryAttempt(BaseModel):
    """Record of a delivery attempt that did not succeed.

    Attributes:
        id: Unique identifier for this record.
        subscription_id: Subscription the attempt was made for.
        event: Event type delivered.
        attempt: Attempt number (1-indexed).
        status: "failed" (will be retried) or "dead" (no further attempts).
        status_code: HTTP response status code, if a response arrived.
        error_message: Classified error and detail, if no usable response.
        payload: Event payload, or a placeholder when too large to log.
        created_at: When the record was created.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str = Field(description="Subscription the attempt was made for")
    event: str = Field(description="Event type delivered")
    attempt: int = Field(ge=1, description="Attempt number")
    status: DeliveryStatus = Field(description="Delivery status")
    status_code: int | None = Field(default=None, description="HTTP response status code")
    error_message: str | None = Field(default=None, description="Error message if failed")
    payload: dict[str, Any] = Field(default_factory=dict, description="Logged payload")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When this record was created",
    )

    @classmethod
    def record(
        cls,
        subscription_id: str,
        payload: EventPayload,
        attempt: int,
        status: DeliveryStatus,
        status_code: int | None = None,
        error_message: str | None = None,
    ) -> DeliveryAttempt:
        """Build a log record, truncating oversized payloads."""
        return cls(
            subscription_id=subscription_id,
            event=payload.event,
            attempt=attempt,
            status=status,
            status_code=status_code,
            error_message=error_message,
            payload=loggable_payload(payload),
        )


def loggable_payload(payload: EventPayload) -> dict[str, Any]:
    """Return the payload for logging, or a placeholder if it exceeds the size cap."""
    data = payload.model_dump(mode="json")
    if len(canonical_json(data).encode("utf-8")) > MAX_LOGGED_PAYLOAD_BYTES:
        return {"event": payload.event, "data": "[logged]", "_truncated": True}
    return data


__all__ = [
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
