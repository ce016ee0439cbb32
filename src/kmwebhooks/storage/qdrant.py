"""Qdrant-backed subscription registry and delivery log.

Subscriptions and delivery attempts live in their own collections with a
one-dimensional placeholder vector; only payload filtering is used.

Example:
    ```python
    async with QdrantWebhookStore() as store:
        await store.store_subscription(subscription)
        subs = await store.list_active("user_123", "purchase.completed")
    ```
"""

from __future__ import annotations

import hashlib
from typing import Any

from qdrant_client import AsyncQdrantClient, models

from kmwebhooks.config import settings
from kmwebhooks.exceptions import StorageError
from kmwebhooks.models import DeliveryAttempt, Subscription

from .retry import qdrant_retry

SUBSCRIPTIONS = "webhook_subscriptions"
DELIVERIES = "webhook_deliveries"

# Placeholder vector size (no semantic search needed)
PLACEHOLDER_DIM = 1

_PAYLOAD_INDEXES: dict[str, dict[str, models.PayloadSchemaType]] = {
    SUBSCRIPTIONS: {
        "user_id": models.PayloadSchemaType.KEYWORD,
        "active": models.PayloadSchemaType.BOOL,
        "events": models.PayloadSchemaType.KEYWORD,
    },
    DELIVERIES: {
        "subscription_id": models.PayloadSchemaType.KEYWORD,
        "status": models.PayloadSchemaType.KEYWORD,
    },
}


class QdrantWebhookStore:
    """Implements SubscriptionRegistry and DeliveryLogSink on Qdrant."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL. Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            client: Pre-built client (skips connection setup in initialize()).
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._client = client

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise StorageError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Connect and ensure collections exist."""
        if self._client is None:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()

    async def close(self) -> None:
        """Close the storage client connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> QdrantWebhookStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _collection_name(self, kind: str) -> str:
        return f"{self._prefix}_{kind}"

    @staticmethod
    def _key_to_point_id(key: str) -> str:
        """Convert a storage key to a deterministic UUID-format point ID."""
        h = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    @staticmethod
    def _subscription_key(subscription_id: str, user_id: str) -> str:
        return f"{user_id}/{subscription_id}"

    async def _ensure_collections(self) -> None:
        existing = {c.name for c in (await self.client.get_collections()).collections}
        for kind, indexes in _PAYLOAD_INDEXES.items():
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=PLACEHOLDER_DIM,
                    distance=models.Distance.COSINE,
                ),
            )
            for field_name, schema in indexes.items():
                await self.client.create_payload_index(
                    collection_name=collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )

    @qdrant_retry
    async def store_subscription(self, subscription: Subscription) -> str:
        """Insert or replace a subscription.

        Returns:
            The subscription ID.
        """
        key = self._subscription_key(subscription.id, subscription.user_id)
        await self.client.upsert(
            collection_name=self._collection_name(SUBSCRIPTIONS),
            points=[
                models.PointStruct(
                    id=self._key_to_point_id(key),
                    vector=[0.0] * PLACEHOLDER_DIM,
                    payload=subscription.model_dump(mode="json"),
                )
            ],
        )
        return subscription.id

    @qdrant_retry
    async def get_subscription(self, subscription_id: str, user_id: str) -> Subscription | None:
        """Get a subscription by ID, scoped to its owner."""
        results = await self.client.retrieve(
            collection_name=self._collection_name(SUBSCRIPTIONS),
            ids=[self._key_to_point_id(self._subscription_key(subscription_id, user_id))],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return Subscription.model_validate(results[0].payload)

    @qdrant_retry
    async def list_subscriptions(self, user_id: str, limit: int = 1000) -> list[Subscription]:
        """All subscriptions owned by a user, active or not."""
        results, _ = await self.client.scroll(
            collection_name=self._collection_name(SUBSCRIPTIONS),
            scroll_filter=models.Filter(
                must=[
                    models.FieldCondition(key="user_id", match=models.MatchValue(value=user_id)),
                ]
            ),
            limit=limit,
            with_payload=True,
        )
        return [Subscription.model_validate(r.payload) for r in results if r.payload is not None]

    @qdrant_retry
    async def list_active(
        self,
        user_id: str,
        event: str,
        limit: int = 1000,
    ) -> list[Subscription]:
        """Active subscriptions of a user that include ``event``.

        Filtering on owner, active flag and event membership happens in Qdrant.
        """
        results, _ = await self.client.scroll(
            collection_name=self._collection_name(SUBSCRIPTIONS),
            scroll_filter=models.Filter(
                must=[
                    models.FieldCondition(key="user_id", match=models.MatchValue(value=user_id)),
                    models.FieldCondition(key="active", match=models.MatchValue(value=True)),
                    # Matches when any element of the events array equals `event`
                    models.FieldCondition(key="events", match=models.MatchValue(value=event)),
                ]
            ),
            limit=limit,
            with_payload=True,
        )
        return [Subscription.model_validate(r.payload) for r in results if r.payload is not None]

    @qdrant_retry
    async def delete_subscription(self, subscription_id: str, user_id: str) -> bool:
        """Delete a subscription owned by ``user_id``.

        Returns:
            True if deleted, False if not found.
        """
        collection = self._collection_name(SUBSCRIPTIONS)
        point_id = self._key_to_point_id(self._subscription_key(subscription_id, user_id))

        existing = await self.client.retrieve(collection_name=collection, ids=[point_id])
        if not existing:
            return False

        await self.client.delete(
            collection_name=collection,
            points_selector=models.PointIdsList(points=[point_id]),
        )
        return True

    @qdrant_retry
    async def append(self, attempt: DeliveryAttempt) -> None:
        """Write a delivery attempt record."""
        await self.client.upsert(
            collection_name=self._collection_name(DELIVERIES),
            points=[
                models.PointStruct(
                    id=self._key_to_point_id(attempt.id),
                    vector=[0.0] * PLACEHOLDER_DIM,
                    payload=attempt.model_dump(mode="json"),
                )
            ],
        )

    @qdrant_retry
    async def list_attempts(self, subscription_id: str, limit: int = 100) -> list[DeliveryAttempt]:
        """Delivery attempts for a subscription, newest first."""
        results, _ = await self.client.scroll(
            collection_name=self._collection_name(DELIVERIES),
            scroll_filter=models.Filter(
                must=[
                    models.FieldCondition(
                        key="subscription_id",
                        match=models.MatchValue(value=subscription_id),
                    )
                ]
            ),
            limit=limit,
            with_payload=True,
        )
        attempts = [
            DeliveryAttempt.model_validate(r.payload) for r in results if r.payload is not None
        ]
        attempts.sort(key=lambda a: a.created_at, reverse=True)
        return attempts
