"""In-process webhook store for tests and single-process deployments."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kmwebhooks.models import DeliveryAttempt, Subscription


class InMemoryWebhookStore:
    """Subscription registry and delivery log held in dictionaries.

    Nothing survives a restart.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._attempts: list[DeliveryAttempt] = []

    async def store_subscription(self, subscription: Subscription) -> str:
        self._subscriptions[subscription.id] = subscription
        return subscription.id

    async def get_subscription(self, subscription_id: str, user_id: str) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            return None
        return subscription

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.user_id == user_id]

    async def list_active(self, user_id: str, event: str) -> list[Subscription]:
        return [
            s
            for s in self._subscriptions.values()
            if s.user_id == user_id and s.subscribes_to(event)
        ]

    async def delete_subscription(self, subscription_id: str, user_id: str) -> bool:
        """Delete a subscription owned by ``user_id``.

        Returns:
            True if deleted, False if not found.
        """
        if await self.get_subscription(subscription_id, user_id) is None:
            return False
        del self._subscriptions[subscription_id]
        return True

    async def append(self, attempt: DeliveryAttempt) -> None:
        self._attempts.append(attempt)

    async def list_attempts(self, subscription_id: str) -> list[DeliveryAttempt]:
        """Delivery attempts for a subscription, newest first."""
        attempts = [a for a in self._attempts if a.subscription_id == subscription_id]
        return sorted(attempts, key=lambda a: a.created_at, reverse=True)
