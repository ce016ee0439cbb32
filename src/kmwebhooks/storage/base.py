"""Collaborator interfaces consumed by the delivery core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from kmwebhooks.models import DeliveryAttempt, Subscription


@runtime_checkable
class SubscriptionRegistry(Protocol):
    """Source of webhook subscriptions."""

    async def list_active(self, user_id: str, event: str) -> list[Subscription]:
        """Active subscriptions of ``user_id`` whose event set contains ``event``.

        Implementations filter on the server side; callers do not re-check.
        """
        ...


@runtime_checkable
class DeliveryLogSink(Protocol):
    """Destination for delivery attempt records. Best-effort."""

    async def append(self, attempt: DeliveryAttempt) -> None: ...
