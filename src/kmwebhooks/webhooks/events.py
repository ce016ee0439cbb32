"""Event fan-out: from a fired domain event to every matching subscription.

Business logic calls :func:`fire_webhook_event` (or
:meth:`EventFanout.fire`) after a purchase, review or listing transaction
commits. Matching subscriptions are delivered by a fixed pool of workers;
each worker carries one subscription through its whole retry sequence
before taking the next.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from kmwebhooks.exceptions import ConfigurationError
from kmwebhooks.logging import bind_context, get_logger
from kmwebhooks.models import EventPayload

from .crypto import SecretCipher
from .delivery import Dispatcher
from .retry import DEFAULT_MAX_ATTEMPTS, RetryOrchestrator

if TYPE_CHECKING:
    from collections.abc import Iterator

    from kmwebhooks.config import Settings
    from kmwebhooks.models import Subscription
    from kmwebhooks.storage import DeliveryLogSink, SubscriptionRegistry

logger = get_logger(__name__)

MAX_CONCURRENT_DISPATCHES = 10


class EventFanout:
    """Dispatches an event to all of a user's matching subscriptions.

    Example:
        ```python
        fanout = EventFanout(store, RetryOrchestrator(dispatcher, store))
        await fanout.fire("user_123", "purchase.completed", {"knowledge_id": "k_1"})
        ```
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        orchestrator: RetryOrchestrator,
        max_concurrent: int = MAX_CONCURRENT_DISPATCHES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize the fan-out.

        Args:
            registry: Source of active subscriptions.
            orchestrator: Delivers to one subscription with retries.
            max_concurrent: Maximum subscriptions in flight at once.
            max_attempts: Attempts per subscription.
        """
        self._registry = registry
        self._orchestrator = orchestrator
        self._max_concurrent = max(1, max_concurrent)
        self._max_attempts = max_attempts

    async def fire(self, user_id: str, event: str, data: Any) -> None:
        """Deliver an event to every active subscription of ``user_id``. Never raises.

        Args:
            user_id: Owner of the subscriptions.
            event: Event type.
            data: Event-specific JSON data.
        """
        try:
            await self._fire(user_id, event, data)
        except Exception:
            logger.exception("Webhook fan-out failed", webhook_event=event, user_id=user_id)

    async def _fire(self, user_id: str, event: str, data: Any) -> None:
        try:
            subscriptions = await self._registry.list_active(user_id, event)
        except Exception:
            logger.exception(
                "Failed to query webhook subscriptions",
                webhook_event=event,
                user_id=user_id,
            )
            return

        if not subscriptions:
            logger.debug("No webhooks subscribed to event", webhook_event=event, user_id=user_id)
            return

        payload = EventPayload(event=event, data=data)  # type: ignore[arg-type]

        # Workers share one iterator; each next() hands out a distinct subscription
        remaining = iter(subscriptions)
        worker_count = min(self._max_concurrent, len(subscriptions))
        await asyncio.gather(
            *(self._worker(index, remaining, payload) for index in range(worker_count))
        )
        await self._orchestrator.flush()

        logger.info(
            "Webhook event dispatched",
            webhook_event=event,
            user_id=user_id,
            subscriptions=len(subscriptions),
            workers=worker_count,
        )

    async def _worker(
        self,
        index: int,
        remaining: Iterator[Subscription],
        payload: EventPayload,
    ) -> None:
        # Runs in its own task, so the bound context stays local to it
        bind_context(webhook_event=payload.event, worker=index)
        for subscription in remaining:
            try:
                await self._orchestrator.dispatch_with_retry(
                    subscription, payload, max_attempts=self._max_attempts
                )
            except Exception:
                logger.exception("Webhook dispatch error", subscription_id=subscription.id)


def build_fanout(
    registry: SubscriptionRegistry,
    sink: DeliveryLogSink,
    settings: Settings | None = None,
) -> EventFanout:
    """Wire cipher, dispatcher, orchestrator and fan-out from settings.

    Raises:
        ConfigurationError: If the signing key is missing or malformed.
    """
    if settings is None:
        from kmwebhooks.config import settings as default_settings

        settings = default_settings

    dispatcher = Dispatcher(
        SecretCipher.from_settings(settings),
        timeout_seconds=settings.webhook_timeout_seconds,
        user_agent=settings.webhook_user_agent,
    )
    orchestrator = RetryOrchestrator(
        dispatcher,
        sink,
        base_delay_seconds=settings.webhook_retry_base_delay_seconds,
        jitter=settings.webhook_retry_jitter,
    )
    return EventFanout(
        registry,
        orchestrator,
        max_concurrent=settings.webhook_max_concurrent,
        max_attempts=settings.webhook_max_attempts,
    )


async def fire_webhook_event(
    user_id: str,
    event: str,
    data: Any,
    *,
    registry: SubscriptionRegistry,
    sink: DeliveryLogSink,
    settings: Settings | None = None,
) -> None:
    """Convenience entry point for business logic. Never raises.

    A missing or malformed signing key fails closed: the error is logged
    and nothing is dispatched.

    Args:
        user_id: Owner of the subscriptions.
        event: Event type.
        data: Event-specific JSON data.
        registry: Source of active subscriptions.
        sink: Delivery log sink.
        settings: Configuration; defaults to the global settings.
    """
    try:
        fanout = build_fanout(registry, sink, settings)
    except ConfigurationError as e:
        logger.error("Webhook delivery disabled", webhook_event=event, error=e.message)
        return
    await fanout.fire(user_id, event, data)
