"""Bounded retries for webhook delivery.

Wraps :class:`~kmwebhooks.webhooks.delivery.Dispatcher` with exponential
backoff (1s, 2s, 4s, ... with +/-10% jitter) and permanent/transient
classification. Every attempt that does not succeed is written to the
delivery log: ``failed`` while another attempt follows, ``dead`` when the
sequence ends without success.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
)

from kmwebhooks.logging import get_logger
from kmwebhooks.models import DeliveryAttempt

if TYPE_CHECKING:
    from kmwebhooks.models import DeliveryStatus, EventPayload, Subscription
    from kmwebhooks.storage import DeliveryLogSink

    from .delivery import Dispatcher, DispatchResult

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

SleepFunc = Callable[[float], Awaitable[None]]


def _should_retry(result: DispatchResult) -> bool:
    return not result.success and not result.is_permanent_failure


def _last_result(retry_state: RetryCallState) -> DispatchResult | None:
    # Ends iteration on exhaustion instead of raising RetryError
    if retry_state.outcome is None:
        return None
    return retry_state.outcome.result()  # type: ignore[no-any-return]


class RetryOrchestrator:
    """Delivers one payload to one subscription with bounded retries.

    Attempts for a subscription are strictly sequential. Delivery log writes
    run as detached tasks: a failing sink is reported to the diagnostic log
    and never alters the retry sequence.

    Example:
        ```python
        orchestrator = RetryOrchestrator(dispatcher, store)
        await orchestrator.dispatch_with_retry(subscription, payload)
        await orchestrator.flush()  # wait for log writes
        ```
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        sink: DeliveryLogSink,
        base_delay_seconds: float = 1.0,
        jitter: float = 0.1,
        sleep: SleepFunc | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            dispatcher: Performs single delivery attempts.
            sink: Receives a DeliveryAttempt for every unsuccessful attempt.
            base_delay_seconds: Delay after the first failed attempt.
            jitter: Relative jitter applied to each delay (0.1 = +/-10%).
            sleep: Async sleep function (injectable for tests).
            rng: Random source for jitter (injectable for tests).
        """
        self._dispatcher = dispatcher
        self._sink = sink
        self._base_delay = base_delay_seconds
        self._jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._random = rng or random.Random()
        self._pending: set[asyncio.Task[None]] = set()

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after a failed attempt: base * 2**(attempt-1), +/- jitter."""
        base = self._base_delay * (2 ** (attempt - 1))
        return base + base * self._jitter * self._random.uniform(-1.0, 1.0)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff_seconds(retry_state.attempt_number)

    async def dispatch_with_retry(
        self,
        subscription: Subscription,
        payload: EventPayload,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> DispatchResult | None:
        """Deliver with retries. Never raises.

        Args:
            subscription: Destination subscription.
            payload: Event body.
            max_attempts: Upper bound on attempts (including the first).

        Returns:
            The result of the last attempt, or None if the dispatcher
            raised unexpectedly or ``max_attempts`` is below 1.
        """
        if max_attempts < 1:
            logger.warning(
                "Webhook not dispatched, no attempts allowed",
                subscription_id=subscription.id,
                max_attempts=max_attempts,
            )
            return None

        def record_failed(retry_state: RetryCallState) -> None:
            if retry_state.outcome is None:
                return
            result: DispatchResult = retry_state.outcome.result()
            self._record(subscription, payload, retry_state.attempt_number, "failed", result)
            logger.warning(
                "Webhook attempt failed, retrying",
                subscription_id=subscription.id,
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                reason=result.describe(),
                delay_seconds=round(retry_state.next_action.sleep, 3)
                if retry_state.next_action
                else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self._wait,
            retry=retry_if_result(_should_retry),
            sleep=self._sleep,
            before_sleep=record_failed,
            retry_error_callback=_last_result,
        )

        result: DispatchResult | None = None
        attempt_number = 0
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._dispatcher.dispatch(subscription, payload)
                outcome = attempt.retry_state.outcome
                if outcome is not None and not outcome.failed:
                    attempt.retry_state.set_result(result)
                attempt_number = attempt.retry_state.attempt_number
        except Exception:
            logger.exception(
                "Webhook retry loop aborted",
                subscription_id=subscription.id,
                attempt=attempt_number,
            )
            return None

        if result is None or result.success:
            return result

        self._record(subscription, payload, attempt_number, "dead", result)
        if result.is_permanent_failure:
            logger.warning(
                "Webhook permanent failure, skipping retries",
                subscription_id=subscription.id,
                attempt=attempt_number,
                reason=result.describe(),
            )
        else:
            logger.error(
                "Webhook attempts exhausted",
                subscription_id=subscription.id,
                attempts=attempt_number,
                reason=result.describe(),
            )
        return result

    def _record(
        self,
        subscription: Subscription,
        payload: EventPayload,
        attempt: int,
        status: DeliveryStatus,
        result: DispatchResult,
    ) -> None:
        """Schedule a delivery log write without waiting for it."""
        try:
            record = DeliveryAttempt.record(
                subscription_id=subscription.id,
                payload=payload,
                attempt=attempt,
                status=status,
                status_code=result.status_code,
                error_message=result.describe() if result.error is not None else None,
            )
            task = asyncio.create_task(self._write(record))
        except Exception:
            logger.exception(
                "Failed to schedule delivery log write",
                subscription_id=subscription.id,
                attempt=attempt,
            )
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, record: DeliveryAttempt) -> None:
        try:
            await self._sink.append(record)
        except Exception:
            logger.exception(
                "Failed to write delivery log",
                subscription_id=record.subscription_id,
                attempt=record.attempt,
                status=record.status,
            )

    async def flush(self) -> None:
        """Wait for all scheduled delivery log writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
