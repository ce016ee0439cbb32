"""Tests for bounded delivery retries and delivery logging."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import (
    RecordingHandler,
    RecordingSink,
    RecordingSleep,
    ScriptedDispatcher,
    StubGuard,
)

from kmwebhooks.exceptions import StorageError
from kmwebhooks.models import EventPayload, Subscription
from kmwebhooks.webhooks.crypto import SecretCipher
from kmwebhooks.webhooks.delivery import Dispatcher, DispatchError, DispatchResult
from kmwebhooks.webhooks.retry import RetryOrchestrator

OK = DispatchResult(success=True, status_code=200)
SERVER_ERROR = DispatchResult(success=False, status_code=503)
TIMEOUT = DispatchResult(success=False, error=DispatchError.TIMEOUT)


def _orchestrator(dispatcher, sink, sleep: RecordingSleep) -> RetryOrchestrator:
    return RetryOrchestrator(
        dispatcher,  # type: ignore[arg-type]
        sink,
        sleep=sleep,
        rng=random.Random(42),
    )


class TestBackoff:
    """Tests for the delay schedule."""

    def test_delays_double_with_jitter(self) -> None:
        orchestrator = RetryOrchestrator(AsyncMock(), AsyncMock(), rng=random.Random(0))
        for _ in range(50):
            assert 0.9 <= orchestrator.backoff_seconds(1) <= 1.1
            assert 1.8 <= orchestrator.backoff_seconds(2) <= 2.2
            assert 3.6 <= orchestrator.backoff_seconds(3) <= 4.4

    def test_no_jitter(self) -> None:
        orchestrator = RetryOrchestrator(AsyncMock(), AsyncMock(), base_delay_seconds=0.5, jitter=0)
        assert orchestrator.backoff_seconds(1) == 0.5
        assert orchestrator.backoff_seconds(2) == 1.0
        assert orchestrator.backoff_seconds(4) == 4.0


class TestDispatchWithRetry:
    """Tests for RetryOrchestrator.dispatch_with_retry."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        """Success is not logged and never sleeps."""
        dispatcher = ScriptedDispatcher(OK)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result == OK
        assert dispatcher.calls == 1
        assert recording_sleep.delays == []
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_attempts(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        """Three attempts, two waits, then a dead record."""
        dispatcher = ScriptedDispatcher(SERVER_ERROR)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result == SERVER_ERROR
        assert dispatcher.calls == 3
        assert len(recording_sleep.delays) == 2
        assert 0.9 <= recording_sleep.delays[0] <= 1.1
        assert 1.8 <= recording_sleep.delays[1] <= 2.2

        assert [(r.attempt, r.status) for r in sink.records] == [
            (1, "failed"),
            (2, "failed"),
            (3, "dead"),
        ]
        for record in sink.records:
            assert record.subscription_id == sample_subscription.id
            assert record.event == "purchase.completed"
            assert record.status_code == 503
            assert record.error_message is None
            assert record.payload == sample_payload.model_dump(mode="json")

    @pytest.mark.asyncio
    async def test_fail_then_succeed(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        dispatcher = ScriptedDispatcher(TIMEOUT, OK)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result == OK
        assert dispatcher.calls == 2
        assert len(recording_sleep.delays) == 1
        assert len(sink.records) == 1
        record = sink.records[0]
        assert record.attempt == 1
        assert record.status == "failed"
        assert record.status_code is None
        assert record.error_message == "timeout"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure",
        [
            DispatchResult(success=False, status_code=400),
            DispatchResult(success=False, status_code=410),
            DispatchResult(success=False, error=DispatchError.NO_SIGNING_SECRET),
            DispatchResult(success=False, error=DispatchError.DECRYPT_FAILED),
            DispatchResult(
                success=False, error=DispatchError.SSRF_REJECTED, detail="private_ip"
            ),
        ],
    )
    async def test_permanent_failure_is_not_retried(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
        failure: DispatchResult,
    ) -> None:
        dispatcher = ScriptedDispatcher(failure)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result == failure
        assert dispatcher.calls == 1
        assert recording_sleep.delays == []
        assert [(r.attempt, r.status) for r in sink.records] == [(1, "dead")]

    @pytest.mark.asyncio
    async def test_ssrf_rejection_logs_reason(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        failure = DispatchResult(
            success=False, error=DispatchError.SSRF_REJECTED, detail="private_ip"
        )
        orchestrator = _orchestrator(ScriptedDispatcher(failure), sink, recording_sleep)

        await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert sink.records[0].error_message == "ssrf_rejected: private_ip"

    @pytest.mark.asyncio
    async def test_rate_limited_is_retried(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        """429 is the one 4xx that is transient."""
        rate_limited = DispatchResult(success=False, status_code=429)
        dispatcher = ScriptedDispatcher(rate_limited)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert dispatcher.calls == 3
        assert [r.status for r in sink.records] == ["failed", "failed", "dead"]

    @pytest.mark.asyncio
    async def test_dns_error_is_retried(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        dns_error = DispatchResult(success=False, error=DispatchError.DNS_ERROR, detail="dns_error")
        dispatcher = ScriptedDispatcher(dns_error, OK)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)

        assert result == OK
        assert dispatcher.calls == 2

    @pytest.mark.asyncio
    async def test_custom_max_attempts(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        dispatcher = ScriptedDispatcher(SERVER_ERROR)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        await orchestrator.dispatch_with_retry(sample_subscription, sample_payload, max_attempts=5)
        await orchestrator.flush()

        assert dispatcher.calls == 5
        assert len(recording_sleep.delays) == 4
        assert sink.records[-1].attempt == 5
        assert sink.records[-1].status == "dead"

    @pytest.mark.asyncio
    async def test_single_attempt(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        dispatcher = ScriptedDispatcher(SERVER_ERROR)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        await orchestrator.dispatch_with_retry(sample_subscription, sample_payload, max_attempts=1)
        await orchestrator.flush()

        assert dispatcher.calls == 1
        assert recording_sleep.delays == []
        assert [(r.attempt, r.status) for r in sink.records] == [(1, "dead")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [0, -1])
    async def test_no_attempts_allowed(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
        max_attempts: int,
    ) -> None:
        """Fewer than one attempt dispatches nothing and logs nothing."""
        dispatcher = ScriptedDispatcher(SERVER_ERROR)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(
            sample_subscription, sample_payload, max_attempts=max_attempts
        )
        await orchestrator.flush()

        assert result is None
        assert dispatcher.calls == 0
        assert recording_sleep.delays == []
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_missing_secret_is_dead_without_network(
        self,
        cipher: SecretCipher,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        """A subscription without a secret is logged dead once, never resolved or sent."""
        subscription = sample_subscription.model_copy(update={"secret_encrypted": None})
        guard = StubGuard()
        handler = RecordingHandler()
        dispatcher = Dispatcher(
            cipher,
            guard=guard,  # type: ignore[arg-type]
            transport_factory=lambda origin: httpx.MockTransport(handler),
        )
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(subscription, sample_payload)
        await orchestrator.flush()

        assert result == DispatchResult(success=False, error=DispatchError.NO_SIGNING_SECRET)
        assert guard.urls == []
        assert handler.requests == []
        assert recording_sleep.delays == []
        assert [(r.attempt, r.status) for r in sink.records] == [(1, "dead")]
        assert sink.records[0].error_message == "no_signing_secret"

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_retries(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        recording_sleep: RecordingSleep,
    ) -> None:
        """A failing delivery log is reported but never stops delivery."""
        sink = AsyncMock()
        sink.append.side_effect = StorageError("qdrant unavailable")
        dispatcher = ScriptedDispatcher(SERVER_ERROR, SERVER_ERROR, OK)
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result == OK
        assert dispatcher.calls == 3
        assert sink.append.await_count == 2

    @pytest.mark.asyncio
    async def test_dispatcher_exception_is_contained(
        self,
        sample_subscription: Subscription,
        sample_payload: EventPayload,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = RuntimeError("boom")
        orchestrator = _orchestrator(dispatcher, sink, recording_sleep)

        result = await orchestrator.dispatch_with_retry(sample_subscription, sample_payload)
        await orchestrator.flush()

        assert result is None
        assert dispatcher.dispatch.await_count == 1
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_oversized_payload_is_truncated_in_log(
        self,
        sample_subscription: Subscription,
        sink: RecordingSink,
        recording_sleep: RecordingSleep,
    ) -> None:
        payload = EventPayload(event="listing.published", data={"title": "x" * 5000})
        orchestrator = _orchestrator(
            ScriptedDispatcher(DispatchResult(success=False, status_code=404)),
            sink,
            recording_sleep,
        )

        await orchestrator.dispatch_with_retry(sample_subscription, payload)
        await orchestrator.flush()

        assert sink.records[0].payload == {
            "event": "listing.published",
            "data": "[logged]",
            "_truncated": True,
        }
