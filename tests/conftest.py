"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from kmwebhooks.models import DeliveryAttempt, EventPayload, Subscription
from kmwebhooks.storage import InMemoryWebhookStore
from kmwebhooks.webhooks import SecretCipher, hash_secret
from kmwebhooks.webhooks.delivery import DispatchResult
from kmwebhooks.webhooks.ssrf import OriginCheck, SafeOrigin

# Add tests directory to path so helpers can be imported from conftest
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

TEST_KEY = bytes(range(32)).hex()
TEST_SECRET = "whsec_" + "ab" * 32


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingSink:
    """Delivery log sink that keeps records in append order."""

    def __init__(self) -> None:
        self.records: list[DeliveryAttempt] = []

    async def append(self, attempt: DeliveryAttempt) -> None:
        self.records.append(attempt)


@dataclass
class StubGuard:
    """OriginGuard stand-in returning a fixed result."""

    result: OriginCheck = field(
        default_factory=lambda: SafeOrigin(resolved_address="93.184.216.34", family=4)
    )
    urls: list[str] = field(default_factory=list)

    async def check(self, url: str) -> OriginCheck:
        self.urls.append(url)
        return self.result


class ScriptedDispatcher:
    """Dispatcher stand-in returning scripted results in order.

    The last result repeats once the script runs out.
    """

    def __init__(self, *results: DispatchResult) -> None:
        self._results = list(results)
        self.calls = 0

    async def dispatch(self, subscription: Subscription, payload: EventPayload) -> DispatchResult:
        self.calls += 1
        index = min(self.calls, len(self._results)) - 1
        return self._results[index]


class RecordingHandler:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, response: httpx.Response | None = None) -> None:
        self.response = response or httpx.Response(200, text="OK")
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


@pytest.fixture
def cipher() -> SecretCipher:
    """Cipher with a fixed test key."""
    return SecretCipher(TEST_KEY)


@pytest.fixture
def sample_subscription(cipher: SecretCipher) -> Subscription:
    """Active subscription to purchase and review events."""
    return Subscription(
        id="whk_test123",
        user_id="user_1",
        url="https://hooks.example.com/km?token=abc",
        secret_encrypted=cipher.encrypt(TEST_SECRET),
        secret_hash=hash_secret(TEST_SECRET),
        events=["purchase.completed", "review.created"],
    )


@pytest.fixture
def sample_payload() -> EventPayload:
    """Purchase event with a fixed timestamp."""
    return EventPayload(
        event="purchase.completed",
        data={"knowledge_id": "k_1", "transaction_id": "tx_1", "amount": 1.5, "token": "SOL"},
        timestamp="2026-01-01T00:00:00.000Z",
    )


@pytest.fixture
def store() -> InMemoryWebhookStore:
    """Empty in-memory webhook store."""
    return InMemoryWebhookStore()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(autouse=True)
def _restore_logging_config():
    """Undo configure_logging() calls so a test's captured stdout doesn't leak."""
    import structlog

    import kmwebhooks.logging as km_logging

    saved = structlog.get_config()
    configured = km_logging._configured
    yield
    structlog.configure(**saved)
    km_logging._configured = configured
