"""Single-attempt webhook delivery with HMAC signatures and SSRF pinning.

One call to :meth:`Dispatcher.dispatch` performs exactly one attempt:
- refuses subscriptions without an encrypted signing secret
- validates the URL and resolves it once (see ``ssrf``)
- decrypts the signing secret and signs the canonical JSON body
- POSTs through a transport pinned to the validated address, with no
  redirects and a fixed timeout

Every outcome is returned as a :class:`DispatchResult`; nothing is raised.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from kmwebhooks.exceptions import SecretError
from kmwebhooks.logging import get_logger

from .ssrf import OriginGuard, SafeOrigin, UnsafeReason, safe_origin
from .transport import PinnedTransport

if TYPE_CHECKING:
    from kmwebhooks.models import EventPayload, Subscription

    from .crypto import SecretCipher

logger = get_logger(__name__)

DISPATCH_TIMEOUT_SECONDS = 10.0
USER_AGENT = "KnowledgeMarket-Webhook/1.0"

SIGNATURE_HEADER = "X-KM-Signature"
EVENT_HEADER = "X-KM-Event"

TransportFactory = Callable[[SafeOrigin], httpx.AsyncBaseTransport]


def compute_signature(body: bytes | str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for a webhook body.

    Args:
        body: Exact bytes sent on the wire (str is UTF-8 encoded).
        secret: Shared secret for HMAC.

    Returns:
        Signature in format "sha256=<hex_digest>".
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"sha256={signature}"


def verify_signature(body: bytes | str, secret: str, signature: str) -> bool:
    """Verify HMAC-SHA256 signature for a webhook body.

    Receivers use this to check the X-KM-Signature header.

    Args:
        body: Raw request body that was signed.
        secret: Shared secret for HMAC.
        signature: Signature to verify (format: "sha256=<hex_digest>").

    Returns:
        True if signature is valid, False otherwise.
    """
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, signature)


class DispatchError(str, Enum):
    """Classified reason a delivery attempt did not produce a response."""

    NO_SIGNING_SECRET = "no_signing_secret"
    SSRF_REJECTED = "ssrf_rejected"
    DNS_ERROR = "dns_error"
    DECRYPT_FAILED = "decrypt_failed"
    TIMEOUT = "timeout"
    REQUEST_FAILED = "request_failed"

    @property
    def is_permanent(self) -> bool:
        """Whether the same subscription will fail the same way on retry."""
        return self in _PERMANENT_ERRORS


_PERMANENT_ERRORS = frozenset(
    {
        DispatchError.NO_SIGNING_SECRET,
        DispatchError.DECRYPT_FAILED,
        DispatchError.SSRF_REJECTED,
    }
)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one delivery attempt.

    Attributes:
        success: True if the endpoint answered 2xx.
        status_code: HTTP status, when a response arrived.
        error: Classified failure, when no usable response arrived.
        detail: Diagnostic text for logs (never contains the full URL).
    """

    success: bool
    status_code: int | None = None
    error: DispatchError | None = None
    detail: str | None = None

    @property
    def is_permanent_failure(self) -> bool:
        """Permanent errors and 4xx responses other than 429 are not retried."""
        if self.success:
            return False
        if self.error is not None:
            return self.error.is_permanent
        if self.status_code is not None:
            return 400 <= self.status_code < 500 and self.status_code != 429
        return False

    def describe(self) -> str:
        """Short description for delivery logs."""
        if self.error is not None:
            return f"{self.error.value}: {self.detail}" if self.detail else self.error.value
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return "unknown error"


def pinned_transport(origin: SafeOrigin) -> httpx.AsyncBaseTransport:
    """Default transport factory: connect only to the validated address."""
    return PinnedTransport(origin.resolved_address)


class Dispatcher:
    """Performs single webhook delivery attempts.

    Example:
        ```python
        dispatcher = Dispatcher(SecretCipher.from_settings())
        result = await dispatcher.dispatch(subscription, payload)
        if not result.success and not result.is_permanent_failure:
            ...  # safe to try again later
        ```
    """

    def __init__(
        self,
        cipher: SecretCipher,
        guard: OriginGuard | None = None,
        timeout_seconds: float = DISPATCH_TIMEOUT_SECONDS,
        user_agent: str = USER_AGENT,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            cipher: Cipher holding the signing-secret key.
            guard: SSRF guard; defaults to one using the system resolver.
            timeout_seconds: Ceiling for one whole attempt.
            user_agent: User-Agent header value.
            transport_factory: Builds the per-attempt transport for a
                validated origin. Defaults to :func:`pinned_transport`.
        """
        self._cipher = cipher
        self._guard = guard or OriginGuard()
        self._timeout = timeout_seconds
        self._user_agent = user_agent
        self._transport_factory = transport_factory or pinned_transport

    async def dispatch(self, subscription: Subscription, payload: EventPayload) -> DispatchResult:
        """Attempt one delivery. Never raises.

        Args:
            subscription: Destination and encrypted secret.
            payload: Event body to deliver.

        Returns:
            DispatchResult describing the outcome.
        """
        try:
            return await self._dispatch(subscription, payload)
        except Exception as e:
            logger.exception(
                "Webhook dispatch error",
                subscription_id=subscription.id,
                origin=safe_origin(subscription.url),
            )
            return DispatchResult(
                success=False,
                error=DispatchError.REQUEST_FAILED,
                detail=f"unexpected error: {type(e).__name__}",
            )

    async def _dispatch(self, subscription: Subscription, payload: EventPayload) -> DispatchResult:
        if not subscription.secret_encrypted:
            return DispatchResult(success=False, error=DispatchError.NO_SIGNING_SECRET)

        # Resolve once; the transport connects only to this address
        origin = await self._guard.check(subscription.url)
        if not isinstance(origin, SafeOrigin):
            logger.error(
                "Webhook SSRF check failed",
                subscription_id=subscription.id,
                reason=origin.reason.value,
                origin=safe_origin(subscription.url),
            )
            error = (
                DispatchError.DNS_ERROR
                if origin.reason is UnsafeReason.DNS_ERROR
                else DispatchError.SSRF_REJECTED
            )
            return DispatchResult(success=False, error=error, detail=origin.reason.value)

        try:
            secret = self._cipher.decrypt(subscription.secret_encrypted)
        except SecretError as e:
            logger.error(
                "Failed to decrypt webhook secret",
                subscription_id=subscription.id,
                error=e.message,
            )
            return DispatchResult(success=False, error=DispatchError.DECRYPT_FAILED)

        body = payload.to_json().encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: payload.event,
            SIGNATURE_HEADER: compute_signature(body, secret),
            "User-Agent": self._user_agent,
        }

        try:
            # trust_env=False: an environment proxy would bypass the pinned address
            async with httpx.AsyncClient(
                transport=self._transport_factory(origin),
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=False,
                trust_env=False,
            ) as client:
                async with asyncio.timeout(self._timeout):
                    async with client.stream(
                        "POST",
                        subscription.url,
                        content=body,
                        headers=headers,
                    ) as response:
                        status_code = response.status_code
        except (httpx.TimeoutException, TimeoutError):
            logger.warning(
                "Webhook delivery timed out",
                subscription_id=subscription.id,
                origin=safe_origin(subscription.url),
                timeout_seconds=self._timeout,
            )
            return DispatchResult(success=False, error=DispatchError.TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning(
                "Webhook delivery request failed",
                subscription_id=subscription.id,
                origin=safe_origin(subscription.url),
                error=type(e).__name__,
            )
            return DispatchResult(
                success=False,
                error=DispatchError.REQUEST_FAILED,
                detail=type(e).__name__,
            )

        success = 200 <= status_code < 300
        logger.info(
            "Webhook delivered" if success else "Webhook rejected",
            subscription_id=subscription.id,
            webhook_event=payload.event,
            origin=safe_origin(subscription.url),
            status_code=status_code,
        )
        return DispatchResult(success=success, status_code=status_code)
