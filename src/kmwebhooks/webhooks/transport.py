"""httpx transport pinned to a pre-validated IP address.

The request URL keeps the subscriber's hostname, so the Host header, TLS
SNI and certificate verification all use the real name. Only the TCP
connect is redirected: the network backend ignores the hostname it is
given and dials the address that passed the SSRF check. The transport's
own resolver is never consulted.
"""

from __future__ import annotations

import ssl
from collections.abc import Iterable
from typing import Any

import httpcore
import httpx


class PinnedNetworkBackend(httpcore.AsyncNetworkBackend):
    """Network backend that connects every TCP stream to one fixed address."""

    def __init__(
        self,
        address: str,
        backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        self._address = address
        self._backend = backend or httpcore.AnyIOBackend()

    @property
    def address(self) -> str:
        return self._address

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        return await self._backend.connect_tcp(
            self._address,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )

    async def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        raise httpcore.ConnectError("Unix sockets are not used for webhook delivery")

    async def sleep(self, seconds: float) -> None:
        await self._backend.sleep(seconds)


class PinnedTransport(httpx.AsyncHTTPTransport):
    """Single-use transport whose connections all go to ``address``.

    Built per delivery attempt and closed with its client. Nothing is
    pooled across attempts, so a later DNS change can never be picked up
    by a reused connection.
    """

    def __init__(
        self,
        address: str,
        ssl_context: ssl.SSLContext | None = None,
        network_backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        super().__init__(retries=0)
        self.network_backend = PinnedNetworkBackend(address, backend=network_backend)
        # Swap the pool httpx built for one that dials through the pinned backend
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=ssl_context or httpx.create_ssl_context(),
            max_connections=1,
            max_keepalive_connections=0,
            retries=0,
            network_backend=self.network_backend,
        )
