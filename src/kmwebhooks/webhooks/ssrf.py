"""SSRF protection for subscriber-supplied webhook URLs.

Every delivery URL is checked before connecting:
- only ``https`` URLs without embedded credentials are accepted
- IP literals are classified directly, hostnames are resolved once
- if any resolved address is private or reserved the URL is rejected

A safe result carries the address that was validated. The transport
connects to that address only, so a DNS answer that changes between the
check and the connection cannot redirect the socket.
"""

from __future__ import annotations

import asyncio
import re
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network
from typing import Literal
from urllib.parse import SplitResult, urlsplit

from kmwebhooks.logging import get_logger

logger = get_logger(__name__)

# (family, address) pairs, in resolver order
Resolver = Callable[[str], Awaitable[list[tuple[int, str]]]]

_BLOCKED_IPV4_NETWORKS = tuple(
    ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",  # "this" network
        "10.0.0.0/8",  # Private Class A
        "100.64.0.0/10",  # CGNAT
        "127.0.0.0/8",  # Loopback
        "169.254.0.0/16",  # Link-local / cloud metadata
        "172.16.0.0/12",  # Private Class B
        "192.0.2.0/24",  # TEST-NET-1
        "192.168.0.0/16",  # Private Class C
        "198.18.0.0/15",  # Benchmarking
        "198.51.100.0/24",  # TEST-NET-2
        "203.0.113.0/24",  # TEST-NET-3
        "224.0.0.0/4",  # Multicast
        "240.0.0.0/4",  # Reserved + broadcast
    )
)

_BLOCKED_IPV6_NETWORKS = tuple(
    ip_network(cidr)
    for cidr in (
        "::/128",  # Unspecified
        "::1/128",  # Loopback
        "ff00::/8",  # Multicast
        "fc00::/7",  # Unique-local
        "fe80::/10",  # Link-local
        "fec0::/10",  # Site-local (deprecated)
    )
)

_IPV4_LITERAL = re.compile(r"^[\d.]+$")

_NOT_FOUND_CODES = frozenset(
    code
    for code in (getattr(socket, name, None) for name in ("EAI_NONAME", "EAI_NODATA"))
    if code is not None
)


class UnsafeReason(str, Enum):
    """Why a URL was rejected."""

    INVALID_URL = "invalid_url"  # unparsable, not https, or has credentials
    PRIVATE_IP = "private_ip"  # literal or resolved address is private/reserved
    DNS_NOTFOUND = "dns_notfound"  # name does not exist
    DNS_ERROR = "dns_error"  # resolver timeout or other transient failure

    @property
    def is_permanent(self) -> bool:
        """Whether retrying later could change the outcome."""
        return self is not UnsafeReason.DNS_ERROR


@dataclass(frozen=True)
class SafeOrigin:
    """URL passed validation; connect only to ``resolved_address``."""

    resolved_address: str
    family: Literal[4, 6]
    safe: Literal[True] = True


@dataclass(frozen=True)
class UnsafeOrigin:
    """URL was rejected."""

    reason: UnsafeReason
    safe: Literal[False] = False


OriginCheck = SafeOrigin | UnsafeOrigin


def _is_private_ipv4(address: IPv4Address) -> bool:
    return any(address in network for network in _BLOCKED_IPV4_NETWORKS)


def is_private_ip(address: str) -> bool:
    """Return True if the address is private, reserved or malformed.

    IPv4 must be strict dotted-decimal (no leading zeros, hex or short
    forms). IPv4-mapped (``::ffff:a.b.c.d``) and IPv4-compatible
    (``::a.b.c.d``) IPv6 addresses are unwrapped and checked as IPv4.
    Malformed input is treated as private.
    """
    try:
        parsed = ip_address(address.strip())
    except ValueError:
        return True

    if isinstance(parsed, IPv4Address):
        return _is_private_ipv4(parsed)

    if any(parsed in network for network in _BLOCKED_IPV6_NETWORKS):
        return True

    if parsed.ipv4_mapped is not None:
        return _is_private_ipv4(parsed.ipv4_mapped)

    # IPv4-compatible (deprecated): ::/96
    if int(parsed) >> 32 == 0:
        return _is_private_ipv4(IPv4Address(int(parsed) & 0xFFFFFFFF))

    return False


def _split(url: str) -> SplitResult | None:
    try:
        parsed = urlsplit(url.strip())
        # Accessing .port validates it
        _ = parsed.port
    except (ValueError, AttributeError):
        return None
    return parsed


def _is_ip_literal(host: str) -> bool:
    return ":" in host or bool(_IPV4_LITERAL.match(host))


def check_url_syntax(url: str) -> UnsafeReason | None:
    """Check everything that can be decided without DNS.

    Returns:
        The rejection reason, or None if the URL may be resolved.
    """
    parsed = _split(url)
    if parsed is None or parsed.scheme != "https" or not parsed.hostname:
        return UnsafeReason.INVALID_URL
    if parsed.username is not None or parsed.password is not None:
        return UnsafeReason.INVALID_URL
    if _is_ip_literal(parsed.hostname) and is_private_ip(parsed.hostname):
        return UnsafeReason.PRIVATE_IP
    return None


def safe_origin(url: str) -> str:
    """Scheme, host and port of a URL, safe to write to logs.

    Paths and query strings can carry tokens, so they never reach logs.
    """
    parsed = _split(url)
    if parsed is None or not parsed.scheme or not parsed.hostname:
        return "[invalid url]"
    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    if parsed.port is not None:
        return f"{parsed.scheme}://{host}:{parsed.port}"
    return f"{parsed.scheme}://{host}"


async def resolve_host(host: str) -> list[tuple[int, str]]:
    """Resolve all A/AAAA records for a host via the system resolver.

    Returns:
        Unique (family, address) pairs in resolver order.

    Raises:
        socket.gaierror: If resolution fails.
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)

    results: list[tuple[int, str]] = []
    for family, _type, _proto, _canonname, sockaddr in infos:
        if family == socket.AF_INET:
            entry = (4, str(sockaddr[0]))
        elif family == socket.AF_INET6:
            entry = (6, str(sockaddr[0]))
        else:
            continue
        if entry not in results:
            results.append(entry)
    return results


class OriginGuard:
    """Validates that a URL points at a public HTTPS origin.

    Example:
        ```python
        guard = OriginGuard()
        result = await guard.check("https://hooks.example.com/km")
        if result.safe:
            connect_to(result.resolved_address)
        ```
    """

    def __init__(
        self,
        resolver: Resolver | None = None,
        dns_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize the guard.

        Args:
            resolver: Async resolver returning (family, address) pairs.
                Defaults to the system resolver.
            dns_timeout_seconds: Resolution timeout, reported as dns_error.
        """
        self._resolver = resolver or resolve_host
        self._dns_timeout = dns_timeout_seconds

    async def check(self, url: str) -> OriginCheck:
        """Validate a URL and resolve the address to connect to.

        Args:
            url: Candidate webhook URL.

        Returns:
            SafeOrigin with the first resolved address, or UnsafeOrigin.
        """
        reason = check_url_syntax(url)
        parsed = _split(url)
        host = parsed.hostname if parsed is not None else None
        if reason is not None or host is None:
            return UnsafeOrigin(reason or UnsafeReason.INVALID_URL)

        # IP literal: already classified as public by check_url_syntax
        if _is_ip_literal(host):
            return SafeOrigin(resolved_address=host, family=6 if ":" in host else 4)

        try:
            results = await asyncio.wait_for(self._resolver(host), timeout=self._dns_timeout)
        except socket.gaierror as e:
            if e.errno in _NOT_FOUND_CODES:
                return UnsafeOrigin(UnsafeReason.DNS_NOTFOUND)
            logger.warning("DNS resolution failed", host=host, error=str(e))
            return UnsafeOrigin(UnsafeReason.DNS_ERROR)
        except (TimeoutError, OSError) as e:
            logger.warning("DNS resolution failed", host=host, error=repr(e))
            return UnsafeOrigin(UnsafeReason.DNS_ERROR)

        if not results:
            return UnsafeOrigin(UnsafeReason.DNS_ERROR)

        # One private answer poisons the whole lookup
        for _family, address in results:
            if is_private_ip(address):
                return UnsafeOrigin(UnsafeReason.PRIVATE_IP)

        family, address = results[0]
        return SafeOrigin(resolved_address=address, family=6 if family == 6 else 4)
