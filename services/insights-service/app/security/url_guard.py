"""Outbound webhook URL validation (SSRF guard)."""

from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlsplit

from ..domain.errors import InvalidTargetURL

MAX_URL_LENGTH = 2048

ALLOWED_SCHEMES = frozenset({"http", "https"})
BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})
BLOCKED_PREFIXES = ("10.", "192.168.") + tuple(f"172.{octet}." for octet in range(16, 32))
INTERNAL_REASON = "Internal network URLs are not allowed"

# decimal, octal and hex IPv4 spellings such as 2130706433, 127.1 or 0x7f000001
_NUMERIC_HOST = re.compile(r"^(0x[0-9a-f]*|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+)){0,3}$")

Resolver = Callable[..., list[tuple[Any, ...]]]


@dataclass(frozen=True, slots=True)
class UrlVerdict:
    ok: bool
    reason: str | None = None


def _parse_address(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if _NUMERIC_HOST.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def is_internal_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
        or not address.is_global
    )


def validate_webhook_url(url: str | None) -> UrlVerdict:
    """Check ``url`` against the outbound allow/deny policy.

    Only the literal hostname is inspected, including the numeric IPv4
    spellings the system resolver accepts. Names are resolved separately by
    :func:`verify_dispatch_target` right before a dispatch.
    """
    if not url or not isinstance(url, str):
        return UrlVerdict(False, "URL is required")
    if len(url) > MAX_URL_LENGTH:
        return UrlVerdict(False, f"URL is too long (max {MAX_URL_LENGTH} characters)")

    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
        parts.port  # out-of-range ports raise here
    except ValueError:
        return UrlVerdict(False, "Invalid URL format")

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return UrlVerdict(False, "Only HTTP and HTTPS protocols are allowed")
    if not hostname:
        return UrlVerdict(False, "Invalid URL format")

    host = hostname.lower().rstrip(".")
    if host in BLOCKED_HOSTS or host.startswith(BLOCKED_PREFIXES) or ".local" in host:
        return UrlVerdict(False, INTERNAL_REASON)
    address = _parse_address(host)
    if address is not None and is_internal_address(address):
        return UrlVerdict(False, INTERNAL_REASON)
    return UrlVerdict(True)


def verify_dispatch_target(url: str | None, resolver: Resolver = socket.getaddrinfo) -> UrlVerdict:
    """Validate ``url`` and every address its host currently resolves to."""
    verdict = validate_webhook_url(url)
    if not verdict.ok:
        return verdict

    parts = urlsplit(url.strip())  # type: ignore[union-attr]
    port = parts.port or (443 if parts.scheme.lower() == "https" else 80)
    try:
        infos = resolver(parts.hostname, port, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError):
        return UrlVerdict(False, "Webhook host could not be resolved")
    if not infos:
        return UrlVerdict(False, "Webhook host could not be resolved")

    for info in infos:
        sockaddr = info[4]
        try:
            address = ipaddress.ip_address(str(sockaddr[0]).split("%", 1)[0])
        except ValueError:
            return UrlVerdict(False, INTERNAL_REASON)
        if is_internal_address(address):
            return UrlVerdict(False, INTERNAL_REASON)
    return UrlVerdict(True)


def ensure_webhook_url(url: str | None) -> str:
    """Return ``url`` unchanged or raise :class:`InvalidTargetURL`."""
    verdict = validate_webhook_url(url)
    if not verdict.ok:
        raise InvalidTargetURL(verdict.reason or "invalid URL")
    return url  # type: ignore[return-value]
