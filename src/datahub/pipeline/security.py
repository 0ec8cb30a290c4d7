"""Outbound URL validation against server-side request forgery.

Gate notifications, webhook hook actions and the webhook adapter all
POST to operator-supplied URLs.  Before any request the URL must use
http(s), must not name a blocked host, and every address its host
resolves to must be public.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urlsplit

from datahub.pipeline.errors import UnsafeUrlError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "metadata",
    "metadata.google.internal",
    "metadata.goog",
    "instance-data",
    "kubernetes.default",
    "kubernetes.default.svc",
})

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),  # "this" network
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # CGNAT
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local, cloud metadata
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("198.18.0.0/15"),
    ipaddress.ip_network("224.0.0.0/4"),  # multicast
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("ff00::/8"),
]


def check_address(address: str) -> None:
    """Raise :class:`UnsafeUrlError` if *address* is in a blocked range.

    IPv4-mapped IPv6 addresses are unwrapped before the check.
    Unparseable addresses are rejected.
    """
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError as exc:
        raise UnsafeUrlError(f"Unparseable IP address: {address!r}") from exc
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    for network in BLOCKED_NETWORKS:
        if ip.version == network.version and ip in network:
            raise UnsafeUrlError(f"Blocked address {address} in {network}")


def check_url_syntax(url: str) -> str:
    """Validate scheme and hostname without DNS.

    Returns:
        The lower-cased hostname.

    Raises:
        UnsafeUrlError: If the scheme or host is not allowed.
    """
    parts = urlsplit(url)
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnsafeUrlError(f"Forbidden scheme: {parts.scheme or '(none)'}")
    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise UnsafeUrlError(f"URL has no host: {url!r}")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost") or host.endswith(".internal"):
        raise UnsafeUrlError(f"Blocked hostname: {host}")
    return host


async def validate_url(url: str, *, allow_private: bool = False) -> None:
    """Validate *url* for an outbound request.

    Args:
        url: Target URL.
        allow_private: Skip address checks (local development only).
            Scheme and hostname rules still apply.

    Raises:
        UnsafeUrlError: If the URL is not safe to call.
    """
    host = check_url_syntax(url)
    if allow_private:
        return
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        pass
    else:
        check_address(host.strip("[]"))
        return

    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(
            host, None, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM
        )
    except socket.gaierror as exc:
        raise UnsafeUrlError(f"DNS resolution failed for {host}: {exc}") from exc
    addresses = {str(info[4][0]) for info in infos}
    if not addresses:
        raise UnsafeUrlError(f"No addresses for {host}")
    for address in addresses:
        check_address(address)
    logger.debug("URL %s validated (%d address(es))", url, len(addresses))
