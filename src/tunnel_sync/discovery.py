"""Live egress IP discovery for a tunnel."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any

from .providers import Providers

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when a tunnel's connections cannot be fetched."""

    def __init__(self, tunnel_id: str, message: str) -> None:
        self.tunnel_id = tunnel_id
        super().__init__(message)


def parse_ipv4(value: Any) -> str | None:
    """Return the dotted-quad form of value, or None if it is not an IPv4 address."""
    if not isinstance(value, str):
        return None
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        return None


async def discover_ips(providers: Providers, tunnel_id: str) -> frozenset[str]:
    """Collect the distinct IPv4 origin addresses of a tunnel's active connections.

    Connections without a usable origin address are skipped. An empty result
    means the tunnel is down.

    Raises:
        DiscoveryError: If the provider call fails.
    """
    ips: set[str] = set()
    try:
        async for connector in providers.list_connections(tunnel_id):
            for conn in connector.conns or []:
                ip = parse_ipv4(conn.origin_ip)
                if ip is not None:
                    ips.add(ip)
    except Exception as e:
        raise DiscoveryError(
            tunnel_id, f"Failed to list connections for tunnel {tunnel_id}: {e}"
        ) from e

    logger.debug(
        "Discovered tunnel connection IPs",
        extra={"tunnel_id": tunnel_id, "ips": sorted(ips)},
    )
    return frozenset(ips)
