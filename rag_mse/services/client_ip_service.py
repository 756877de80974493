"""Client identification for rate limiting, honouring trusted proxies only."""

from __future__ import annotations

import hashlib
import ipaddress
from functools import lru_cache

from starlette.requests import Request

from rag_mse.core.config import settings

FALLBACK_PREFIX = "fallback:"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _parse_ip(value: str | None) -> IPAddress | None:
    if not value:
        return None
    try:
        ip_obj = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        return ip_obj.ipv4_mapped
    return ip_obj


@lru_cache(maxsize=8)
def _parse_trusted(entries: tuple[str, ...]) -> tuple[IPNetwork, ...]:
    networks: list[IPNetwork] = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            continue
    return tuple(networks)


def is_trusted_proxy(peer: str | None, trusted: list[str] | None = None) -> bool:
    """True if the peer address falls in one of the trusted CIDRs/addresses."""
    ip_obj = _parse_ip(peer)
    if ip_obj is None:
        return False
    entries = tuple(trusted if trusted is not None else settings.trusted_proxies_list)
    return any(ip_obj.version == net.version and ip_obj in net for net in _parse_trusted(entries))


def fallback_fingerprint(request: Request) -> str:
    """Coarse, namespaced identifier for requests without any peer address."""
    user_agent = request.headers.get("user-agent", "")
    accept_language = request.headers.get("accept-language", "")
    digest = hashlib.sha256(f"{user_agent}|{accept_language}".encode("utf-8")).hexdigest()
    return f"{FALLBACK_PREFIX}{digest[:16]}"


def get_client_key(request: Request) -> str:
    """
    Resolve the rate limiting key for a request.

    X-Forwarded-For (first hop) and X-Real-IP are only read when the direct
    peer is a trusted proxy. Otherwise the peer address is used, and with no
    peer at all a fallback fingerprint.
    """
    peer = request.client.host if request.client else None

    if peer and is_trusted_proxy(peer):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = next((part.strip() for part in forwarded.split(",") if part.strip()), None)
            if first_hop:
                return first_hop
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    if peer:
        return peer

    return fallback_fingerprint(request)


def mask_ip(ip_address: str | None) -> str | None:
    """Mask IP for logs to avoid storing raw PII."""
    ip_obj = _parse_ip(ip_address)
    if ip_obj is None:
        return None
    if isinstance(ip_obj, ipaddress.IPv4Address):
        network = ipaddress.ip_network(f"{ip_obj}/24", strict=False)
        return f"{network.network_address}/24"
    network = ipaddress.ip_network(f"{ip_obj}/64", strict=False)
    return f"{network.network_address}/64"
