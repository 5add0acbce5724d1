"""
auth/network.py -- Private-network (Tailscale) access gate for staff surfaces.

The gate answers one question: does the caller's network origin fall inside
the configured trusted subnets? It knows nothing about identity. Staff routes
require BOTH this gate and the admin role; neither substitutes for the other.

Client IP resolution:
  The service sits behind one or more proxies, so the transport peer is
  usually the proxy. Headers are consulted in the configured precedence order
  (default: X-Forwarded-For first hop, X-Real-IP, CF-Connecting-IP,
  True-Client-IP, Fastly-Client-IP) and the first value that parses as an IP
  address wins. The transport peer is the fallback. Unparseable values are
  skipped, never trusted.

Modes (per deployment):
  NETWORK_GATE_ENABLED=false       -> gate is a no-op, every IP allowed.
  enabled, REQUIRE_PRIVATE_NETWORK=false
                                   -> monitor mode: off-network access is
                                      allowed but logged as a warning.
  enabled and required             -> enforced: only trusted-subnet IPs pass.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from auth.models import AuthorizationDecision
from core.config import Settings

logger = logging.getLogger("sharedthread.auth.network")


@dataclass(frozen=True)
class NetworkStatus:
    client_ip: str | None
    in_trusted_network: bool
    enabled: bool
    enforced: bool
    subnets: tuple[str, ...]


def _parse_ip(value: str | None) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if not value:
        return None
    candidate = value.strip()
    # "[::1]:443" / "1.2.3.4:80" forms some proxies emit
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1 : candidate.index("]")]
    elif candidate.count(":") == 1 and "." in candidate:
        candidate = candidate.split(":", 1)[0]
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        return None


def resolve_client_ip(
    headers: Mapping[str, str],
    peer: str | None,
    precedence: list[str],
) -> str | None:
    """Return the caller's IP per header precedence, falling back to the peer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in precedence:
        raw = lowered.get(name)
        if not raw:
            continue
        first = raw.split(",")[0] if name == "x-forwarded-for" else raw
        ip = _parse_ip(first)
        if ip is not None:
            return str(ip)
    ip = _parse_ip(peer)
    return str(ip) if ip is not None else None


class NetworkAccessGate:
    def __init__(self, settings: Settings) -> None:
        self.enabled = settings.network_gate_enabled
        self.require_membership = settings.require_private_network
        self.precedence = list(settings.forwarded_ip_headers)
        self._networks = [ipaddress.ip_network(s, strict=False) for s in settings.trusted_subnets]

    @property
    def enforced(self) -> bool:
        return self.enabled and self.require_membership

    @property
    def subnets(self) -> tuple[str, ...]:
        return tuple(str(n) for n in self._networks)

    def resolve(self, headers: Mapping[str, str], peer: str | None) -> str | None:
        return resolve_client_ip(headers, peer, self.precedence)

    def in_trusted_network(self, ip: str | None) -> bool:
        addr = _parse_ip(ip)
        if addr is None:
            return False
        if addr.version == 6 and addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        return any(addr.version == net.version and addr in net for net in self._networks)

    def check(self, ip: str | None) -> AuthorizationDecision:
        if not self.enabled:
            return AuthorizationDecision(True, "gate_disabled")
        inside = self.in_trusted_network(ip)
        if inside:
            return AuthorizationDecision(True, "in_trusted_network")
        if not self.require_membership:
            logger.warning("Off-network staff access allowed (monitor mode) ip=%s", ip)
            return AuthorizationDecision(True, "gate_not_enforced")
        if _parse_ip(ip) is None:
            return AuthorizationDecision(False, "ip_unresolved")
        return AuthorizationDecision(False, "outside_trusted_network")

    def status(self, ip: str | None) -> NetworkStatus:
        return NetworkStatus(
            client_ip=ip,
            in_trusted_network=self.in_trusted_network(ip),
            enabled=self.enabled,
            enforced=self.enforced,
            subnets=self.subnets,
        )
