"""Planning which loopback-only listeners should be bridged onto the tailnet address."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Iterable

_WILDCARD_ADDRESSES = ("0.0.0.0", "::")
_LOOPBACK_TARGET = "127.0.0.1"


@dataclass(frozen=True)
class ListeningPort:
    address: str = ""
    port: int = 0


@dataclass
class PlanInput:
    local_tailscale_ip: str = ""
    allowed_peer_ips: list[str] = field(default_factory=list)
    listeners: list[ListeningPort] = field(default_factory=list)


@dataclass
class BridgePlan:
    port: int = 0
    listen_address: str = ""
    target_address: str = ""
    allowed_peer_ips: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Conflict:
    port: int


@dataclass
class PlanResult:
    bridges: list[BridgePlan] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)


def join_host_port(host: str, port: int) -> str:
    """Format host and port as "host:port", bracketing IPv6 hosts."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def normalize_allowed_peer_ips(values: Iterable[str] | None) -> list[str]:
    """Trimmed, de-duplicated and sorted peer IPs, without empty entries."""
    seen: set[str] = set()
    for value in values or ():
        value = value.strip()
        if value:
            seen.add(value)
    return sorted(seen)


def _is_loopback_address(address: str) -> bool:
    text = address.strip("[]")
    if not text or "%" in text:
        return False
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped.is_loopback
    return ip.is_loopback


def _has_native_reachable_listener(addresses: list[str], local_ip: str) -> bool:
    return any(
        address.strip() in _WILDCARD_ADDRESSES or address.strip() == local_ip
        for address in addresses
    )


def build_plan_result(plan_input: PlanInput) -> PlanResult:
    """Bridges for ports that listen only on loopback, and ports that also listen natively."""
    local_ip = plan_input.local_tailscale_ip.strip()
    allowed = normalize_allowed_peer_ips(plan_input.allowed_peer_ips)
    if not local_ip or not allowed:
        return PlanResult()

    by_port: dict[int, list[str]] = {}
    for listener in plan_input.listeners:
        if not 0 < listener.port <= 65535:
            continue
        address = listener.address.strip()
        if not address:
            continue
        by_port.setdefault(listener.port, []).append(address)

    result = PlanResult()
    for port in sorted(by_port):
        addresses = by_port[port]
        has_loopback = any(_is_loopback_address(address) for address in addresses)
        has_native = _has_native_reachable_listener(addresses, local_ip)
        if has_loopback and has_native:
            result.conflicts.append(Conflict(port=port))
        if not has_loopback or has_native:
            continue
        result.bridges.append(
            BridgePlan(
                port=port,
                listen_address=join_host_port(local_ip, port),
                target_address=join_host_port(_LOOPBACK_TARGET, port),
                allowed_peer_ips=list(allowed),
            )
        )
    return result


def build_plan(plan_input: PlanInput) -> list[BridgePlan]:
    """Only the bridge plans of build_plan_result."""
    return build_plan_result(plan_input).bridges