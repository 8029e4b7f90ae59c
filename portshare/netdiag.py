"""Peer path types and parsing of Tailscale ping output and IP addresses."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

ROUTE_UNKNOWN = "unknown"
ROUTE_DIRECT = "direct"
ROUTE_DERP = "derp"
ROUTE_PEER_RELAY = "peer-relay"

ADDRESS_FAMILY_IPV4 = "IPv4"
ADDRESS_FAMILY_IPV6 = "IPv6"

_OPTIMIZED_TUN_DIRECT_LATENCY_NS = 50_000_000

_PROXY_MARKERS = ("meta", "clash", "mihomo", "vortex", "tun", "proxy", "sing-box", "nekoray")

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)
_CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")
_BENCHMARK_NETWORK = ipaddress.ip_network("198.18.0.0/15")

_DURATION_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class PathStatus(str, Enum):
    UNKNOWN = "unknown"
    DIRECT_NORMAL = "direct-normal"
    DIRECT_PROXY = "direct-proxy"
    DIRECT_TUN_OPTIMIZED = "direct-tun-optimized"
    DERP = "derp"
    FAILED = "failed"


@dataclass
class RouteInfo:
    interface_alias: str = ""
    interface_index: int = 0
    next_hop: str = ""
    ip_address: str = ""
    address_family: str = ""


@dataclass
class EgressCandidate:
    interface_alias: str = ""
    interface_index: int = 0
    interface_ip: str = ""
    next_hop: str = ""
    address_family: str = ""
    public_ipv4: str = ""
    public_ipv6: str = ""
    udp: bool = False
    netcheck_error: str = ""
    route_metric: int = 0
    interface_metric: int = 0
    suspected_proxy: bool = False
    recommended: bool = False


@dataclass
class PeerPathReport:
    peer_tailscale_ip: str = ""
    status: PathStatus = PathStatus.UNKNOWN
    route_type: str = ""
    endpoint: str = ""
    endpoint_ip: str = ""
    latency: str = ""
    current_route: RouteInfo = field(default_factory=RouteInfo)
    candidates: list[EgressCandidate] = field(default_factory=list)
    message: str = ""


@dataclass
class BypassRequest:
    peer_tailscale_ip: str = ""
    endpoint_ip: str = ""
    candidate: EgressCandidate = field(default_factory=EgressCandidate)


@dataclass
class ActiveBypass:
    peer_tailscale_ip: str = ""
    endpoint_ip: str = ""
    address_family: str = ""
    interface_index: int = 0
    next_hop: str = ""
    created_at: datetime | None = None


@dataclass
class ReprobeRequest:
    restun: bool = False
    rebind: bool = False


@dataclass
class ReprobeResult:
    restun_attempted: bool = False
    rebind_attempted: bool = False
    restun_error: str = ""
    rebind_error: str = ""


def _parse_ip(text: str) -> IPAddress | None:
    """Parse a bare IP address; IPv4-mapped IPv6 addresses come back as IPv4."""
    if not text or "%" in text:
        return None
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def split_host_port(hostport: str) -> tuple[str, str]:
    """Split "host:port" or "[host]:port" into host and port, raising ValueError."""
    last_colon = hostport.rfind(":")
    if last_colon < 0:
        raise ValueError(f"address {hostport}: missing port in address")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        if end + 1 == len(hostport):
            raise ValueError(f"address {hostport}: missing port in address")
        if end + 1 != last_colon:
            if hostport[end + 1] == ":":
                raise ValueError(f"address {hostport}: too many colons in address")
            raise ValueError(f"address {hostport}: missing port in address")
        host = hostport[1:end]
        open_from, close_from = 1, end + 1
    else:
        host = hostport[:last_colon]
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")
        open_from = close_from = 0
    if "[" in hostport[open_from:]:
        raise ValueError(f"address {hostport}: unexpected '[' in address")
    if "]" in hostport[close_from:]:
        raise ValueError(f"address {hostport}: unexpected ']' in address")
    return host, hostport[last_colon + 1 :]


def _parse_ping_line(line: str) -> tuple[str, str, str] | None:
    line = line.strip()
    via_marker = " via "
    via_index = line.find(via_marker)
    if via_index == -1:
        return None
    rest = line[via_index + len(via_marker) :]
    in_index = rest.find(" in ")
    if in_index == -1:
        return None
    endpoint = rest[:in_index].strip()
    fields = rest[in_index + len(" in ") :].split()
    if not fields:
        return None
    latency = fields[0]
    if endpoint.startswith("DERP("):
        return ROUTE_DERP, endpoint, latency
    if endpoint.startswith("peer-relay("):
        return ROUTE_PEER_RELAY, endpoint, latency
    if endpoint_ip(endpoint):
        return ROUTE_DIRECT, endpoint, latency
    return ROUTE_UNKNOWN, endpoint, latency


def parse_ping_route(raw: bytes | str) -> tuple[str, str, str]:
    """Return (route type, endpoint, latency), preferring a direct line over relays."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    relay: tuple[str, str, str] | None = None
    for line in text.split("\n"):
        parsed = _parse_ping_line(line)
        if parsed is None:
            continue
        if parsed[0] == ROUTE_DIRECT:
            return parsed
        if relay is None:
            relay = parsed
    if relay is not None:
        return relay
    return ROUTE_UNKNOWN, "", ""


def endpoint_ip(endpoint: str) -> str:
    """The IP address of a "host:port" endpoint, or "" when there is none."""
    try:
        host, _ = split_host_port(endpoint.strip())
    except ValueError:
        return ""
    ip = _parse_ip(host)
    return str(ip) if ip is not None else ""


def endpoint_address_family(value: str) -> str:
    ip = _parse_ip(value.strip())
    if ip is None:
        return ""
    if isinstance(ip, ipaddress.IPv4Address):
        return ADDRESS_FAMILY_IPV4
    return ADDRESS_FAMILY_IPV6


def _is_special(ip: IPAddress) -> bool:
    return (
        ip.is_unspecified
        or ip.is_loopback
        or ip.is_multicast
        or ip.is_link_local
        or any(ip in network for network in _PRIVATE_NETWORKS)
    )


def is_public_ipv4(value: str) -> bool:
    ip = _parse_ip(value.strip())
    if not isinstance(ip, ipaddress.IPv4Address):
        return False
    if _is_special(ip):
        return False
    return ip not in _CGNAT_NETWORK and ip not in _BENCHMARK_NETWORK


def is_public_endpoint_ip(value: str) -> bool:
    ip = _parse_ip(value.strip())
    if ip is None:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return is_public_ipv4(value)
    return not _is_special(ip)


def is_suspected_proxy_interface(alias: str) -> bool:
    alias = alias.strip().lower()
    if not alias:
        return False
    return any(marker in alias for marker in _PROXY_MARKERS)


def _parse_duration_ns(text: str) -> int | None:
    """Parse a duration such as "15ms" or "1m30s" into nanoseconds."""
    sign = 1
    if text and text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return 0
    if not text:
        return None
    total = Decimal(0)
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            return None
        try:
            total += Decimal(match.group(1)) * _DURATION_UNITS_NS[match.group(2)]
        except InvalidOperation:
            return None
        position = match.end()
    return sign * int(total)


def _is_optimized_direct_latency(latency: str) -> bool:
    duration = _parse_duration_ns(latency.strip())
    if duration is None or duration <= 0:
        return False
    return duration <= _OPTIMIZED_TUN_DIRECT_LATENCY_NS


def classify_path(route_type: str, latency: str, current: RouteInfo) -> PathStatus:
    if route_type == ROUTE_DIRECT:
        if is_suspected_proxy_interface(current.interface_alias):
            if _is_optimized_direct_latency(latency):
                return PathStatus.DIRECT_TUN_OPTIMIZED
            return PathStatus.DIRECT_PROXY
        return PathStatus.DIRECT_NORMAL
    if route_type in (ROUTE_DERP, ROUTE_PEER_RELAY):
        return PathStatus.DERP
    return PathStatus.UNKNOWN