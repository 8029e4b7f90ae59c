"""Readiness checks and peer route detection through the tailscale CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from portshare.netdiag import split_host_port
from portshare.runner import CommandError, ExecRunner, Runner
from portshare.tailscale_status import TailscaleStatus, parse_status


class DiagnosticCode(str, Enum):
    OK = "ok"
    TAILSCALE_UNAVAILABLE = "tailscale.unavailable"
    TAILSCALE_STOPPED = "tailscale.stopped"
    NO_TAILSCALE_IP = "tailscale.no_ip"
    PEER_UNREACHABLE = "peer.unreachable"
    DNS_NOT_ACCEPTED = "dns.not_accepted"


@dataclass(frozen=True)
class ReadyReport:
    code: DiagnosticCode
    message: str
    ready: bool = False
    fix_command: str = ""
    status: TailscaleStatus = field(default_factory=TailscaleStatus)


class RouteType(str, Enum):
    UNKNOWN = "unknown"
    DIRECT = "direct"
    DERP = "derp"
    PEER_RELAY = "peer-relay"


@dataclass(frozen=True)
class PeerRoute:
    route_type: RouteType = RouteType.UNKNOWN
    via: str = ""
    latency: str = ""
    raw: str = ""


def _route_type_for_via(via: str) -> RouteType:
    if via.startswith("DERP("):
        return RouteType.DERP
    if via.startswith("peer-relay("):
        return RouteType.PEER_RELAY
    if via in ("ICMP", "TSMP"):
        return RouteType.UNKNOWN
    if _is_direct_endpoint(via):
        return RouteType.DIRECT
    return RouteType.UNKNOWN


def _is_direct_endpoint(via: str) -> bool:
    try:
        host, port = split_host_port(via)
    except ValueError:
        return False
    return bool(host) and bool(port)


def _extract_latency(line: str) -> str:
    index = line.rfind(" in ")
    if index == -1:
        return ""
    latency = line[index + len(" in ") :].strip()
    fields = latency.split()
    return fields[0] if fields else latency


def _parse_ping_line(line: str) -> PeerRoute | None:
    line = line.strip()
    marker = " via "
    index = line.find(marker)
    if index == -1:
        return None
    rest = line[index + len(marker) :]
    end = rest.find(" in ")
    if end == -1:
        return None
    via = rest[:end].strip()
    if not via:
        return None
    route_type = _route_type_for_via(via)
    if route_type is RouteType.UNKNOWN:
        return None
    return PeerRoute(route_type=route_type, via=via, latency=_extract_latency(line))


class Client:
    """Queries the local tailscale CLI."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner: Runner = runner if runner is not None else ExecRunner()

    def check_ready(self) -> ReadyReport:
        try:
            raw = self._runner.run("tailscale", "status", "--json")
        except (CommandError, OSError) as exc:
            return ReadyReport(
                code=DiagnosticCode.TAILSCALE_UNAVAILABLE,
                message=f"未能运行 tailscale 命令，请确认 Tailscale 已安装并在 PATH 中：{exc}",
            )
        try:
            status = parse_status(raw)
        except ValueError as exc:
            return ReadyReport(
                code=DiagnosticCode.TAILSCALE_UNAVAILABLE,
                message=f"无法读取 Tailscale 状态，请确认 tailscale status --json 可正常输出：{exc}",
            )
        if status.backend_state != "Running":
            return ReadyReport(
                code=DiagnosticCode.TAILSCALE_STOPPED,
                message="Tailscale 当前未运行，请先启动或登录 Tailscale。",
                fix_command="tailscale up",
                status=status,
            )
        if not status.local_ipv4:
            return ReadyReport(
                code=DiagnosticCode.NO_TAILSCALE_IP,
                message="Tailscale 未返回本机 IPv4 地址，请检查网络连接或重新登录。",
                status=status,
            )
        if not status.magic_dns_enabled:
            return ReadyReport(
                code=DiagnosticCode.DNS_NOT_ACCEPTED,
                message="Tailscale DNS 未启用，请接受 Tailscale DNS 设置后重试。",
                fix_command="tailscale set --accept-dns=true",
                status=status,
            )
        return ReadyReport(
            code=DiagnosticCode.OK,
            message="Tailscale 已就绪。",
            ready=True,
            status=status,
        )

    def ping_peer(self, peer: str) -> PeerRoute:
        """Ping a peer and report the best route seen: direct, then peer relay, then DERP."""
        raw = self._runner.run("tailscale", "ping", peer)
        output = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        peer_relay: PeerRoute | None = None
        derp: PeerRoute | None = None
        for line in output.split("\n"):
            candidate = _parse_ping_line(line)
            if candidate is None:
                continue
            if candidate.route_type is RouteType.DIRECT:
                return PeerRoute(candidate.route_type, candidate.via, candidate.latency, output)
            if candidate.route_type is RouteType.PEER_RELAY and peer_relay is None:
                peer_relay = candidate
            elif candidate.route_type is RouteType.DERP and derp is None:
                derp = candidate
        best = peer_relay or derp
        if best is not None:
            return PeerRoute(best.route_type, best.via, best.latency, output)
        return PeerRoute(raw=output)