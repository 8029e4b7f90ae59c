"""Diagnosing the Tailscale path to a peer and managing endpoint bypass routes."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from portshare.netdiag import (
    ADDRESS_FAMILY_IPV4,
    ADDRESS_FAMILY_IPV6,
    ROUTE_DIRECT,
    ActiveBypass,
    BypassRequest,
    EgressCandidate,
    PathStatus,
    PeerPathReport,
    ReprobeRequest,
    ReprobeResult,
    RouteInfo,
    classify_path,
    endpoint_address_family,
    endpoint_ip,
    is_public_endpoint_ip,
    is_suspected_proxy_interface,
    parse_ping_route,
)
from portshare.runner import CommandError, ExecRunner, Runner


class DiagnosisError(Exception):
    """A diagnosis or bypass step failed; carries the partial report when there is one."""

    def __init__(self, message: str, report: PeerPathReport | None = None) -> None:
        super().__init__(message)
        self.report = report


_STEP_ERRORS = (DiagnosisError, CommandError, OSError, ValueError)

_POWERSHELL_PREFIX = (
    "[Console]::OutputEncoding = [System.Text.UTF8Encoding]::new($false); "
    "$OutputEncoding = [System.Text.UTF8Encoding]::new($false); "
)

_DEFAULT_ROUTES_SCRIPT = (
    "$items = @(); "
    "$items += Get-NetRoute -DestinationPrefix '0.0.0.0/0' -ErrorAction SilentlyContinue | Where-Object { $_.NextHop -and $_.NextHop -ne '0.0.0.0' } | ForEach-Object { "
    "$iface = Get-NetIPInterface -InterfaceIndex $_.InterfaceIndex -AddressFamily IPv4 -ErrorAction SilentlyContinue | Select-Object -First 1; "
    "$ip = Get-NetIPAddress -InterfaceIndex $_.InterfaceIndex -AddressFamily IPv4 -ErrorAction SilentlyContinue | Where-Object { $_.IPAddress -notlike '169.254*' } | Select-Object -First 1; "
    "[pscustomobject]@{AddressFamily='IPv4';InterfaceAlias=$_.InterfaceAlias;InterfaceIndex=$_.InterfaceIndex;NextHop=$_.NextHop;RouteMetric=$_.RouteMetric;InterfaceMetric=$iface.InterfaceMetric;InterfaceIP=$ip.IPAddress} "
    "}; "
    "$items += Get-NetRoute -DestinationPrefix '::/0' -ErrorAction SilentlyContinue | Where-Object { $_.NextHop -and $_.NextHop -ne '::' } | ForEach-Object { "
    "$iface = Get-NetIPInterface -InterfaceIndex $_.InterfaceIndex -AddressFamily IPv6 -ErrorAction SilentlyContinue | Select-Object -First 1; "
    "$ip = Get-NetIPAddress -InterfaceIndex $_.InterfaceIndex -AddressFamily IPv6 -ErrorAction SilentlyContinue | Where-Object { $_.IPAddress -notlike 'fe80*' -and $_.AddressState -eq 'Preferred' } | Select-Object -First 1; "
    "[pscustomobject]@{AddressFamily='IPv6';InterfaceAlias=$_.InterfaceAlias;InterfaceIndex=$_.InterfaceIndex;NextHop=$_.NextHop;RouteMetric=$_.RouteMetric;InterfaceMetric=$iface.InterfaceMetric;InterfaceIP=$ip.IPAddress} "
    "}; "
    "$items | ConvertTo-Json -Compress"
)

_PATH_MESSAGES = {
    PathStatus.DIRECT_NORMAL: "Tailscale 直连正常",
    PathStatus.DIRECT_TUN_OPTIMIZED: "Tailscale 低延迟直连，TUN 已接管但当前路径可用",
    PathStatus.DIRECT_PROXY: "Tailscale 已直连，但疑似被代理/TUN 接管",
    PathStatus.DERP: "Tailscale 当前走中继",
    PathStatus.FAILED: "网络路径检测失败",
}


def _path_status_message(status: PathStatus) -> str:
    return _PATH_MESSAGES.get(status, "网络路径未知")


def _text(raw: bytes | str) -> str:
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw


def _load_one_or_many(raw: bytes | str) -> list[dict[str, Any]]:
    text = _text(raw).strip()
    if not text:
        return []
    payload = json.loads(text)
    items = payload if isinstance(payload, list) else [payload]
    result = []
    for item in items:
        if item is None:
            item = {}
        if not isinstance(item, dict):
            raise ValueError(f"json: cannot unmarshal {type(item).__name__} into object")
        result.append(item)
    return result


def _str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    return "" if value is None else str(value)


def _int(obj: dict[str, Any], key: str) -> int:
    value = obj.get(key)
    return 0 if value is None else int(value)


def _normalized_address_family(*values: str) -> str:
    for value in values:
        family = value.strip()
        if family in (ADDRESS_FAMILY_IPV4, ADDRESS_FAMILY_IPV6):
            return family
        detected = endpoint_address_family(family)
        if detected:
            return detected
    return ""


def _parse_route_infos(raw: bytes | str) -> list[RouteInfo]:
    routes = []
    for item in _load_one_or_many(raw):
        next_hop = _str(item, "NextHop")
        ip_address = _str(item, "IPAddress")
        routes.append(
            RouteInfo(
                interface_alias=_str(item, "InterfaceAlias"),
                interface_index=_int(item, "InterfaceIndex"),
                next_hop=next_hop,
                ip_address=ip_address,
                address_family=_normalized_address_family(
                    _str(item, "AddressFamily"), next_hop, ip_address
                ),
            )
        )
    return routes


def _parse_egress_candidates(raw: bytes | str) -> list[EgressCandidate]:
    candidates = []
    for item in _load_one_or_many(raw):
        alias = _str(item, "InterfaceAlias").strip()
        if not alias or alias.lower() == "tailscale" or "loopback" in alias.lower():
            continue
        next_hop = _str(item, "NextHop").strip()
        if next_hop in ("", "0.0.0.0", "::"):
            continue
        interface_ip = _str(item, "InterfaceIP")
        candidates.append(
            EgressCandidate(
                interface_alias=alias,
                interface_index=_int(item, "InterfaceIndex"),
                interface_ip=interface_ip,
                next_hop=next_hop,
                address_family=_normalized_address_family(
                    _str(item, "AddressFamily"), next_hop, interface_ip
                ),
                route_metric=_int(item, "RouteMetric"),
                interface_metric=_int(item, "InterfaceMetric"),
                suspected_proxy=is_suspected_proxy_interface(alias),
            )
        )
    return candidates


def _rank_egress_candidates(
    candidates: list[EgressCandidate], endpoint: str
) -> list[EgressCandidate]:
    family = endpoint_address_family(endpoint)

    def sort_key(candidate: EgressCandidate) -> tuple[int, bool, int, str]:
        family_rank = 0 if not family or candidate.address_family == family else 1
        return (
            family_rank,
            candidate.suspected_proxy,
            candidate.route_metric + candidate.interface_metric,
            candidate.interface_alias,
        )

    ranked = [replace(c, recommended=False) for c in sorted(candidates, key=sort_key)]
    for candidate in ranked:
        if family and candidate.address_family != family:
            continue
        if not candidate.suspected_proxy:
            candidate.recommended = True
            break
    return ranked


def _strip_netcheck_warning(text: str) -> str:
    index = text.find("\n# Warning:")
    return text[:index] if index != -1 else text


def _destination_prefix(endpoint: str) -> str:
    if endpoint_address_family(endpoint) == ADDRESS_FAMILY_IPV6:
        return endpoint + "/128"
    return endpoint + "/32"


def _find_route_script(endpoint: str) -> str:
    return (
        f"Find-NetRoute -RemoteIPAddress '{endpoint}' | Select-Object -First 1 "
        "InterfaceAlias,InterfaceIndex,NextHop,RouteMetric,InterfaceMetric,IPAddress,"
        f"@{{Name='AddressFamily';Expression={{if ('{endpoint}' -like '*:*') {{'IPv6'}} else {{'IPv4'}}}}}} "
        "| ConvertTo-Json -Compress"
    )


def _new_route_script(request: BypassRequest) -> str:
    return (
        f"New-NetRoute -DestinationPrefix '{_destination_prefix(request.endpoint_ip)}' "
        f"-InterfaceIndex {request.candidate.interface_index} "
        f"-NextHop '{request.candidate.next_hop}' -PolicyStore ActiveStore"
    )


def _remove_route_script(bypass: ActiveBypass) -> str:
    return (
        f"Remove-NetRoute -DestinationPrefix '{_destination_prefix(bypass.endpoint_ip)}' "
        f"-InterfaceIndex {bypass.interface_index} "
        f"-NextHop '{bypass.next_hop}' -Confirm:$false"
    )


def _validate_bypass_request(request: BypassRequest) -> None:
    if not is_public_endpoint_ip(request.endpoint_ip):
        raise DiagnosisError(f"endpoint IP 不是可绕过的公网地址：{request.endpoint_ip}")
    if request.candidate.interface_index <= 0:
        raise DiagnosisError("缺少公网出口接口")
    if not request.candidate.next_hop.strip():
        raise DiagnosisError("缺少公网出口网关")
    family = endpoint_address_family(request.endpoint_ip)
    if request.candidate.address_family and request.candidate.address_family != family:
        raise DiagnosisError(
            f"公网出口地址族不匹配，endpoint 为 {family}，出口为 {request.candidate.address_family}"
        )


def _validate_active_bypass(bypass: ActiveBypass) -> None:
    if not is_public_endpoint_ip(bypass.endpoint_ip):
        raise DiagnosisError(f"endpoint IP 不是可撤销的公网地址：{bypass.endpoint_ip}")
    if bypass.interface_index <= 0:
        raise DiagnosisError("缺少要撤销的接口")
    if not bypass.next_hop.strip():
        raise DiagnosisError("缺少要撤销的网关")


class Service:
    """Runs tailscale and PowerShell commands to diagnose and steer the peer path."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner: Runner = runner if runner is not None else ExecRunner()

    def diagnose_peer(self, peer_tailscale_ip: str) -> PeerPathReport:
        """Report the route to a peer; raises DiagnosisError carrying the failed report."""
        peer = peer_tailscale_ip.strip()
        report = PeerPathReport(peer_tailscale_ip=peer, status=PathStatus.UNKNOWN)
        if not peer:
            report.status = PathStatus.FAILED
            report.message = "缺少对端 Tailscale IP"
            raise DiagnosisError(report.message, report)

        try:
            raw = self._runner.run("tailscale", "ping", "--c", "10", peer)
        except (CommandError, OSError) as exc:
            report.status = PathStatus.FAILED
            report.message = f"Tailscale 路径检测失败：{exc}"
            raise DiagnosisError(report.message, report) from exc

        route_type, endpoint, latency = parse_ping_route(raw)
        report.route_type = route_type
        report.endpoint = endpoint
        report.endpoint_ip = endpoint_ip(endpoint)
        report.latency = latency

        candidates: list[EgressCandidate] = []
        candidates_error: Exception | None = None
        try:
            candidates = self._egress_candidates(report.endpoint_ip)
        except _STEP_ERRORS as exc:
            candidates_error = exc

        if route_type != ROUTE_DIRECT:
            report.status = classify_path(route_type, latency, RouteInfo())
            report.candidates = candidates
            report.message = _path_status_message(report.status)
            if candidates_error is not None:
                report.message += f"；读取公网出口失败：{candidates_error}"
            return report

        try:
            current = self._current_route(report.endpoint_ip)
        except _STEP_ERRORS as exc:
            report.status = PathStatus.FAILED
            report.message = f"读取当前出口失败：{exc}"
            raise DiagnosisError(report.message, report) from exc
        if candidates_error is not None:
            report.status = PathStatus.FAILED
            report.message = f"读取公网出口失败：{candidates_error}"
            raise DiagnosisError(report.message, report) from candidates_error

        report.current_route = current
        report.candidates = candidates
        report.status = classify_path(route_type, latency, current)
        report.message = _path_status_message(report.status)
        return report

    def apply_bypass(self, request: BypassRequest) -> ActiveBypass:
        """Add a host route to the endpoint through the chosen egress and verify it."""
        _validate_bypass_request(request)
        self._run_powershell(_new_route_script(request))
        active = ActiveBypass(
            peer_tailscale_ip=request.peer_tailscale_ip,
            endpoint_ip=request.endpoint_ip,
            address_family=endpoint_address_family(request.endpoint_ip),
            interface_index=request.candidate.interface_index,
            next_hop=request.candidate.next_hop,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self._verify_bypass(request)
        except DiagnosisError:
            try:
                self.clear_bypass(active)
            except _STEP_ERRORS:
                pass
            raise
        return active

    def clear_bypass(self, bypass: ActiveBypass) -> None:
        """Remove a host route recorded by apply_bypass."""
        _validate_active_bypass(bypass)
        self._run_powershell(_remove_route_script(bypass))

    def reprobe(self, request: ReprobeRequest) -> ReprobeResult:
        """Ask tailscale to re-run STUN and/or rebind, recording any failures."""
        result = ReprobeResult()
        if request.restun:
            result.restun_attempted = True
            try:
                self._runner.run("tailscale", "debug", "restun")
            except (CommandError, OSError) as exc:
                result.restun_error = str(exc)
        if request.rebind:
            result.rebind_attempted = True
            try:
                self._runner.run("tailscale", "debug", "rebind")
            except (CommandError, OSError) as exc:
                result.rebind_error = str(exc)
        return result

    def _run_powershell(self, script: str) -> bytes:
        return self._runner.run(
            "powershell.exe",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            _POWERSHELL_PREFIX + script,
        )

    def _current_route(self, endpoint: str) -> RouteInfo:
        if not endpoint:
            raise DiagnosisError("缺少 endpoint IP")
        routes = _parse_route_infos(self._run_powershell(_find_route_script(endpoint)))
        if not routes:
            raise DiagnosisError(f"没有找到到 {endpoint} 的路由")
        return routes[0]

    def _egress_candidates(self, endpoint: str) -> list[EgressCandidate]:
        candidates = _parse_egress_candidates(self._run_powershell(_DEFAULT_ROUTES_SCRIPT))
        self._enrich_public_mappings(candidates)
        return _rank_egress_candidates(candidates, endpoint)

    def _enrich_public_mappings(self, candidates: list[EgressCandidate]) -> None:
        for candidate in candidates:
            if not candidate.interface_ip.strip():
                continue
            try:
                report = self._netcheck(candidate.interface_ip)
            except (CommandError, OSError, ValueError) as exc:
                candidate.netcheck_error = str(exc)
                continue
            candidate.public_ipv4 = _str(report, "GlobalV4")
            candidate.public_ipv6 = _str(report, "GlobalV6")
            candidate.udp = bool(report.get("UDP") or False)

    def _netcheck(self, bind_address: str) -> dict[str, Any]:
        raw = self._runner.run(
            "tailscale", "netcheck", "--format", "json", "--bind-address", bind_address
        )
        payload = json.loads(_strip_netcheck_warning(_text(raw)).strip())
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValueError("json: netcheck report must be an object")
        return payload

    def _verify_bypass(self, request: BypassRequest) -> None:
        try:
            self._runner.run("tailscale", "debug", "restun")
        except (CommandError, OSError):
            pass
        try:
            raw = self._runner.run("tailscale", "ping", "--c", "10", request.peer_tailscale_ip)
        except (CommandError, OSError) as exc:
            raise DiagnosisError(f"验证 Tailscale 直连失败：{exc}") from exc
        route_type, endpoint, latency = parse_ping_route(raw)
        if route_type != ROUTE_DIRECT:
            raise DiagnosisError(f"所选出口未建立直连，当前为 {route_type} {endpoint} {latency}")
        found_ip = endpoint_ip(endpoint)
        if found_ip != request.endpoint_ip:
            raise DiagnosisError(f"Tailscale endpoint 已变化为 {endpoint}，请重新检测网络路径")
        try:
            current = self._current_route(found_ip)
        except _STEP_ERRORS as exc:
            raise DiagnosisError(f"验证当前出口失败：{exc}") from exc
        if current.interface_index != request.candidate.interface_index:
            raise DiagnosisError(f"所选出口未生效，当前仍走 {current.interface_alias}")