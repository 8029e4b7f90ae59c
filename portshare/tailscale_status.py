"""Parsing of `tailscale status --json` output."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TailscaleStatus:
    backend_state: str = ""
    local_ipv4: str = ""
    self_host_name: str = ""
    self_dns_name: str = ""
    magic_dns_enabled: bool = False
    magic_dns_suffix: str = ""


def _describe_decode_error(exc: json.JSONDecodeError) -> str:
    if exc.pos >= len(exc.doc.rstrip()):
        return "unexpected end of JSON input"
    return f"invalid JSON at offset {exc.pos}: {exc.msg}"


def _field(obj: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    if kind is not bool and isinstance(value, bool) or not isinstance(value, kind):
        raise ValueError(f"json: cannot use {type(value).__name__} value for field {key}")
    return value


def _first_ipv4(ips: list[Any]) -> str:
    for text in ips:
        if not isinstance(text, str):
            raise ValueError("json: TailscaleIPs must hold strings")
        if not text or "%" in text:
            continue
        try:
            ip = ipaddress.ip_address(text)
        except ValueError:
            continue
        if isinstance(ip, ipaddress.IPv4Address):
            return str(ip)
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
    return ""


def parse_status(raw: bytes | str) -> TailscaleStatus:
    """Parse status JSON; raises ValueError when it is not valid."""
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(_describe_decode_error(exc)) from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValueError(f"json: cannot unmarshal {type(payload).__name__} into status")

    self_node = _field(payload, "Self", dict, {})
    tailnet = _field(payload, "CurrentTailnet", dict, {})
    dns_name: str = _field(self_node, "DNSName", str, "")
    return TailscaleStatus(
        backend_state=_field(payload, "BackendState", str, ""),
        local_ipv4=_first_ipv4(_field(payload, "TailscaleIPs", list, [])),
        self_host_name=_field(self_node, "HostName", str, ""),
        self_dns_name=dns_name[:-1] if dns_name.endswith(".") else dns_name,
        magic_dns_enabled=_field(tailnet, "MagicDNSEnabled", bool, False),
        magic_dns_suffix=_field(tailnet, "MagicDNSSuffix", str, ""),
    )