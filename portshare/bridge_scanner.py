"""Finding listening TCP ports on Windows and in running WSL distributions."""

from __future__ import annotations

import json
import os
import re
from typing import Any, Protocol

from portshare.bridge_planner import ListeningPort
from portshare.runner import CommandError, ExecRunner, Runner

_POWERSHELL_SCAN_ARGS = (
    "-NoProfile",
    "-NonInteractive",
    "-Command",
    "Get-NetTCPConnection -State Listen | Select-Object LocalAddress,LocalPort | ConvertTo-Json -Compress",
)
_WSL_LIST_ARGS = ("--list", "--quiet", "--running")
_PORT_TEXT = re.compile(r"[+-]?[0-9]+")
_FORWARDED_WSL_LOOPBACK = ("127.0.0.1", "::1")


class Scanner(Protocol):
    """Anything that lists the TCP ports currently listening."""

    def scan(self) -> list[ListeningPort]:
        ...


def _text(data: bytes | str) -> str:
    return data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data


def _listener_from_raw(item: Any) -> ListeningPort | None:
    if item is None:
        return None
    if not isinstance(item, dict):
        raise ValueError(f"json: cannot unmarshal {type(item).__name__} into listener")
    address = item.get("LocalAddress")
    port = item.get("LocalPort")
    if address is None:
        address = ""
    if port is None:
        port = 0
    if not isinstance(address, str):
        raise ValueError("json: LocalAddress must be a string")
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError("json: LocalPort must be an integer")
    if not address or not 0 < port <= 65535:
        return None
    return ListeningPort(address=address, port=port)


def parse_powershell_tcp_listeners(data: bytes | str) -> list[ListeningPort]:
    """Parse Get-NetTCPConnection JSON, a single object or an array; raises ValueError."""
    text = _text(data).strip()
    if not text:
        return []
    payload = json.loads(text)
    items = payload if text.startswith("[") else [payload]
    if not isinstance(items, list):
        raise ValueError("json: expected an array of listeners")
    listeners = []
    for item in items:
        listener = _listener_from_raw(item)
        if listener is not None:
            listeners.append(listener)
    return listeners


def parse_wsl_distribution_names(data: bytes | str) -> list[str]:
    """Names from `wsl --list --quiet`, whose output is NUL-padded UTF-16."""
    if isinstance(data, bytes):
        data = data.replace(b"\x00", b"")
    text = _text(data).replace("\x00", "")
    text = text.removeprefix("\ufeff")
    return [name.strip() for name in re.split(r"[\r\n]+", text) if name.strip()]


def _parse_port(value: str) -> int | None:
    if not _PORT_TEXT.fullmatch(value):
        return None
    port = int(value)
    return port if 0 < port <= 65535 else None


def _strip_zone(host: str) -> str:
    index = host.rfind("%")
    return host[:index] if index >= 0 else host


def _split_ss_local_address(value: str) -> tuple[str, int] | None:
    value = value.strip()
    if not value:
        return None
    if value.startswith("["):
        end = value.rfind("]:")
        if end <= 0:
            return None
        port = _parse_port(value[end + 2 :])
        return None if port is None else (_strip_zone(value[1:end]), port)
    index = value.rfind(":")
    if index <= 0 or index == len(value) - 1:
        return None
    port = _parse_port(value[index + 1 :])
    return None if port is None else (_strip_zone(value[:index]), port)


def parse_wsl_ss_listeners(data: bytes | str) -> list[ListeningPort]:
    """Loopback listeners from `ss -ltnH`, the ones WSL forwards to Windows."""
    listeners = []
    for line in _text(data).split("\n"):
        fields = line.split()
        if len(fields) < 4 or fields[0] != "LISTEN":
            continue
        parsed = _split_ss_local_address(fields[3])
        if parsed is None or parsed[0] not in _FORWARDED_WSL_LOOPBACK:
            continue
        listeners.append(ListeningPort(address=parsed[0], port=parsed[1]))
    return listeners


def merge_listening_ports(*args: list[ListeningPort]) -> list[ListeningPort]:
    """Concatenate listener groups, keeping the first of each duplicate."""
    seen: set[ListeningPort] = set()
    merged = []
    for group in args:
        for listener in group:
            if listener in seen:
                continue
            seen.add(listener)
            merged.append(listener)
    return merged


class EmptyScanner:
    """Scanner for platforms without listener discovery."""

    def scan(self) -> list[ListeningPort]:
        return []


class WindowsScanner:
    """Lists Windows listeners through PowerShell and adds WSL loopback listeners."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner: Runner = runner if runner is not None else ExecRunner()

    def scan(self) -> list[ListeningPort]:
        output = self._runner.run("powershell.exe", *_POWERSHELL_SCAN_ARGS)
        windows_listeners = parse_powershell_tcp_listeners(output)
        return merge_listening_ports(windows_listeners, self._scan_wsl())

    def _scan_wsl(self) -> list[ListeningPort]:
        try:
            output = self._runner.run("wsl.exe", *_WSL_LIST_ARGS)
        except (CommandError, OSError):
            return []
        listeners: list[ListeningPort] = []
        for distro in parse_wsl_distribution_names(output):
            try:
                ss_output = self._runner.run(
                    "wsl.exe", "--distribution", distro, "--exec", "sh", "-lc", "ss -ltnH"
                )
            except (CommandError, OSError):
                continue
            listeners.extend(parse_wsl_ss_listeners(ss_output))
        return listeners


def new_scanner() -> Scanner:
    """The scanner suited to the running platform."""
    if os.name == "nt":
        return WindowsScanner()
    return EmptyScanner()