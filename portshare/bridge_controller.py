"""Keeping running bridges in step with the loopback listeners that are found."""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from portshare.bridge import Bridge
from portshare.bridge_planner import (
    BridgePlan,
    PlanInput,
    build_plan_result,
    normalize_allowed_peer_ips,
)
from portshare.bridge_scanner import Scanner


class BridgeRunner(Protocol):
    """A bridge that can be started and closed."""

    def start(self) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class _ActiveBridge:
    plan: BridgePlan
    bridge: BridgeRunner


class Controller:
    """Starts, restarts and stops bridges as listeners and trusted peers change."""

    def __init__(
        self,
        scanner: Scanner | None = None,
        local_tailscale_ip: str = "",
        allowed_peer_ips: Iterable[str] | None = None,
        new_bridge: Callable[[BridgePlan], BridgeRunner] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._scanner = scanner
        self._local_tailscale_ip = local_tailscale_ip
        self._allowed_peer_ips = normalize_allowed_peer_ips(allowed_peer_ips)
        self._new_bridge: Callable[[BridgePlan], BridgeRunner] = (
            new_bridge if new_bridge is not None else Bridge
        )
        self._active: dict[int, _ActiveBridge] = {}
        self._conflicts: list[int] = []

    def set_local_tailscale_ip(self, ip: str) -> None:
        with self._lock:
            self._local_tailscale_ip = ip

    def set_allowed_peers(self, peers: Iterable[str]) -> None:
        with self._lock:
            self._allowed_peer_ips = normalize_allowed_peer_ips(peers)

    def refresh(self) -> None:
        """Scan listeners and reconcile the running bridges with the new plan."""
        if self._scanner is None:
            return
        listeners = self._scanner.scan()

        with self._lock:
            local_ip = self._local_tailscale_ip
            allowed = list(self._allowed_peer_ips)

        result = build_plan_result(
            PlanInput(local_tailscale_ip=local_ip, allowed_peer_ips=allowed, listeners=listeners)
        )
        desired = {plan.port: plan for plan in result.bridges}
        conflicts = sorted(conflict.port for conflict in result.conflicts)

        with self._lock:
            self._conflicts = conflicts
            for port in list(self._active):
                active = self._active[port]
                if desired.get(port) != active.plan:
                    with contextlib.suppress(OSError):
                        active.bridge.close()
                    del self._active[port]
            for port, plan in sorted(desired.items()):
                if port in self._active:
                    continue
                bridge = self._new_bridge(plan)
                bridge.start()
                self._active[port] = _ActiveBridge(plan=plan, bridge=bridge)

    def active_ports(self) -> list[int]:
        with self._lock:
            return sorted(self._active)

    def conflict_ports(self) -> list[int]:
        with self._lock:
            return list(self._conflicts)

    def close(self) -> None:
        """Close every running bridge and forget the reported conflicts."""
        with self._lock:
            active = self._active
            self._active = {}
            self._conflicts = []
        for entry in active.values():
            with contextlib.suppress(OSError):
                entry.bridge.close()