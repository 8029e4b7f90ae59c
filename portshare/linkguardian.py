"""Deciding what to do about the current Tailscale path to a peer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from portshare.netdiag import (
    ActiveBypass,
    EgressCandidate,
    PathStatus,
    PeerPathReport,
    ReprobeResult,
)


class Status(str, Enum):
    IDLE = "idle"
    WARMING = "warming"
    OPTIMIZED = "optimized"
    TUN_USABLE = "tun-usable"
    BYPASS_READY = "bypass-ready"
    BYPASS_APPLIED = "bypass-applied"
    RELAY = "relay"
    ROLLBACK = "rollback"
    FAILED = "failed"


class Action(str, Enum):
    WATCH = "watch"
    REPROBE = "reprobe"
    APPLY_BYPASS = "apply-bypass"
    CLEAR_BYPASS = "clear-bypass"


@dataclass
class EvaluateInput:
    path: PeerPathReport = field(default_factory=PeerPathReport)
    auto_bypass: bool = False
    active_bypass: ActiveBypass | None = None
    latest_latency: timedelta = timedelta(0)


@dataclass
class Decision:
    status: Status = Status.IDLE
    action: Action = Action.WATCH
    candidate: EgressCandidate | None = None
    message: str = ""


@dataclass
class Options:
    auto_bypass: bool = False
    latest_latency: timedelta = timedelta(0)


@dataclass
class Result:
    peer_tailscale_ip: str = ""
    before: PeerPathReport = field(default_factory=PeerPathReport)
    after: PeerPathReport = field(default_factory=PeerPathReport)
    decision: Decision = field(default_factory=Decision)
    reprobe: ReprobeResult = field(default_factory=ReprobeResult)
    active_bypass: ActiveBypass | None = None
    message: str = ""


def _with_latency_sample(message: str, latency: timedelta) -> str:
    if latency <= timedelta(0):
        return message
    millis = latency // timedelta(milliseconds=1)
    return f"{message}（主页延迟 {millis}ms）"


def _should_clear_active_bypass(path: PeerPathReport, active: ActiveBypass) -> bool:
    endpoint = path.endpoint_ip.strip()
    active_endpoint = active.endpoint_ip.strip()
    if not endpoint or not active_endpoint:
        return False
    return endpoint != active_endpoint


def recommended_candidate(candidates: list[EgressCandidate]) -> EgressCandidate | None:
    """The recommended candidate, else the first usable non-proxy one, else None."""
    for candidate in candidates:
        if candidate.recommended:
            return candidate
    for candidate in candidates:
        if (
            candidate.interface_index > 0
            and candidate.next_hop.strip()
            and not candidate.suspected_proxy
        ):
            return candidate
    return None


def evaluate(inputs: EvaluateInput) -> Decision:
    """Decide the guardian status and next action for a diagnosed path."""
    path = inputs.path
    latency = inputs.latest_latency

    if inputs.active_bypass is not None and _should_clear_active_bypass(
        path, inputs.active_bypass
    ):
        return Decision(
            status=Status.ROLLBACK,
            action=Action.CLEAR_BYPASS,
            message=_with_latency_sample("endpoint 已变化，准备撤销旧的精确绕过", latency),
        )

    if path.status == PathStatus.DIRECT_NORMAL:
        return Decision(
            status=Status.OPTIMIZED,
            action=Action.WATCH,
            message=_with_latency_sample("当前已经是低延迟直连", latency),
        )
    if path.status == PathStatus.DIRECT_TUN_OPTIMIZED:
        return Decision(
            status=Status.OPTIMIZED,
            action=Action.WATCH,
            message=_with_latency_sample("TUN 接管但当前是低延迟直连", latency),
        )
    if path.status == PathStatus.DIRECT_PROXY:
        candidate = recommended_candidate(path.candidates)
        if inputs.auto_bypass and path.endpoint_ip.strip() and candidate is not None:
            return Decision(
                status=Status.BYPASS_READY,
                action=Action.APPLY_BYPASS,
                candidate=candidate,
                message=_with_latency_sample(
                    "当前 direct 高延迟且疑似 TUN 绕路，准备应用 endpoint 精确绕过", latency
                ),
            )
        return Decision(
            status=Status.BYPASS_READY,
            action=Action.WATCH,
            message=_with_latency_sample("当前 direct 高延迟且疑似 TUN 绕路", latency),
        )
    if path.status == PathStatus.DERP:
        return Decision(
            status=Status.RELAY,
            action=Action.REPROBE,
            message=_with_latency_sample("当前仍在中继，先重新探测 Tailscale 直连", latency),
        )
    if path.status == PathStatus.FAILED:
        return Decision(
            status=Status.FAILED,
            action=Action.WATCH,
            message=_with_latency_sample("链路检测失败", latency),
        )
    return Decision(
        status=Status.IDLE,
        action=Action.WATCH,
        message=_with_latency_sample("链路状态未知", latency),
    )