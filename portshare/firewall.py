"""Windows firewall rules that let a trusted tailnet peer reach this machine."""

from __future__ import annotations

import ipaddress
import json
import os
from dataclasses import dataclass

from portshare.runner import CommandError, ExecRunner, Runner

_DEFAULT_RULE_PREFIX = "portshare"

_UNSUPPORTED_PLATFORM_MESSAGE = "Windows 防火墙授权仅支持 Windows"

_PERMISSION_MARKERS = ("elevat", "administrator", "access is denied", "拒绝访问")

_NOT_FOUND_MARKERS = (
    "no rules match",
    "no rule matches",
    "no matching rule",
    "no matching rules",
    "rule was not found",
    "rule not found",
    "does not exist",
    "not exist",
    "not found",
    "没有规则",
    "未找到",
    "找不到",
)


class FirewallError(Exception):
    """A firewall rule could not be built, written or removed."""


@dataclass(frozen=True)
class TrustedPeerAccess:
    rule_prefix: str = ""
    local_tailscale_ip: str = ""
    peer_tailscale_ip: str = ""
    peer_id: str = ""
    peer_name: str = ""


@dataclass(frozen=True)
class Rule:
    name: str
    direction: str
    action: str
    protocol: str
    local_ip: str
    remote_ip: str
    local_port: str


def _default_runner() -> Runner | None:
    """The command runner for this platform, or None where netsh is unavailable."""
    if os.name == "nt":
        return ExecRunner()
    return None


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _is_ip(text: str) -> bool:
    if not text or "%" in text:
        return False
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def _sanitize_rule_part(value: str) -> str:
    chars: list[str] = []
    last_dash = False
    for ch in value.lower().strip():
        if ("a" <= ch <= "z") or ("0" <= ch <= "9") or ch in "._-":
            chars.append(ch)
            last_dash = False
        elif not last_dash:
            chars.append("-")
            last_dash = True
    return "".join(chars).strip("-") or "device"


def _make_rule_name(prefix: str, peer_label: str, peer_ip: str, protocol: str) -> str:
    return "-".join(
        (
            _sanitize_rule_part(prefix),
            "trusted",
            _sanitize_rule_part(peer_label),
            _sanitize_rule_part(peer_ip),
            protocol.lower(),
        )
    )


def _build_rules(access: TrustedPeerAccess, require_local_ip: bool) -> list[Rule]:
    local_ip = access.local_tailscale_ip.strip()
    peer_ip = access.peer_tailscale_ip.strip()
    if require_local_ip and not _is_ip(local_ip):
        raise FirewallError(f"本机 Tailscale IP 无效或缺失：{_quote(access.local_tailscale_ip)}")
    if not _is_ip(peer_ip):
        raise FirewallError(f"对方 Tailscale IP 无效或缺失：{_quote(access.peer_tailscale_ip)}")

    prefix = access.rule_prefix.strip() or _DEFAULT_RULE_PREFIX
    peer_label = access.peer_id.strip() or access.peer_name.strip() or peer_ip
    return [
        Rule(
            name=_make_rule_name(prefix, peer_label, peer_ip, protocol),
            direction="in",
            action="allow",
            protocol=protocol,
            local_ip=local_ip,
            remote_ip=peer_ip,
            local_port="any",
        )
        for protocol in ("TCP", "UDP")
    ]


def build_trusted_peer_rules(access: TrustedPeerAccess) -> list[Rule]:
    """Inbound TCP and UDP allow rules scoped to the local and peer tailnet IPs."""
    return _build_rules(access, require_local_ip=True)


def build_trusted_peer_revoke_rules(access: TrustedPeerAccess) -> list[Rule]:
    """The rules to delete for a peer; the local IP is not needed to name them."""
    return _build_rules(access, require_local_ip=False)


def _delete_rule_args(rule: Rule) -> list[str]:
    return ["advfirewall", "firewall", "delete", "rule", f"name={rule.name}"]


def _add_rule_args(rule: Rule) -> list[str]:
    return [
        "advfirewall",
        "firewall",
        "add",
        "rule",
        f"name={rule.name}",
        f"dir={rule.direction}",
        f"action={rule.action}",
        f"protocol={rule.protocol}",
        f"localip={rule.local_ip}",
        f"remoteip={rule.remote_ip}",
        f"localport={rule.local_port}",
        "profile=any",
        "enable=yes",
    ]


def _details(exc: Exception) -> str:
    output = getattr(exc, "output", b"") or b""
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return output.strip()


def _error_text(exc: Exception) -> str:
    return f"{_details(exc)} {exc}".lower()


def _is_permission_error(exc: Exception) -> bool:
    text = _error_text(exc)
    return any(marker in text for marker in _PERMISSION_MARKERS)


def _is_not_found_error(exc: Exception) -> bool:
    text = _error_text(exc)
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def _describe(verb: str, rule: Rule, exc: Exception) -> FirewallError:
    head = f"{verb} Windows 防火墙规则 {_quote(rule.name)} 失败"
    if _is_permission_error(exc):
        return FirewallError(f"{head}：请以管理员身份运行 portshare 后重试：{exc}")
    details = _details(exc)
    if not details:
        return FirewallError(f"{head}：{exc}")
    return FirewallError(f"{head}：{details}：{exc}")


class Authorizer:
    """Writes and removes trusted-peer rules through netsh."""

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner: Runner | None = runner if runner is not None else _default_runner()

    def _netsh(self, args: list[str]) -> bytes:
        if self._runner is None:
            raise CommandError(_UNSUPPORTED_PLATFORM_MESSAGE)
        return self._runner.run("netsh", *args)

    def allow_trusted_peer(self, access: TrustedPeerAccess) -> None:
        """Replace the peer's TCP and UDP rules with fresh ones."""
        for rule in build_trusted_peer_rules(access):
            try:
                self._netsh(_delete_rule_args(rule))
            except (CommandError, OSError):
                pass
            try:
                self._netsh(_add_rule_args(rule))
            except (CommandError, OSError) as exc:
                raise _describe("写入", rule, exc) from exc

    def revoke_trusted_peer(self, access: TrustedPeerAccess) -> None:
        """Delete the peer's rules; rules that are already gone are skipped."""
        for rule in build_trusted_peer_revoke_rules(access):
            try:
                self._netsh(_delete_rule_args(rule))
            except (CommandError, OSError) as exc:
                if _is_permission_error(exc):
                    raise _describe("删除", rule, exc) from exc
                if _is_not_found_error(exc):
                    continue
                raise _describe("删除", rule, exc) from exc