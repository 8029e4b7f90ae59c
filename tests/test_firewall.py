import pytest

from portshare.firewall import (
    Authorizer,
    FirewallError,
    TrustedPeerAccess,
    build_trusted_peer_revoke_rules,
    build_trusted_peer_rules,
)
from portshare.runner import CommandError


class RecordingRunner:
    def __init__(self):
        self.commands = []

    def run(self, name, *args):
        self.commands.append((name, list(args)))
        return b"ok"


class ScriptedRunner:
    def __init__(self, results):
        self.commands = []
        self.results = list(results)

    def run(self, name, *args):
        self.commands.append((name, list(args)))
        if not self.results:
            raise CommandError("unexpected command")
        output, error = self.results.pop(0)
        if error is not None:
            raise CommandError(error, output=output)
        return output


def has_prefix(args, prefix):
    return any(arg.startswith(prefix) for arg in args)


ACCESS = TrustedPeerAccess(
    rule_prefix="portshare",
    local_tailscale_ip="100.79.83.104",
    peer_tailscale_ip="100.109.251.97",
    peer_id="desktop-bgpql0r",
)


def test_build_rules_creates_tcp_and_udp_scoped_to_tailnet_ips():
    rules = build_trusted_peer_rules(
        TrustedPeerAccess(
            rule_prefix="portshare",
            local_tailscale_ip="100.79.83.104",
            peer_tailscale_ip="100.109.251.97",
            peer_id="desktop-bgpql0r",
            peer_name="DESKTOP-BGPQL0R",
        )
    )
    assert len(rules) == 2
    for rule in rules:
        assert "portshare" in rule.name and "desktop-bgpql0r" in rule.name
        assert rule.direction == "in" and rule.action == "allow"
        assert rule.local_ip == "100.79.83.104"
        assert rule.remote_ip == "100.109.251.97"
        assert rule.local_port == "any"
    assert [rule.protocol for rule in rules] == ["TCP", "UDP"]
    assert rules[0].name == "portshare-trusted-desktop-bgpql0r-100.109.251.97-tcp"


def test_authorizer_replaces_tcp_and_udp_rules():
    runner = RecordingRunner()
    Authorizer(runner).allow_trusted_peer(ACCESS)
    assert len(runner.commands) == 4
    assert runner.commands[0][0] == "netsh" and runner.commands[1][0] == "netsh"
    first = runner.commands[0][1]
    assert "delete" in first and has_prefix(first, "name=portshare")
    second = runner.commands[1][1]
    for arg in ("add", "protocol=TCP", "localip=100.79.83.104", "remoteip=100.109.251.97", "localport=any"):
        assert arg in second
    assert "protocol=UDP" in runner.commands[3][1]


def test_authorizer_revokes_tcp_and_udp_rules():
    runner = RecordingRunner()
    Authorizer(runner).revoke_trusted_peer(ACCESS)
    assert len(runner.commands) == 2
    for name, args in runner.commands:
        assert name == "netsh"
        assert "delete" in args and has_prefix(args, "name=portshare")
        assert "add" not in args


def test_revoke_does_not_require_local_tailscale_ip():
    runner = RecordingRunner()
    Authorizer(runner).revoke_trusted_peer(
        TrustedPeerAccess(
            rule_prefix="portshare",
            peer_tailscale_ip="100.109.251.97",
            peer_id="desktop-bgpql0r",
        )
    )
    assert len(runner.commands) == 2
    for _, args in runner.commands:
        assert "delete" in args
        assert has_prefix(args, "name=portshare-trusted-desktop-bgpql0r-100.109.251.97-")
        assert not has_prefix(args, "localip=")


def test_revoke_continues_when_rule_does_not_exist():
    runner = ScriptedRunner(
        [
            (b"No rules match the specified criteria.", "exit status 1"),
            (b"Deleted 1 rule(s).", None),
        ]
    )
    Authorizer(runner).revoke_trusted_peer(ACCESS)
    assert len(runner.commands) == 2
    for _, args in runner.commands:
        assert "delete" in args and has_prefix(args, "name=portshare")


def test_revoke_still_fails_permission_errors():
    runner = ScriptedRunner(
        [(b"Access is denied. No rules match the specified criteria.", "exit status 1")]
    )
    with pytest.raises(FirewallError, match="管理员"):
        Authorizer(runner).revoke_trusted_peer(ACCESS)
    assert len(runner.commands) == 1


def test_revoke_fails_on_other_errors_with_details():
    runner = ScriptedRunner([(b"something broke", "exit status 5")])
    with pytest.raises(FirewallError) as info:
        Authorizer(runner).revoke_trusted_peer(ACCESS)
    assert "something broke" in str(info.value)
    assert "exit status 5" in str(info.value)


def test_allow_reports_permission_failure_on_add():
    runner = ScriptedRunner(
        [
            (b"", None),
            (b"The requested operation requires elevation.", "exit status 1"),
        ]
    )
    with pytest.raises(FirewallError, match="请以管理员身份运行"):
        Authorizer(runner).allow_trusted_peer(ACCESS)
    assert len(runner.commands) == 2


def test_allow_ignores_delete_failure():
    runner = ScriptedRunner(
        [
            (b"No rules match", "exit status 1"),
            (b"Ok.", None),
            (b"No rules match", "exit status 1"),
            (b"Ok.", None),
        ]
    )
    Authorizer(runner).allow_trusted_peer(ACCESS)
    assert len(runner.commands) == 4


def test_build_rules_rejects_missing_ips():
    with pytest.raises(FirewallError):
        build_trusted_peer_rules(TrustedPeerAccess(local_tailscale_ip="", peer_tailscale_ip="100.109.251.97"))
    with pytest.raises(FirewallError):
        build_trusted_peer_rules(TrustedPeerAccess(local_tailscale_ip="100.79.83.104", peer_tailscale_ip=""))


def test_revoke_rules_still_require_peer_ip():
    with pytest.raises(FirewallError):
        build_trusted_peer_revoke_rules(TrustedPeerAccess(peer_tailscale_ip="not-an-ip"))


def test_rule_name_falls_back_to_peer_name_then_ip():
    by_name = build_trusted_peer_rules(
        TrustedPeerAccess(
            local_tailscale_ip="100.79.83.104",
            peer_tailscale_ip="100.109.251.97",
            peer_name="My Laptop!",
        )
    )
    assert by_name[0].name == "portshare-trusted-my-laptop-100.109.251.97-tcp"
    by_ip = build_trusted_peer_rules(
        TrustedPeerAccess(local_tailscale_ip="100.79.83.104", peer_tailscale_ip="100.109.251.97")
    )
    assert by_ip[1].name == "portshare-trusted-100.109.251.97-100.109.251.97-udp"


def test_unsanitizable_label_becomes_device():
    rules = build_trusted_peer_rules(
        TrustedPeerAccess(
            local_tailscale_ip="100.79.83.104",
            peer_tailscale_ip="100.109.251.97",
            peer_id="电脑",
        )
    )
    assert rules[0].name == "portshare-trusted-device-100.109.251.97-tcp"