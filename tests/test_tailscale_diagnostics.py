import pytest

from portshare.runner import CommandError
from portshare.tailscale_diagnostics import Client, DiagnosticCode, RouteType


class FakeRunner:
    def __init__(self, outputs=None, errors=None):
        self.outputs = outputs or {}
        self.errors = errors or {}

    def run(self, name, *args):
        key = " ".join([name, *args])
        if key in self.errors:
            raise self.errors[key]
        if key not in self.outputs:
            raise CommandError(f"fake runner missing command: {key}")
        return self.outputs[key]


def _status_json(backend="Running", ips='["100.109.251.97"]', magic="true"):
    return (
        '{"BackendState":"%s","TailscaleIPs":%s,'
        '"Self":{"HostName":"desk","DNSName":"desk.tailnet.ts.net."},'
        '"CurrentTailnet":{"MagicDNSEnabled":%s,"MagicDNSSuffix":"tailnet.ts.net"}}'
        % (backend, ips, magic)
    ).encode()


def test_check_ready_reports_missing_cli():
    client = Client(
        FakeRunner(errors={"tailscale status --json": CommandError("executable file not found")})
    )
    report = client.check_ready()
    assert report.ready is False
    assert report.code == DiagnosticCode.TAILSCALE_UNAVAILABLE
    assert report.code.value == "tailscale.unavailable"
    assert report.fix_command == ""
    assert "executable file not found" in report.message


def test_check_ready_reports_magic_dns_disabled():
    client = Client(FakeRunner(outputs={"tailscale status --json": _status_json(magic="false")}))
    report = client.check_ready()
    assert report.ready is False
    assert report.code.value == "dns.not_accepted"
    assert report.fix_command == "tailscale set --accept-dns=true"
    assert report.status.local_ipv4 == "100.109.251.97"


def test_check_ready_includes_parse_error():
    client = Client(FakeRunner(outputs={"tailscale status --json": b"{"}))
    report = client.check_ready()
    assert report.code == DiagnosticCode.TAILSCALE_UNAVAILABLE
    assert "unexpected end of JSON input" in report.message


def test_check_ready_reports_stopped_backend():
    client = Client(FakeRunner(outputs={"tailscale status --json": _status_json(backend="Stopped")}))
    report = client.check_ready()
    assert report.code.value == "tailscale.stopped"
    assert report.fix_command == "tailscale up"
    assert report.status.backend_state == "Stopped"


def test_check_ready_reports_missing_ipv4():
    client = Client(FakeRunner(outputs={"tailscale status --json": _status_json(ips="[]")}))
    report = client.check_ready()
    assert report.code.value == "tailscale.no_ip"
    assert report.ready is False


def test_check_ready_when_everything_is_in_place():
    client = Client(FakeRunner(outputs={"tailscale status --json": _status_json()}))
    report = client.check_ready()
    assert report.ready is True
    assert report.code.value == "ok"
    assert report.status.self_dns_name == "desk.tailnet.ts.net"


def test_ping_peer_parses_direct_route():
    client = Client(
        FakeRunner(
            outputs={"tailscale ping 100.109.251.97": b"pong from peer via 115.233.222.82:41641 in 15ms"}
        )
    )
    route = client.ping_peer("100.109.251.97")
    assert route.route_type == RouteType.DIRECT
    assert route.latency == "15ms"
    assert route.raw == "pong from peer via 115.233.222.82:41641 in 15ms"


def test_ping_peer_prefers_direct_after_derp():
    output = "\n".join(
        [
            "pong from peer via DERP(tok) in 88ms",
            "pong from peer via 115.233.222.82:41641 in 15ms",
        ]
    )
    client = Client(FakeRunner(outputs={"tailscale ping 100.109.251.97": output.encode()}))
    route = client.ping_peer("100.109.251.97")
    assert route.route_type == RouteType.DIRECT
    assert route.via == "115.233.222.82:41641"
    assert route.latency == "15ms"


def test_ping_peer_parses_peer_relay_route():
    client = Client(
        FakeRunner(outputs={"tailscale ping 100.109.251.97": b"pong from peer via peer-relay(fra) in 42ms"})
    )
    route = client.ping_peer("100.109.251.97")
    assert route.route_type == RouteType.PEER_RELAY
    assert route.via == "peer-relay(fra)"
    assert route.latency == "42ms"


def test_ping_peer_parses_derp_route():
    client = Client(
        FakeRunner(outputs={"tailscale ping 100.109.251.97": b"pong from peer via DERP(tok) in 88ms"})
    )
    route = client.ping_peer("100.109.251.97")
    assert route.route_type == RouteType.DERP
    assert route.via == "DERP(tok)"
    assert route.latency == "88ms"


def test_ping_peer_prefers_peer_relay_over_derp():
    output = "pong from peer via DERP(tok) in 88ms\npong from peer via peer-relay(fra) in 42ms"
    client = Client(FakeRunner(outputs={"tailscale ping 100.109.251.97": output.encode()}))
    assert client.ping_peer("100.109.251.97").route_type == RouteType.PEER_RELAY


def test_ping_peer_without_recognised_route_is_unknown():
    output = "pong from peer via ICMP in 3ms"
    client = Client(FakeRunner(outputs={"tailscale ping 100.109.251.97": output.encode()}))
    route = client.ping_peer("100.109.251.97")
    assert route.route_type == RouteType.UNKNOWN
    assert route.via == ""
    assert route.raw == output


def test_ping_peer_propagates_runner_errors():
    client = Client(FakeRunner())
    with pytest.raises(CommandError, match="fake runner missing command"):
        client.ping_peer("100.109.251.97")