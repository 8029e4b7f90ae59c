from portshare.bridge_planner import (
    BridgePlan,
    Conflict,
    ListeningPort,
    PlanInput,
    build_plan,
    build_plan_result,
    normalize_allowed_peer_ips,
)

LOCAL_IP = "100.79.83.104"
PEER_IP = "100.109.251.97"


def test_build_plan_bridges_loopback_only_port():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 18789)],
        )
    )
    assert plans == [
        BridgePlan(
            port=18789,
            listen_address="100.79.83.104:18789",
            target_address="127.0.0.1:18789",
            allowed_peer_ips=[PEER_IP],
        )
    ]


def test_build_plan_does_not_bridge_wildcard_listener():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 52726), ListeningPort("0.0.0.0", 52726)],
        )
    )
    assert plans == []


def test_build_plan_result_reports_wildcard_conflict():
    result = build_plan_result(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 3000), ListeningPort("0.0.0.0", 3000)],
        )
    )
    assert result.bridges == []
    assert result.conflicts == [Conflict(port=3000)]


def test_build_plan_does_not_bridge_native_tailscale_listener():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 17890), ListeningPort(LOCAL_IP, 17890)],
        )
    )
    assert plans == []


def test_build_plan_does_not_bridge_without_trusted_peers():
    plans = build_plan(
        PlanInput(local_tailscale_ip=LOCAL_IP, listeners=[ListeningPort("127.0.0.1", 18789)])
    )
    assert plans == []


def test_build_plan_needs_local_ip():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip="  ",
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 18789)],
        )
    )
    assert plans == []


def test_build_plan_ignores_invalid_ports_and_empty_addresses_and_sorts():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[
                ListeningPort("127.0.0.1", 0),
                ListeningPort("127.0.0.1", 70000),
                ListeningPort("  ", 4000),
                ListeningPort("::1", 9000),
                ListeningPort("127.0.0.1", 8000),
            ],
        )
    )
    assert [plan.port for plan in plans] == [8000, 9000]
    assert plans[1].target_address == "127.0.0.1:9000"


def test_build_plan_brackets_ipv6_local_address():
    plans = build_plan(
        PlanInput(
            local_tailscale_ip="fd7a:115c:a1e0::1",
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("127.0.0.1", 3000)],
        )
    )
    assert plans[0].listen_address == "[fd7a:115c:a1e0::1]:3000"


def test_non_loopback_only_port_is_neither_bridged_nor_conflict():
    result = build_plan_result(
        PlanInput(
            local_tailscale_ip=LOCAL_IP,
            allowed_peer_ips=[PEER_IP],
            listeners=[ListeningPort("192.168.1.11", 5000)],
        )
    )
    assert result.bridges == []
    assert result.conflicts == []


def test_normalize_allowed_peer_ips_trims_dedupes_and_sorts():
    assert normalize_allowed_peer_ips([" 100.2.0.1", "", "100.1.0.1", "100.2.0.1 "]) == [
        "100.1.0.1",
        "100.2.0.1",
    ]
    assert normalize_allowed_peer_ips(None) == []