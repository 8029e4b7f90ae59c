# portshare

A library for sharing services that run on your machine with the other devices
on your tailnet. It has no third-party dependencies. Where the job needs them it
runs the `tailscale`, `netsh`, `powershell.exe` and `wsl.exe` command-line tools.

## What is inside

- `portshare.runner` has `ExecRunner`, which runs a command and returns its
  combined stdout and stderr. It raises `CommandError` when the command cannot
  be started, times out or exits with a non-zero status. Every class that runs
  commands takes an optional `runner` object with a `run(name, *args)` method,
  so you can pass in your own.
- `portshare.tailscale_status.parse_status` reads `tailscale status --json`
  into a `TailscaleStatus`.
- `portshare.tailscale_diagnostics.Client.check_ready` returns a
  `ReadyReport`. The report holds a `DiagnosticCode`, a message and, where one
  exists, a `fix_command` such as `tailscale up`.
- `portshare.tailscale_diagnostics.Client.ping_peer` returns a `PeerRoute`. It
  prefers a direct route, then a peer relay, then DERP.
- `portshare.netdiag` parses `tailscale ping` output (`parse_ping_route`) and
  extracts endpoint addresses (`endpoint_ip`). It tells public addresses apart
  from private, CGNAT, benchmark and link-local ranges
  (`is_public_endpoint_ip`, `is_public_ipv4`). It also classifies the path to a
  peer as a `PathStatus` (`classify_path`).
- `portshare.netdiag_service.Service` has four methods:
  - `diagnose_peer` pings a peer, reads the current route and lists the
    egress interfaces, ranked and with one marked as recommended.
  - `apply_bypass` adds an active-store host route that sends one endpoint
    through a chosen egress, checks that it works, and removes it again if it
    does not.
  - `clear_bypass` removes such a route.
  - `reprobe` runs `tailscale debug restun` and `tailscale debug rebind`.

  Route reading and route changes use PowerShell networking cmdlets, so they
  work on Windows only.
- `portshare.linkguardian.evaluate` turns a diagnosed path into a `Decision`:
  watch, reprobe, apply a bypass, or clear a bypass whose endpoint has changed.
  `recommended_candidate` picks the egress to use.
- `portshare.firewall` builds Windows Firewall rules
  (`build_trusted_peer_rules`, `build_trusted_peer_revoke_rules`). The rules
  admit one trusted peer over TCP and UDP. `Authorizer.allow_trusted_peer`
  replaces them through `netsh`, and `Authorizer.revoke_trusted_peer` deletes
  them. Rules that are already gone are skipped.
- `portshare.bridge_planner.build_plan_result` decides which ports listen only
  on loopback and so need a bridge. It also reports ports that listen on both
  loopback and a reachable address as conflicts.
- `portshare.bridge_scanner.WindowsScanner` finds the listening ports: Windows
  listeners come from `Get-NetTCPConnection`, and the loopback listeners of
  running WSL distributions come from `ss -ltnH`. `new_scanner()` returns the
  scanner that suits the platform.
- `portshare.bridge.Bridge` is a TCP relay. It listens on the tailnet address
  and forwards connections from allowed peer IPs to the loopback target. It can
  also be used as a context manager.
- `portshare.bridge_controller.Controller` keeps the running bridges in step
  with the scan. Each call to `refresh()` starts, restarts and stops bridges.
  `active_ports()` and `conflict_ports()` report the current state.
- `portshare.i18n.Catalog` returns user-facing strings in Chinese (the default)
  or English.

## Examples

Parse a ping result and check an endpoint:

```python
from portshare.netdiag import parse_ping_route, endpoint_ip, is_public_endpoint_ip

route_type, endpoint, latency = parse_ping_route(
    b"pong from desktop via 115.233.222.82:41641 in 15ms"
)
# ("direct", "115.233.222.82:41641", "15ms")
is_public_endpoint_ip(endpoint_ip(endpoint))  # True
```

Work out which loopback-only ports need a bridge:

```python
from portshare.bridge_planner import ListeningPort, PlanInput, build_plan

plans = build_plan(PlanInput(
    local_tailscale_ip="100.79.83.104",
    allowed_peer_ips=["100.109.251.97"],
    listeners=[ListeningPort(address="127.0.0.1", port=18789)],
))
# one plan: listen on 100.79.83.104:18789, forward to 127.0.0.1:18789
```

Keep bridges running for whatever the scanner finds:

```python
from portshare.bridge_controller import Controller
from portshare.bridge_scanner import new_scanner

controller = Controller(
    scanner=new_scanner(),
    local_tailscale_ip="100.79.83.104",
    allowed_peer_ips=["100.109.251.97"],
)
controller.refresh()
print(controller.active_ports(), controller.conflict_ports())
controller.close()
```

Build the firewall rules for a trusted peer without applying them:

```python
from portshare.firewall import TrustedPeerAccess, build_trusted_peer_rules

rules = build_trusted_peer_rules(TrustedPeerAccess(
    local_tailscale_ip="100.79.83.104",
    peer_tailscale_ip="100.109.251.97",
    peer_id="desktop-peer",
))
# two inbound allow rules, TCP then UDP, scoped to the two tailnet addresses
```

## Errors

Errors are raised as exceptions:

- `FirewallError` covers invalid addresses and firewall rules that could not be
  written or deleted.
- `DiagnosisError` covers failed path diagnosis, rejected bypass requests and
  bypass routes that did not take effect. When `diagnose_peer` fails, the error
  carries the partial report in its `report` attribute.
- `CommandError` is raised when an external command fails outside those steps,
  for example when the PowerShell route command itself cannot run.

## Platform notes

Firewall rules, bypass routes and the listener scan depend on Windows tools. On
other systems:

- the firewall operations raise `FirewallError`;
- the scanner returned by `new_scanner()` reports no listeners.

Everything that only parses text or plans work runs on any platform.

## What it does not do

This is a library only. It has no command-line program and no graphical
interface. It does not publish services with `tailscale serve` or
`tailscale funnel`. It does not store settings or keep a history of shares. It
does not run the link guardian on a schedule: `evaluate` decides, and the caller
acts on the decision.