"""Tailnet sharing helpers: path diagnostics, bypass routes, firewall rules and loopback bridges."""

__version__ = "0.1.0"

__all__ = [
    "bridge",
    "bridge_controller",
    "bridge_planner",
    "bridge_scanner",
    "firewall",
    "i18n",
    "linkguardian",
    "netdiag",
    "netdiag_service",
    "runner",
    "tailscale_diagnostics",
    "tailscale_status",
]