"""Status aggregation: maps process, API and forwarding state onto display lines."""

from __future__ import annotations

from collections.abc import Sequence

from .models import StatusSnapshot

NOT_CONFIGURED = "Not configured"
PROCESS_NOT_RUNNING = "Process not running"
NOT_RESPONDING = "Not responding"
API_RESPONDING = "API: Responding"
API_NOT_RESPONDING = "API: Not responding"


def format_ports(ports: Sequence[int]) -> str:
    return ",".join(str(port) for port in ports)


def aggregate(
    configured: bool,
    alive: bool,
    active_ports: Sequence[int],
    responding: bool,
    version: str,
) -> StatusSnapshot:
    """Build a StatusSnapshot. First matching row wins.

    ``active_ports`` holds the listen port of every active forwarding rule;
    its length is the active forward count.
    """
    forward_count = len(active_ports)
    base = {
        "process_running": configured and alive,
        "api_responding": configured and alive and responding,
        "active_forward_count": forward_count,
        "version": version if (configured and alive and responding) else "",
    }

    if not configured:
        return StatusSnapshot(**base, line1=NOT_CONFIGURED)
    if not alive:
        return StatusSnapshot(**base, line1=PROCESS_NOT_RUNNING)

    active_line = f"Forwards: Active ({format_ports(active_ports)})" if forward_count else ""

    if responding:
        line1 = f"Connected: {version or 'Connected'}"
        line3 = active_line or "Forwards: None active"
        return StatusSnapshot(**base, line1=line1, line2=API_RESPONDING, line3=line3)

    line3 = active_line or "Forwards: None"
    return StatusSnapshot(**base, line1=NOT_RESPONDING, line2=API_NOT_RESPONDING, line3=line3)
