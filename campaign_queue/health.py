"""Per-server delivery health computed from the audit trail."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

HEALTH_WINDOW_SECONDS = 86400
# a server stays healthy while more than this share of its attempts succeed
HEALTHY_SUCCESS_RATIO = 0.8


def server_health(server: Dict[str, Any], stats: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Summarise the recent outcomes of one outbound server.

    A server with no recorded attempts is healthy.
    """
    stats = stats or {}
    sent = int(stats.get("sent", 0))
    failed = int(stats.get("failed", 0))
    total = sent + failed
    return {
        "server_id": server["id"],
        "name": server.get("name"),
        "total_sent": sent,
        "total_failed": failed,
        "success_rate": (sent / total) * 100 if total else 0.0,
        "is_healthy": total == 0 or (sent / total) > HEALTHY_SUCCESS_RATIO,
        "last_used": stats.get("last_used"),
    }


def rank_servers(servers: List[Dict[str, Any]], stats: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order servers healthy first, keeping the given order within each group."""
    healthy = [s for s in servers if server_health(s, stats.get(s["id"]))["is_healthy"]]
    unhealthy = [s for s in servers if s not in healthy]
    return healthy + unhealthy
