"""MCP tools for viewing the audit trail.

The trail holds no health data: users appear only as a SHA-256 hash of
their id, and metadata is limited to counts, versions and type names.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthshadow.core.audit.logger import AUDIT_ACTIONS

if TYPE_CHECKING:
    from healthshadow.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def get_audit_log(
        ctx: Context,
        days: int = 30,
        action: str = "",
        limit: int = 50,
    ) -> str:
        """View recent appends, reads, deletions, rebuilds and denied accesses.

        Args:
            days: Number of days to look back (default: 30).
            action: Optional filter, e.g. 'profile_delete' or 'emergency_raised'.
            limit: Maximum number of entries to return (default: 50).
        """
        if action and action not in AUDIT_ACTIONS:
            return json.dumps({
                "status": "error",
                "message": f"Unknown action {action!r}. Expected one of: {', '.join(AUDIT_ACTIONS)}.",
            })
        if days < 1 or limit < 1:
            return json.dumps({"status": "error", "message": "days and limit must be at least 1."})

        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        recent_events = audit_logger.get_events(action=action or None, since=since, limit=limit)

        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "subject_hash": event.get("subject_hash"),
                "event_type": event.get("event_type"),
                "version": event.get("version"),
                "status": event.get("status"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(action=action or None, since=since),
            "recent_events": display_events,
            "note": "This audit trail contains no health data. Users are identified only by a hash.",
        }, indent=2)
