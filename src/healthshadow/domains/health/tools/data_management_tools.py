"""MCP tools for health data management (right to erasure).

Deleting a profile removes the event log, the snapshot, the risk scores and
the profile row in one transaction, and drops the in-memory session. The
audit trail keeps only a hash of the user id.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthshadow.core.errors import AuthorizationError, NotFound

if TYPE_CHECKING:
    from healthshadow.core.privacy.access import AccessGuard
    from healthshadow.domains.health.service import HealthShadowService

logger = logging.getLogger(__name__)

CONFIRM_PHRASE = "DELETE"


def register_data_management_tools(
    mcp: FastMCP,
    service: HealthShadowService,
    guard: AccessGuard,
) -> None:
    """Register data management tools on the MCP server."""

    @mcp.tool
    async def delete_health_profile(
        ctx: Context,
        user_id: str,
        access_token: str,
        confirm: str = "",
    ) -> str:
        """Permanently delete a user's health profile and every recorded event.

        This cannot be undone.

        Args:
            user_id: The profile to delete.
            access_token: Token from issue_access_token.
            confirm: Must be exactly 'DELETE' to proceed. Safety gate.
        """
        if confirm != CONFIRM_PHRASE:
            return json.dumps({
                "status": "confirmation_required",
                "message": (
                    "This will permanently delete the profile and its full history. "
                    f"Call again with confirm='{CONFIRM_PHRASE}' to proceed."
                ),
            })

        start_time = time.monotonic()
        try:
            guard.verify(user_id, access_token, operation="delete_health_profile")
            count = await service.delete_profile(user_id)
        except AuthorizationError as exc:
            return json.dumps({"status": "denied", "message": str(exc)})
        except NotFound:
            return json.dumps({
                "status": "not_found",
                "user_id": user_id,
                "message": "No profile for this user.",
            })

        elapsed_ms = (time.monotonic() - start_time) * 1000
        return json.dumps({
            "status": "deleted",
            "user_id": user_id,
            "events_deleted": count,
            "duration_ms": round(elapsed_ms, 1),
        })
