"""MCP tools for reading a user's health shadow.

Every tool takes a per-profile access token (see ``issue_access_token``).
Reads are audit-logged with the user id hashed.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthshadow.core.errors import AuthorizationError, NotFound, ValidationError
from healthshadow.core.storage.models import NOTIFICATION_CADENCES, TimeRange

if TYPE_CHECKING:
    from healthshadow.core.audit.logger import AuditLogger
    from healthshadow.core.privacy.access import AccessGuard
    from healthshadow.core.storage.shadow_store import ShadowStore

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 500


def _denied(exc: AuthorizationError) -> str:
    return json.dumps({"status": "denied", "message": str(exc)})


def _not_found(user_id: str) -> str:
    return json.dumps({"status": "not_found", "user_id": user_id, "message": "No profile for this user."})


def register_shadow_tools(
    mcp: FastMCP,
    store: ShadowStore,
    guard: AccessGuard,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register snapshot, history and preference tools on the MCP server."""

    @mcp.tool
    async def issue_access_token(
        ctx: Context,
        user_id: str,
        access_secret: str,
    ) -> str:
        """Issue the access token for one profile. Operator only.

        Args:
            user_id: The profile to issue a token for.
            access_secret: The server's ACCESS_SECRET.
        """
        if not guard.is_operator(access_secret):
            if audit_logger is not None:
                audit_logger.log_denied(user_id, operation="issue_access_token")
            return json.dumps({"status": "denied", "message": "Invalid access secret."})
        return json.dumps({"status": "ok", "user_id": user_id, "access_token": guard.issue_token(user_id)})

    @mcp.tool
    async def get_health_snapshot(
        ctx: Context,
        user_id: str,
        access_token: str,
    ) -> str:
        """Return the user's current health shadow: lifestyle, conditions and risk scores.

        Args:
            user_id: The profile to read.
            access_token: Token from issue_access_token.
        """
        try:
            guard.verify(user_id, access_token, operation="get_health_snapshot")
            user = store.get_user(user_id)
            snapshot = store.get_snapshot(user_id)
        except AuthorizationError as exc:
            return _denied(exc)
        except NotFound:
            return _not_found(user_id)

        if audit_logger is not None:
            audit_logger.log_read(user_id, version=snapshot.version)
        return json.dumps({
            "status": "ok",
            "demographics": user.demographics.as_dict(),
            "preferences": {
                "language": user.preferences.language,
                "notification_cadence": user.preferences.notification_cadence,
            },
            "snapshot": snapshot.to_dict(),
        })

    @mcp.tool
    async def get_health_history(
        ctx: Context,
        user_id: str,
        access_token: str,
        since: str = "",
        until: str = "",
        limit: int = 100,
    ) -> str:
        """Return the user's health events in the order they were recorded.

        Args:
            user_id: The profile to read.
            access_token: Token from issue_access_token.
            since: Optional ISO 8601 lower bound on event time (inclusive).
            until: Optional ISO 8601 upper bound on event time (inclusive).
            limit: Maximum number of events to return (1-500, default: 100).
        """
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            return json.dumps({"status": "error", "message": f"limit must be between 1 and {MAX_HISTORY_LIMIT}."})
        try:
            guard.verify(user_id, access_token, operation="get_health_history")
            history = store.get_history(
                user_id, TimeRange(since=since or None, until=until or None), page_size=limit
            )
            events = []
            for event in history:
                events.append({
                    "sequence_number": event.sequence_number,
                    "event_id": event.event_id,
                    "type": event.type.value,
                    "source": event.source.value,
                    "timestamp": event.timestamp,
                    "payload": event.payload,
                })
                if len(events) >= limit:
                    break
        except AuthorizationError as exc:
            return _denied(exc)
        except ValidationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})

        if audit_logger is not None:
            audit_logger.log_read(user_id, action="history_read")
        return json.dumps({"status": "ok", "user_id": user_id, "count": len(events), "events": events})

    @mcp.tool
    async def verify_health_snapshot(
        ctx: Context,
        user_id: str,
        access_token: str,
    ) -> str:
        """Check that the stored snapshot equals a full replay of the event log.

        A diverged snapshot is rebuilt from the log and the rebuild is audited.

        Args:
            user_id: The profile to verify.
            access_token: Token from issue_access_token.
        """
        try:
            guard.verify(user_id, access_token, operation="verify_health_snapshot")
            consistent = store.verify_snapshot(user_id)
            version = store.get_snapshot(user_id).version
        except AuthorizationError as exc:
            return _denied(exc)
        except NotFound:
            return _not_found(user_id)
        return json.dumps({
            "status": "ok",
            "user_id": user_id,
            "consistent": consistent,
            "rebuilt": not consistent,
            "version": version,
        })

    @mcp.tool
    async def update_notification_preferences(
        ctx: Context,
        user_id: str,
        access_token: str,
        language: str = "",
        notification_cadence: str = "",
    ) -> str:
        """Change the user's reply language or reminder cadence.

        Args:
            user_id: The profile to update.
            access_token: Token from issue_access_token.
            language: New language code (e.g. 'sw'). Empty keeps the current one.
            notification_cadence: 'daily', 'weekly' or 'off'. Empty keeps the current one.
        """
        if notification_cadence and notification_cadence not in NOTIFICATION_CADENCES:
            return json.dumps({
                "status": "error",
                "message": f"notification_cadence must be one of {', '.join(NOTIFICATION_CADENCES)}.",
            })
        try:
            guard.verify(user_id, access_token, operation="update_notification_preferences")
            user = store.update_preferences(
                user_id,
                language=language or None,
                notification_cadence=notification_cadence or None,
            )
        except AuthorizationError as exc:
            return _denied(exc)
        except NotFound:
            return _not_found(user_id)
        except ValidationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return json.dumps({
            "status": "updated",
            "user_id": user_id,
            "language": user.preferences.language,
            "notification_cadence": user.preferences.notification_cadence,
        })
