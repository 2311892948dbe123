"""Tests for the audit trail MCP tool."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client, FastMCP

from healthshadow.domains.health.tools.audit_tools import register_audit_tools


def _run(coro):
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _json(result) -> dict:
    return json.loads(result.content[0].text)


@pytest.fixture
def client(audit_logger):
    mcp = FastMCP("audit-test")
    register_audit_tools(mcp, audit_logger)
    return Client(mcp)


def _backdate(shadow_db, action: str, timestamp: str) -> None:
    with shadow_db.lock:
        shadow_db.connection.execute(
            "UPDATE audit_log SET timestamp = ? WHERE action = ?", (timestamp, action)
        )


class TestGetAuditLog:
    def test_total_matches_the_window(self, client, audit_logger, shadow_db):
        audit_logger.log_read("user-1")
        audit_logger.log_delete("user-2", count=3)
        audit_logger.log_delete("user-3", count=1)
        _backdate(shadow_db, "profile_delete", "2001-01-01T00:00:00+00:00")

        async def _check():
            async with client:
                return _json(await client.call_tool("get_audit_log", {"days": 7}))

        data = _run(_check())
        assert data["period_days"] == 7
        assert data["total_events"] == 1
        assert [e["action"] for e in data["recent_events"]] == ["profile_read"]

    def test_total_for_action_ignores_older_entries(self, client, audit_logger, shadow_db):
        audit_logger.log_delete("user-2", count=3)
        _backdate(shadow_db, "profile_delete", "2001-01-01T00:00:00+00:00")
        audit_logger.log_delete("user-3", count=1)

        async def _check():
            async with client:
                return _json(await client.call_tool(
                    "get_audit_log", {"days": 30, "action": "profile_delete"},
                ))

        data = _run(_check())
        assert data["total_events"] == 1
        assert len(data["recent_events"]) == 1

    def test_total_can_exceed_limit(self, client, audit_logger):
        for _ in range(4):
            audit_logger.log_read("user-1")

        async def _check():
            async with client:
                return _json(await client.call_tool("get_audit_log", {"limit": 2}))

        data = _run(_check())
        assert data["total_events"] == 4
        assert len(data["recent_events"]) == 2

    def test_invalid_window_rejected(self, client):
        async def _check():
            async with client:
                return _json(await client.call_tool("get_audit_log", {"days": 0}))

        assert _run(_check())["status"] == "error"
