"""Integration tests for the Health Shadow MCP server."""

from __future__ import annotations

import asyncio
import base64
import json

import pytest
from fastmcp import Client

from healthshadow.core.config.settings import Settings
from healthshadow.core.server.app import create_app
from healthshadow.domains.health.connectors.messaging import RecordingDispatcher


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _json(result) -> dict:
    return json.loads(result.content[0].text)


ALL_EXPECTED_TOOLS = [
    "health_check",
    "send_message",
    "submit_image_observation",
    "submit_voice_observation",
    "issue_access_token",
    "get_health_snapshot",
    "get_health_history",
    "verify_health_snapshot",
    "update_notification_preferences",
    "delete_health_profile",
    "get_audit_log",
]

SECRET = "operator-secret"


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client(dispatcher):
    """MCP client connected to a fresh server with in-memory storage."""
    settings = Settings(access_secret=SECRET, tick_interval_seconds=3600, sweep_interval_seconds=3600)
    mcp = create_app(settings_override=settings, dispatcher_override=dispatcher)
    return Client(mcp)


async def _onboard(client, user_id: str, location: str = "India") -> None:
    await client.call_tool("send_message", {"user_id": user_id, "text": "hello", "language": "en"})
    for answer in ("34", "male", location):
        await client.call_tool("send_message", {"user_id": user_id, "text": answer})


async def _token(client, user_id: str) -> str:
    result = await client.call_tool("issue_access_token", {"user_id": user_id, "access_secret": SECRET})
    return _json(result)["access_token"]


class TestServerBasics:
    def test_server_starts_and_lists_tools(self, client):
        async def _check():
            async with client:
                tools = await client.list_tools()
                tool_names = [t.name for t in tools]
                for expected in ALL_EXPECTED_TOOLS:
                    assert expected in tool_names, f"Missing tool: {expected}"
        _run(_check())

    def test_health_check_returns_ok(self, client):
        async def _check():
            async with client:
                data = _json(await client.call_tool("health_check", {}))
                assert data["status"] == "ok"
                assert data["conditions_loaded"] == 12
                assert data["emergency_patterns_loaded"] == 5
                assert data["access_tokens_enabled"] is True
                assert data["profiles_stored"] == 0
        _run(_check())


class TestConversationTools:
    def test_onboarding_then_flu_diagnosis(self, client, dispatcher):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                data = _json(await client.call_tool(
                    "send_message", {"user_id": "u1", "text": "I have fever, cough and fatigue"},
                ))
                assert data["status"] == "ok"
                assert data["state"] == "awaiting_feedback"
                assert data["versions"] == [1, 2]
                assert data["diagnosis"]["candidates"][0]["condition"] == "influenza"

                health = _json(await client.call_tool("health_check", {}))
                assert health["profiles_stored"] == 1
        _run(_check())
        assert dispatcher.kinds("u1")[-1] == "diagnosis"
        assert "profile_confirmation" in dispatcher.kinds("u1")

    def test_emergency_escalates_before_onboarding(self, client, dispatcher):
        async def _check():
            async with client:
                data = _json(await client.call_tool(
                    "send_message",
                    {"user_id": "walk-in", "text": "I have chest pain radiating to my left arm"},
                ))
                assert data["state"] == "emergency_active"
                assert data["diagnosis"]["emergency_flag"] is True
        _run(_check())
        assert dispatcher.kinds("walk-in") == ["emergency_alert"]
        assert "112" in dispatcher.for_user("walk-in")[0].text

    def test_blank_message_rejected(self, client):
        async def _check():
            async with client:
                data = _json(await client.call_tool("send_message", {"user_id": "u1", "text": "  "}))
                assert data["status"] == "error"
        _run(_check())

    def test_image_for_unknown_user(self, client):
        async def _check():
            async with client:
                image = base64.b64encode(b"not really a jpeg").decode()
                data = _json(await client.call_tool(
                    "submit_image_observation", {"user_id": "ghost", "image_base64": image},
                ))
                assert data["status"] == "not_found"
        _run(_check())

    def test_voice_requires_base64(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                data = _json(await client.call_tool(
                    "submit_voice_observation", {"user_id": "u1", "audio_base64": "***"},
                ))
                assert data["status"] == "error"
                assert "base64" in data["message"]
        _run(_check())


class TestProfileTools:
    def test_snapshot_requires_token(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                data = _json(await client.call_tool(
                    "get_health_snapshot", {"user_id": "u1", "access_token": "forged"},
                ))
                assert data["status"] == "denied"

                audit = _json(await client.call_tool("get_audit_log", {"action": "access_denied"}))
                assert audit["total_events"] == 1
        _run(_check())

    def test_wrong_operator_secret(self, client):
        async def _check():
            async with client:
                data = _json(await client.call_tool(
                    "issue_access_token", {"user_id": "u1", "access_secret": "guess"},
                ))
                assert data["status"] == "denied"
        _run(_check())

    def test_snapshot_history_and_verify(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                await client.call_tool("send_message", {"user_id": "u1", "text": "I quit smoking"})
                token = await _token(client, "u1")

                snap = _json(await client.call_tool(
                    "get_health_snapshot", {"user_id": "u1", "access_token": token},
                ))
                assert snap["status"] == "ok"
                assert snap["demographics"]["location"] == "IN"
                assert snap["snapshot"]["version"] == 1
                assert snap["snapshot"]["lifestyle"]["habits"] == {"smoking": False}

                history = _json(await client.call_tool(
                    "get_health_history", {"user_id": "u1", "access_token": token},
                ))
                assert history["count"] == 1
                assert history["events"][0]["type"] == "lifestyle_change"

                verified = _json(await client.call_tool(
                    "verify_health_snapshot", {"user_id": "u1", "access_token": token},
                ))
                assert verified["consistent"] is True
                assert verified["version"] == 1
        _run(_check())

    def test_history_limit_bounds(self, client):
        async def _check():
            async with client:
                data = _json(await client.call_tool(
                    "get_health_history", {"user_id": "u1", "access_token": "x", "limit": 0},
                ))
                assert data["status"] == "error"
        _run(_check())

    def test_update_preferences(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                token = await _token(client, "u1")
                data = _json(await client.call_tool(
                    "update_notification_preferences",
                    {"user_id": "u1", "access_token": token, "language": "sw", "notification_cadence": "daily"},
                ))
                assert data["status"] == "updated"
                assert data["language"] == "sw"
                assert data["notification_cadence"] == "daily"

                bad = _json(await client.call_tool(
                    "update_notification_preferences",
                    {"user_id": "u1", "access_token": token, "notification_cadence": "hourly"},
                ))
                assert bad["status"] == "error"
        _run(_check())


class TestDeleteProfile:
    def test_delete_requires_confirmation(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                token = await _token(client, "u1")
                data = _json(await client.call_tool(
                    "delete_health_profile", {"user_id": "u1", "access_token": token},
                ))
                assert data["status"] == "confirmation_required"

                health = _json(await client.call_tool("health_check", {}))
                assert health["profiles_stored"] == 1
        _run(_check())

    def test_delete_with_confirmation(self, client):
        async def _check():
            async with client:
                await _onboard(client, "u1")
                await client.call_tool("send_message", {"user_id": "u1", "text": "I have fever, cough and fatigue"})
                token = await _token(client, "u1")
                data = _json(await client.call_tool(
                    "delete_health_profile", {"user_id": "u1", "access_token": token, "confirm": "DELETE"},
                ))
                assert data["status"] == "deleted"
                assert data["events_deleted"] == 2

                again = _json(await client.call_tool(
                    "get_health_snapshot", {"user_id": "u1", "access_token": token},
                ))
                assert again["status"] == "not_found"

                audit = _json(await client.call_tool("get_audit_log", {"action": "profile_delete"}))
                assert audit["total_events"] == 1
                assert "u1" not in json.dumps(audit["recent_events"])
        _run(_check())

    def test_unknown_audit_action_rejected(self, client):
        async def _check():
            async with client:
                data = _json(await client.call_tool("get_audit_log", {"action": "nonsense"}))
                assert data["status"] == "error"
        _run(_check())
