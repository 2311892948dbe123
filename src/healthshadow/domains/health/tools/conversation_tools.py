"""MCP tools for the conversational surface: chat messages and raw observations.

Inbound content is handled by ``HealthShadowService``; these tools only
decode transport arguments and shape the JSON response.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthshadow.core.errors import NotFound, ValidationError

if TYPE_CHECKING:
    from healthshadow.domains.health.service import HealthShadowService, MessageOutcome

logger = logging.getLogger(__name__)


def _decode(data: str, what: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{what} must be base64 encoded") from exc


def _outcome_json(outcome: MessageOutcome, start_time: float) -> str:
    result = outcome.to_dict()
    result["status"] = "ok" if outcome.error is None else "degraded"
    result["duration_ms"] = round((time.monotonic() - start_time) * 1000, 1)
    return json.dumps(result)


def register_conversation_tools(mcp: FastMCP, service: HealthShadowService) -> None:
    """Register messaging and observation tools on the MCP server."""

    @mcp.tool
    async def send_message(
        ctx: Context,
        user_id: str,
        text: str,
        language: str = "",
    ) -> str:
        """Send one chat message from a user to their health shadow.

        New users are onboarded first. Symptom descriptions are checked for
        emergency red flags, then scored against the condition knowledge base.
        Replies are translated into the user's language before delivery.

        Args:
            user_id: Stable identifier of the user (e.g. a hashed phone number).
            text: The message text.
            language: Language code for first contact (e.g. 'hi'). Ignored once a profile exists.
        """
        if not user_id or not text.strip():
            return json.dumps({"status": "error", "message": "user_id and text are required."})

        start_time = time.monotonic()
        try:
            outcome = await service.handle_message(user_id, text, language=language or None)
        except ValidationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return _outcome_json(outcome, start_time)

    @mcp.tool
    async def submit_image_observation(
        ctx: Context,
        user_id: str,
        image_base64: str,
    ) -> str:
        """Submit a photo (e.g. of a rash or of the eyes) for visual health analysis.

        A blurry or unusable image is recorded as a failed quality check and
        does not change any risk score.

        Args:
            user_id: Identifier of an onboarded user.
            image_base64: The image bytes, base64 encoded.
        """
        start_time = time.monotonic()
        try:
            outcome = await service.submit_image(user_id, _decode(image_base64, "image"))
        except ValidationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        except NotFound:
            return json.dumps({
                "status": "not_found",
                "message": "No profile for this user. Send a message first to onboard.",
            })
        return _outcome_json(outcome, start_time)

    @mcp.tool
    async def submit_voice_observation(
        ctx: Context,
        user_id: str,
        audio_base64: str,
    ) -> str:
        """Submit a voice note describing symptoms.

        The note is transcribed, symptoms are extracted and then handled like
        a typed symptom description.

        Args:
            user_id: Identifier of an onboarded user.
            audio_base64: The audio bytes, base64 encoded.
        """
        start_time = time.monotonic()
        try:
            outcome = await service.submit_audio(user_id, _decode(audio_base64, "audio"))
        except ValidationError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        except NotFound:
            return json.dumps({
                "status": "not_found",
                "message": "No profile for this user. Send a message first to onboard.",
            })
        return _outcome_json(outcome, start_time)
