"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Health Shadow Engine configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default; the MCP surface carries per-profile tokens but no
    # transport-level auth.
    shadow_host: str = "127.0.0.1"
    shadow_port: int = 8010
    shadow_log_level: str = "info"
    shadow_allow_insecure_bind: bool = False

    # Storage (event log + snapshots)
    db_path: str = "~/.healthshadow/shadow.db"
    # Comma-separated Fernet keys, newest first. Older keys stay readable.
    encryption_key: str = ""

    # Access tokens (HMAC secret). Empty disables the MCP read/delete tools.
    access_secret: str = ""

    # Translation collaborator
    translation_provider: Literal["anthropic", "openai", "mock"] = "mock"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"

    # Derivation
    risk_delta_threshold: float = 0.20
    risk_alert_threshold: float = 0.60
    exercise_drop_ratio: float = 0.5

    # Diagnosis
    ambiguity_epsilon: float = 0.05
    required_symptom_penalty: float = 0.5
    risk_boost: float = 0.10
    max_clarifying_questions: int = 3
    default_location: str = "DEFAULT"

    # Conversation
    acknowledgment_policy: Literal["explicit", "any_message"] = "explicit"
    acknowledgment_phrases: list[str] = [
        "acknowledged",
        "i am safe",
        "i'm safe",
        "safe now",
        "understood",
        "got it",
    ]
    session_ttl_seconds: int = 1800
    feedback_timeout_seconds: int = 900

    # Collaborators (vision, speech, translation, messaging)
    collaborator_timeout_seconds: float = 10.0
    collaborator_max_attempts: int = 3
    collaborator_base_backoff_seconds: float = 0.5

    # Background loop: session clock every tick, notification sweep every interval
    tick_interval_seconds: int = 60
    sweep_interval_seconds: int = 3600


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
