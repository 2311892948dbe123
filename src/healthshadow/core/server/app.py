"""Health Shadow MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery (`fastmcp run healthshadow/core/server/app.py:mcp`)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastmcp import FastMCP

from healthshadow.core.audit.logger import AuditLogger
from healthshadow.core.collaborators.contacts import EmergencyContactLookup, StaticEmergencyContacts
from healthshadow.core.collaborators.resilience import RetryPolicy
from healthshadow.core.config.settings import Settings, get_settings
from healthshadow.core.knowledge.loader import load_knowledge_directory
from healthshadow.core.knowledge.registry import KnowledgeRegistry
from healthshadow.core.privacy.access import AccessGuard
from healthshadow.core.storage.database import ShadowDatabase
from healthshadow.core.storage.encryption import PayloadCipher
from healthshadow.core.storage.shadow_store import ShadowStore
from healthshadow.core.translation.translator import Translator, TranslationService, create_translator
from healthshadow.domains.health.connectors import MessageDispatcher, VisionAnalyzer
from healthshadow.domains.health.connectors.messaging import RecordingDispatcher
from healthshadow.domains.health.connectors.observations import SpeechAdapter, VisionAdapter
from healthshadow.domains.health.connectors.providers import (
    KeywordSymptomExtractor,
    StaticVisionAnalyzer,
    TextSpeechRecognizer,
)
from healthshadow.domains.health.conversation.sessions import SessionStore
from healthshadow.domains.health.conversation.state_machine import ConversationStateMachine
from healthshadow.domains.health.domain_logic.derivation import DerivationPipeline
from healthshadow.domains.health.domain_logic.diagnosis import DiagnosisEngine, EngineConfig
from healthshadow.domains.health.notifications import NotificationSweep
from healthshadow.domains.health.service import HealthShadowService
from healthshadow.domains.health.tools.audit_tools import register_audit_tools
from healthshadow.domains.health.tools.conversation_tools import register_conversation_tools
from healthshadow.domains.health.tools.data_management_tools import register_data_management_tools
from healthshadow.domains.health.tools.shadow_tools import register_shadow_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "Health Shadow"
SERVER_VERSION = "0.1.0"

# Condition, emergency pattern and contact YAML lives under src/healthshadow/domains/health/knowledge/
_KNOWLEDGE_DIR = Path(__file__).resolve().parent.parent.parent / "domains" / "health" / "knowledge"


def _create_translator(settings: Settings) -> Translator:
    if settings.translation_provider == "mock":
        provider_name = "mock"
        api_key = ""
        model = ""
    elif settings.translation_provider == "anthropic":
        api_key = settings.anthropic_api_key
        model = settings.anthropic_model
        provider_name = "anthropic" if api_key else "mock"
    elif settings.translation_provider == "openai":
        api_key = settings.openai_api_key
        model = settings.openai_model
        provider_name = "openai" if api_key else "mock"
    else:  # pragma: no cover
        raise ValueError(f"Unknown translation provider: {settings.translation_provider!r}")

    if provider_name == "mock" and settings.translation_provider != "mock":
        logger.warning(
            "No API key configured for provider '%s'; falling back to mock translator",
            settings.translation_provider,
        )
    return create_translator(provider_name=provider_name, api_key=api_key, model=model)


def _open_database(settings: Settings) -> tuple[ShadowDatabase, PayloadCipher]:
    if settings.encryption_key:
        cipher = PayloadCipher.from_setting(settings.encryption_key)
        database = ShadowDatabase(settings.db_path)
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured — using an in-memory store with a throwaway key. "
            "Profiles will be lost on restart. Set ENCRYPTION_KEY to persist to %s.",
            settings.db_path,
        )
        cipher = PayloadCipher([PayloadCipher.generate_key()])
        database = ShadowDatabase(":memory:")
    database.initialize()
    logger.info(
        "Shadow store initialized (schema v%d, %d key(s))",
        database.get_schema_version(),
        cipher.key_count,
    )
    return database, cipher


def create_app(
    *,
    settings_override: Settings | None = None,
    database_override: ShadowDatabase | None = None,
    dispatcher_override: MessageDispatcher | None = None,
    translator_override: Translator | None = None,
    vision_analyzer_override: VisionAnalyzer | None = None,
    contacts_override: EmergencyContactLookup | None = None,
) -> FastMCP:
    """Create and configure the Health Shadow MCP server.

    This is the main application factory. It:
    1. Loads the condition, emergency pattern and contact knowledge base
    2. Opens the encrypted event store and the audit trail
    3. Builds the diagnosis engine, conversation state machine and sessions
    4. Creates the translation, messaging and observation collaborators
    5. Registers all tools, and the background session clock / notification sweep
    """
    settings = settings_override or get_settings()

    # --- Knowledge base ---
    registry = KnowledgeRegistry()
    loaded = load_knowledge_directory(_KNOWLEDGE_DIR, registry)
    logger.info("Loaded %d knowledge entries from %s", loaded, _KNOWLEDGE_DIR)

    # --- Storage ---
    if database_override is not None:
        database = database_override
        database.initialize()
        cipher = PayloadCipher.from_setting(settings.encryption_key or PayloadCipher.generate_key())
    else:
        database, cipher = _open_database(settings)
    audit_logger = AuditLogger(database)
    store = ShadowStore(database, cipher, DerivationPipeline.from_settings(settings), audit_logger)

    # --- Decision and conversation ---
    contacts = contacts_override or StaticEmergencyContacts(registry)
    engine = DiagnosisEngine(registry, EngineConfig.from_settings(settings), contacts=contacts)
    machine = ConversationStateMachine.from_settings(settings)
    sessions = SessionStore(ttl_seconds=settings.session_ttl_seconds)

    # --- Collaborators ---
    policy = RetryPolicy.from_settings(settings)
    translation = TranslationService(translator_override or _create_translator(settings), policy)
    dispatcher = dispatcher_override or RecordingDispatcher()
    vision = VisionAdapter(vision_analyzer_override or StaticVisionAnalyzer(), policy)
    speech = SpeechAdapter(TextSpeechRecognizer(), KeywordSymptomExtractor(engine.extract_symptoms), policy)

    service = HealthShadowService(
        store,
        engine,
        machine,
        sessions,
        translation,
        dispatcher,
        audit_logger=audit_logger,
        policy=policy,
        vision=vision,
        speech=speech,
    )
    guard = AccessGuard(settings.access_secret, audit_logger)
    if not guard.enabled:
        logger.warning("No ACCESS_SECRET configured — profile read and delete tools will deny every call")

    sweep = NotificationSweep(
        store,
        sessions,
        deliver=service.deliver,
        check_interval=settings.sweep_interval_seconds,
        tick=service.tick,
        tick_interval=settings.tick_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        await sweep.start()
        try:
            yield {}
        finally:
            await sweep.stop()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Health Shadow Engine. Keeps a private, event-sourced health record per user, "
            "answers symptom descriptions with ranked possible conditions and clarifying "
            "questions, and escalates emergency red flags immediately. Guidance only, "
            "never a diagnosis."
        ),
        lifespan=lifespan,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        stats = registry.stats()
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "conditions_loaded": stats["conditions"],
            "emergency_patterns_loaded": stats["emergency_patterns"],
            "profiles_stored": len(store.list_user_ids()),
            "active_sessions": len(sessions),
            "translation_provider": settings.translation_provider,
            "access_tokens_enabled": guard.enabled,
        }

    register_conversation_tools(server, service)
    register_shadow_tools(server, store, guard, audit_logger)
    register_data_management_tools(server, service, guard)
    register_audit_tools(server, audit_logger)
    logger.info("Health shadow tools registered")

    return server


# Module-level instance for FastMCP discovery (`fastmcp run .../app.py:mcp`).
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
