"""Shared test fixtures for Health Shadow tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRANSLATION_PROVIDER", "mock")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("ACCESS_SECRET", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from healthshadow.core.collaborators.resilience import RetryPolicy  # noqa: E402
from healthshadow.core.knowledge.loader import load_knowledge_directory  # noqa: E402
from healthshadow.core.knowledge.registry import KnowledgeRegistry  # noqa: E402

KNOWLEDGE_DIR = _SRC_DIR / "healthshadow" / "domains" / "health" / "knowledge"

# No real waiting in retry paths
FAST_POLICY = RetryPolicy(timeout_seconds=0.5, max_attempts=3, base_backoff_seconds=0.0)


class FakeClock:
    """Manually advanced clock for session and timeout tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

@pytest.fixture
def knowledge() -> KnowledgeRegistry:
    """Registry loaded from the shipped condition, red-flag and contact YAML."""
    registry = KnowledgeRegistry()
    load_knowledge_directory(KNOWLEDGE_DIR, registry)
    return registry


@pytest.fixture
def diagnosis_engine(knowledge):
    from healthshadow.core.collaborators.contacts import StaticEmergencyContacts
    from healthshadow.domains.health.domain_logic.diagnosis import DiagnosisEngine

    return DiagnosisEngine(knowledge, contacts=StaticEmergencyContacts(knowledge))


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def shadow_db():
    """Create an in-memory ShadowDatabase for testing."""
    from healthshadow.core.storage.database import ShadowDatabase

    db = ShadowDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def payload_cipher():
    """Create a PayloadCipher with a fresh test key."""
    from cryptography.fernet import Fernet

    from healthshadow.core.storage.encryption import PayloadCipher

    return PayloadCipher([Fernet.generate_key().decode()])


@pytest.fixture
def audit_logger(shadow_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from healthshadow.core.audit.logger import AuditLogger

    return AuditLogger(shadow_db)


@pytest.fixture
def shadow_store(shadow_db, payload_cipher, audit_logger):
    """Create a ShadowStore backed by in-memory SQLite."""
    from healthshadow.core.storage.shadow_store import ShadowStore
    from healthshadow.domains.health.domain_logic.derivation import DerivationPipeline

    return ShadowStore(shadow_db, payload_cipher, DerivationPipeline(), audit_logger)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher():
    from healthshadow.domains.health.connectors.messaging import RecordingDispatcher

    return RecordingDispatcher()


@pytest.fixture
def mock_translator():
    from healthshadow.core.translation.providers.mock import MockTranslator

    return MockTranslator()


@pytest.fixture
def sessions():
    from healthshadow.domains.health.conversation.sessions import SessionStore

    return SessionStore(ttl_seconds=1800)


@pytest.fixture
def service(shadow_store, diagnosis_engine, sessions, dispatcher, mock_translator, audit_logger, clock):
    """HealthShadowService wired to in-memory storage and recording collaborators."""
    from healthshadow.core.translation.translator import TranslationService
    from healthshadow.domains.health.connectors.observations import SpeechAdapter, VisionAdapter
    from healthshadow.domains.health.connectors.providers import (
        KeywordSymptomExtractor,
        StaticVisionAnalyzer,
        TextSpeechRecognizer,
    )
    from healthshadow.domains.health.conversation.state_machine import ConversationStateMachine
    from healthshadow.domains.health.service import HealthShadowService

    return HealthShadowService(
        shadow_store,
        diagnosis_engine,
        ConversationStateMachine(acknowledgment_phrases=("i am safe", "acknowledged")),
        sessions,
        TranslationService(mock_translator, FAST_POLICY),
        dispatcher,
        audit_logger=audit_logger,
        policy=FAST_POLICY,
        vision=VisionAdapter(StaticVisionAnalyzer(), FAST_POLICY),
        speech=SpeechAdapter(
            TextSpeechRecognizer(),
            KeywordSymptomExtractor(diagnosis_engine.extract_symptoms),
            FAST_POLICY,
        ),
        clock=clock,
    )
