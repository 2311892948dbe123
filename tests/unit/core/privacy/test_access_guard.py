"""Tests for AccessGuard — per-profile HMAC tokens."""

from __future__ import annotations

import pytest

from healthshadow.core.errors import AuthorizationError
from healthshadow.core.privacy.access import AccessGuard


@pytest.fixture
def guard(audit_logger) -> AccessGuard:
    return AccessGuard("operator-secret", audit_logger)


class TestTokens:
    def test_issued_token_verifies(self, guard):
        token = guard.issue_token("user-1")
        guard.verify("user-1", token, operation="get_health_snapshot")

    def test_tokens_are_per_user(self, guard):
        assert guard.issue_token("user-1") != guard.issue_token("user-2")

    def test_token_for_other_user_rejected(self, guard):
        token = guard.issue_token("user-2")
        with pytest.raises(AuthorizationError):
            guard.verify("user-1", token, operation="get_health_snapshot")

    def test_empty_token_rejected(self, guard):
        with pytest.raises(AuthorizationError):
            guard.verify("user-1", "", operation="delete_health_profile")

    def test_rotating_secret_invalidates_tokens(self, guard):
        token = guard.issue_token("user-1")
        rotated = AccessGuard("new-secret")
        with pytest.raises(AuthorizationError):
            rotated.verify("user-1", token, operation="get_health_snapshot")

    @pytest.mark.parametrize("token", ["tökén", "é" * 64, "\ud800"])
    def test_non_ascii_token_is_denied(self, guard, audit_logger, token):
        with pytest.raises(AuthorizationError):
            guard.verify("user-1", token, operation="get_health_snapshot")
        assert audit_logger.count_events(action="access_denied") == 1

    def test_denial_is_audited(self, guard, audit_logger):
        with pytest.raises(AuthorizationError):
            guard.verify("user-1", "forged", operation="get_health_history")
        rows = audit_logger.get_events(action="access_denied", user_id="user-1")
        assert len(rows) == 1
        assert "get_health_history" in rows[0]["metadata_json"]


class TestDisabledGuard:
    def test_disabled_without_secret(self):
        assert AccessGuard("").enabled is False

    def test_disabled_guard_cannot_issue(self):
        with pytest.raises(AuthorizationError, match="disabled"):
            AccessGuard("").issue_token("user-1")

    def test_disabled_guard_denies_everything(self):
        with pytest.raises(AuthorizationError):
            AccessGuard("").verify("user-1", "anything", operation="get_health_snapshot")


class TestOperator:
    def test_matching_secret(self, guard):
        assert guard.is_operator("operator-secret") is True

    def test_wrong_secret(self, guard):
        assert guard.is_operator("guess") is False

    def test_disabled_guard_has_no_operator(self):
        assert AccessGuard("").is_operator("") is False

    def test_non_ascii_secret_is_not_operator(self, guard):
        assert guard.is_operator("opérator-secret\ud800") is False
