"""Profile access control for the read and erase surfaces.

Every profile operation exposed over MCP requires a per-profile token: an
HMAC-SHA256 of the user id under the server's ``ACCESS_SECRET``. Tokens are
stateless, so there is nothing to store or revoke per user; rotating the
secret invalidates all of them at once.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import TYPE_CHECKING

from healthshadow.core.errors import AuthorizationError

if TYPE_CHECKING:
    from healthshadow.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


class AccessGuard:
    """Issues and checks per-profile access tokens.

    With an empty secret the guard is disabled and denies everything.
    """

    def __init__(self, secret: str, audit_logger: AuditLogger | None = None) -> None:
        self._secret = secret.encode("utf-8")
        self._audit = audit_logger

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def issue_token(self, user_id: str) -> str:
        if not self.enabled:
            raise AuthorizationError("Access tokens are disabled: ACCESS_SECRET is not set")
        return hmac.new(self._secret, user_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def is_operator(self, secret: str) -> bool:
        """True when ``secret`` is the configured ``ACCESS_SECRET``."""
        return self.enabled and hmac.compare_digest(self._secret, secret.encode("utf-8", "replace"))

    def verify(self, user_id: str, token: str, *, operation: str) -> None:
        """Raise ``AuthorizationError`` (and audit the denial) unless ``token`` is valid."""
        valid = self.enabled and bool(token) and hmac.compare_digest(
            hmac.new(self._secret, user_id.encode("utf-8"), hashlib.sha256).hexdigest().encode("ascii"),
            token.encode("utf-8", "replace"),
        )
        if valid:
            return
        logger.warning("Denied %s: invalid access token", operation)
        if self._audit is not None:
            self._audit.log_denied(user_id, operation=operation)
        raise AuthorizationError(f"Invalid access token for {operation}")
