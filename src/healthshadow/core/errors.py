"""Error taxonomy shared by the store, the engines and the service layer.

* ``ValidationError`` — malformed event or payload. Raised before any mutation,
  surfaced to the caller, never retried.
* ``NotFound`` — no profile exists for the requested user.
* ``TransientCollaboratorError`` — an external collaborator timed out or was
  unavailable after the bounded retry budget was spent.
* ``IntegrityError`` — a stored snapshot diverges from a replay of the log.
  Handled inside the store by rebuilding the snapshot.
* ``AuthorizationError`` — profile access without valid credentials.
"""

from __future__ import annotations


class ShadowError(Exception):
    """Base exception for Health Shadow errors."""


class ValidationError(ShadowError):
    """An event, payload or profile failed shape validation."""


class NotFound(ShadowError):
    """No profile exists for the requested user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No health profile for user {user_id!r}")
        self.user_id = user_id


class TransientCollaboratorError(ShadowError):
    """An external collaborator failed after all retry attempts."""

    def __init__(self, collaborator: str, attempts: int, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Collaborator {collaborator!r} unavailable after {attempts} attempt(s){detail}"
        )
        self.collaborator = collaborator
        self.attempts = attempts
        self.cause = cause


class IntegrityError(ShadowError):
    """The materialized snapshot does not match a replay of the event log."""


class AuthorizationError(ShadowError):
    """Access to a profile was denied."""
