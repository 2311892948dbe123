"""Timeout and retry wrapper for calls to external collaborators."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from healthshadow.core.errors import TransientCollaboratorError, ValidationError

if TYPE_CHECKING:
    from healthshadow.core.config.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Per-attempt timeout plus exponential backoff (base, 2*base, 4*base, ...)."""

    timeout_seconds: float = 10.0
    max_attempts: int = 3
    base_backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            timeout_seconds=settings.collaborator_timeout_seconds,
            max_attempts=settings.collaborator_max_attempts,
            base_backoff_seconds=settings.collaborator_base_backoff_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return self.base_backoff_seconds * (2 ** attempt)


async def call_with_retry(
    name: str,
    factory: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Await ``factory()`` with a timeout, retrying transient failures.

    ``factory`` is called once per attempt so each attempt gets a fresh
    awaitable. Cancellation propagates immediately and ``ValidationError``
    is never retried.

    Raises:
        TransientCollaboratorError: All attempts failed or timed out.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    last_exc: BaseException | None = None

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(factory(), timeout=policy.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except ValidationError:
            raise
        except asyncio.TimeoutError as exc:
            last_exc = exc
            logger.warning(
                "%s timed out after %.1fs (attempt %d/%d)",
                name, policy.timeout_seconds, attempt + 1, attempts,
            )
        except Exception as exc:
            last_exc = exc
            logger.warning("%s failed (attempt %d/%d): %s", name, attempt + 1, attempts, exc)

        if attempt < attempts - 1:
            await asyncio.sleep(policy.backoff(attempt))

    logger.error("%s exhausted all %d attempts", name, attempts)
    raise TransientCollaboratorError(name, attempts, last_exc)
