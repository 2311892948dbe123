"""Fernet-based payload encryption for the event log at rest.

Event payloads, demographics and snapshot state are sealed before they reach
SQLite. Keys are supplied newest-first; every key can decrypt, only the first
encrypts, so a key can be rotated without rewriting the log.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when sealing or opening a payload fails."""


class PayloadCipher:
    """Seals JSON-serializable payloads with one or more Fernet keys.

    Usage::

        cipher = PayloadCipher.from_setting("newkey,oldkey")
        token = cipher.seal({"symptoms": ["cough"]})
        cipher.open(token)  # {"symptoms": ["cough"]}
    """

    def __init__(self, keys: list[str]) -> None:
        keys = [k.strip() for k in keys if k and k.strip()]
        if not keys:
            raise EncryptionError("At least one encryption key is required")
        try:
            self._fernet = MultiFernet([Fernet(k.encode()) for k in keys])
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc
        self._key_count = len(keys)

    @classmethod
    def from_setting(cls, value: str) -> PayloadCipher:
        """Build from the comma-separated ``ENCRYPTION_KEY`` setting."""
        return cls(value.split(","))

    @property
    def key_count(self) -> int:
        return self._key_count

    def seal(self, data: Any) -> str:
        """Serialize ``data`` as canonical JSON and encrypt it."""
        try:
            plaintext = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Payload is not JSON-serializable: {exc}") from exc
        return self._fernet.encrypt(plaintext).decode("utf-8")

    def open(self, token: str) -> Any:
        """Decrypt a token produced by :meth:`seal` with any configured key."""
        if not token:
            raise EncryptionError("Empty token")
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or unknown key") from exc
        return json.loads(plaintext)

    def reseal(self, token: str) -> str:
        """Re-encrypt a token under the newest key."""
        try:
            return self._fernet.rotate(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise EncryptionError("Rotation failed: invalid token or unknown key") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key as a URL-safe base64 string."""
        return Fernet.generate_key().decode("utf-8")
