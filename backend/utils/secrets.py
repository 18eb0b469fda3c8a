"""Helpers for encrypting/decrypting secrets stored in the credential database."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from utils.logger import get_logger

logger = get_logger("secrets")

_ENC_PREFIX = "enc:v1:"


def _derive_fernet_key(raw_key: str) -> bytes:
    """Derive a Fernet-compatible key from arbitrary input."""
    # Fernet expects 32-byte URL-safe base64 data.
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SecretBox:
    """Encrypts secret columns when a key is configured.

    Without a key, values are stored as plaintext and encrypted values read
    back from the database cannot be recovered.
    """

    def __init__(self, secret_key: Optional[str]):
        self._fernet = Fernet(_derive_fernet_key(secret_key)) if secret_key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        """Encrypt a plaintext secret value. Returns original when no key is set."""
        if value is None or value == "":
            return None
        if is_encrypted(value):
            return value
        if self._fernet is None:
            return value
        token = self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        return _ENC_PREFIX + token

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """Decrypt a stored secret value. Plaintext values are returned unchanged."""
        if value is None or value == "":
            return None
        if not is_encrypted(value):
            return value
        if self._fernet is None:
            logger.warning("Encrypted secret cannot be decrypted without AGENT_SECRETS_KEY")
            return None
        token = value[len(_ENC_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.warning("Failed to decrypt stored secret", error=str(exc))
            return None


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value and value.startswith(_ENC_PREFIX))
