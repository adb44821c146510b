"""Encryption of mailbox passwords at rest."""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from ..core.config import SecuritySettings
from ..core.interfaces import SecretError, SecretProvider

LOGGER = logging.getLogger(__name__)


class SecretCipher(SecretProvider):
    """Encrypt and reveal mailbox secrets with a Fernet key.

    A blob that fails to decrypt is never used as a plaintext password; the
    caller gets a :class:`SecretError` and treats it like an authentication
    failure.
    """

    def __init__(self, key: str | bytes | None) -> None:
        """Initialise the cipher; a missing key leaves it unable to reveal."""
        self._fernet: Fernet | None = None
        if key:
            raw_key = key.encode() if isinstance(key, str) else key
            try:
                self._fernet = Fernet(raw_key)
            except (ValueError, TypeError) as exc:
                raise SecretError("Encryption key is not a valid Fernet key") from exc

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> SecretCipher:
        """Build a cipher from application settings."""
        return cls(settings.encryption_key)

    @staticmethod
    def generate_key() -> str:
        """Return a fresh key suitable for ``INBOX_SYNC_SECURITY__ENCRYPTION_KEY``."""
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """Return the encrypted blob for ``plaintext``."""
        return self._require_fernet().encrypt(plaintext.encode()).decode()

    def reveal(self, blob: str) -> str:
        """Return the plaintext for ``blob``."""
        fernet = self._require_fernet()
        try:
            return fernet.decrypt(blob.encode()).decode()
        except (InvalidToken, UnicodeDecodeError) as exc:
            LOGGER.debug("Stored secret could not be decrypted")
            raise SecretError("Stored mailbox secret could not be decrypted") from exc

    def _require_fernet(self) -> Fernet:
        if self._fernet is None:
            raise SecretError("No encryption key configured for mailbox secrets")
        return self._fernet


__all__ = ["SecretCipher"]
