"""Encryption of stored Evernote access tokens."""

import base64
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from shared.errors import SourceUnavailableError

logger = logging.getLogger(__name__)


class EncryptionService:
    """Fernet (AES-128-CBC + HMAC) encryption for per-user Evernote tokens."""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            encryption_key: Fernet key. Falls back to TOKEN_ENCRYPTION_KEY,
                          and generates a throwaway key when neither is set
                          (tokens encrypted with it do not survive a restart)
        """
        key = encryption_key or os.getenv('TOKEN_ENCRYPTION_KEY')
        if not key:
            logger.warning("TOKEN_ENCRYPTION_KEY not set, using an ephemeral key")
            key = Fernet.generate_key().decode()

        self.cipher = Fernet(key.encode())

    def encrypt(self, token: str) -> str:
        """Encrypt an access token for storage. Empty tokens stay empty."""
        if not token:
            return ""

        encrypted_bytes = self.cipher.encrypt(token.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, stored: str) -> str:
        """
        Decrypt a stored access token.

        Raises:
            SourceUnavailableError: If the token was encrypted with another key
                or has been tampered with; the user must reconnect Evernote
        """
        if not stored:
            return ""

        try:
            encrypted_bytes = base64.urlsafe_b64decode(stored.encode())
            return self.cipher.decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            raise SourceUnavailableError("Stored Evernote token could not be decrypted") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()
