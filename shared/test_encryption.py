"""
Unit tests for encryption utilities.

Tests the EncryptionService class which encrypts the Evernote access
tokens stored on users.
"""

import os
import pytest
from unittest.mock import patch
from cryptography.fernet import Fernet

from shared.encryption import EncryptionService
from shared.errors import SourceUnavailableError


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_encrypt_decrypt_with_provided_key(self):
        service = EncryptionService(encryption_key=Fernet.generate_key().decode())

        encrypted = service.encrypt("S=s1:U=abc:E=123")

        assert encrypted != "S=s1:U=abc:E=123"
        assert service.decrypt(encrypted) == "S=s1:U=abc:E=123"

    def test_key_from_environment(self):
        """Two services built from the same env key can read each other's tokens."""
        test_key = Fernet.generate_key().decode()

        with patch.dict(os.environ, {'TOKEN_ENCRYPTION_KEY': test_key}):
            first = EncryptionService()
            second = EncryptionService()

        assert second.decrypt(first.encrypt("token")) == "token"

    def test_ephemeral_key_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            service = EncryptionService()

        assert service.decrypt(service.encrypt("token")) == "token"

    def test_empty_token(self):
        service = EncryptionService(encryption_key=EncryptionService.generate_key())

        assert service.encrypt("") == ""
        assert service.decrypt("") == ""

    def test_decrypt_with_wrong_key(self):
        encrypted = EncryptionService(encryption_key=EncryptionService.generate_key()).encrypt("token")
        other = EncryptionService(encryption_key=EncryptionService.generate_key())

        with pytest.raises(SourceUnavailableError):
            other.decrypt(encrypted)

    def test_decrypt_garbage(self):
        service = EncryptionService(encryption_key=EncryptionService.generate_key())

        with pytest.raises(SourceUnavailableError):
            service.decrypt("not-a-token")
