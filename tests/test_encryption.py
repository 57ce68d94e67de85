"""
Tests for credential encryption.
"""
import pytest

from mailsync.services.encryption_service import CredentialDecryptionError, EncryptionService


class TestEncryptionService:
    """Test cases for EncryptionService."""

    def test_round_trip_with_passphrase(self):
        service = EncryptionService("a passphrase that is not a fernet key")
        token = service.encrypt_json({"access_token": "abc", "refresh_token": "def"})

        assert "abc" not in token
        assert service.decrypt_json(token) == {"access_token": "abc", "refresh_token": "def"}

    def test_accepts_generated_fernet_key(self):
        key = EncryptionService.generate_key()
        service = EncryptionService(key)

        assert service.decrypt(service.encrypt("secret")) == "secret"

    def test_wrong_key_raises_decryption_error(self):
        token = EncryptionService("key-one").encrypt("secret")

        with pytest.raises(CredentialDecryptionError):
            EncryptionService("key-two").decrypt(token)

    def test_empty_values(self):
        service = EncryptionService("k")

        assert service.encrypt("") == ""
        assert service.decrypt_json("") == {}
