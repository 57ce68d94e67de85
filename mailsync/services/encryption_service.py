from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import base64
import json
from typing import Optional, Dict, Any
from mailsync.config import settings
from mailsync.utils.logging import get_logger

logger = get_logger("encryption_service")


class CredentialDecryptionError(Exception):
    """Stored credential could not be decrypted with the current key."""


class EncryptionService:
    """Fernet encryption for mailbox credentials at rest."""

    def __init__(self, secret_key: Optional[str] = None):
        """
        Args:
            secret_key: Fernet key or arbitrary passphrase. Defaults to settings.secret_key.
        """
        self._key = (secret_key or settings.secret_key).encode()

        # Anything that is not already a 44-char Fernet key is stretched into one
        if len(self._key) != 44:
            self._key = self._derive_key(self._key)

        self._fernet = Fernet(self._key)

    def _derive_key(self, input_key: bytes) -> bytes:
        """Derive a proper Fernet key from input key using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"mailsync_credential_salt",
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(input_key))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, encrypted_text: str) -> str:
        if not encrypted_text:
            return ""
        try:
            return self._fernet.decrypt(encrypted_text.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt stored credential")
            raise CredentialDecryptionError("credential cannot be decrypted") from e

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        """Serialize a credential mapping and encrypt it."""
        return self.encrypt(json.dumps(data, sort_keys=True))

    def decrypt_json(self, encrypted_text: str) -> Dict[str, Any]:
        plaintext = self.decrypt(encrypted_text)
        return json.loads(plaintext) if plaintext else {}

    @staticmethod
    def generate_key() -> str:
        """Generate a new random Fernet key."""
        return Fernet.generate_key().decode()


encryption_service = EncryptionService()
