"""
POS credential encryption at rest.

Fernet (AES-128-CBC + HMAC-SHA256). The key comes from POS_ENCRYPTION_KEY;
generate one with CredentialCipher.generate_key().
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from apps.backend.services.errors import CredentialStoreError


class CredentialCipher:
    def __init__(self, key: str) -> None:
        try:
            self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)
        except (ValueError, TypeError):
            raise CredentialStoreError("POS_ENCRYPTION_KEY must be a url-safe base64 32-byte key")

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    @classmethod
    def ephemeral(cls) -> "CredentialCipher":
        # In-memory storage only: the key dies with the process, as does the data.
        return cls(cls.generate_key())

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        return self._fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            raise CredentialStoreError("Stored POS credentials could not be decrypted")
