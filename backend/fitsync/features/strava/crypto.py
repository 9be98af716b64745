"""
Versioned token encryption.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC-SHA256) under the
active key version. The version is stored next to the ciphertext so a
record written under an older key stays readable after rotation.

Keys are configured as TOKEN_ENCRYPTION_KEYS="1:<fernet key>,2:<fernet key>".
Generate a key with:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import logging
from typing import Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from fitsync.config import settings

logger = logging.getLogger(__name__)


class TokenCryptoError(Exception):
    """Token encryption/decryption error."""
    pass


class UnknownKeyVersionError(TokenCryptoError):
    """Record was encrypted with a key version we no longer hold."""

    def __init__(self, version: int):
        super().__init__(f"No encryption key for version {version}")
        self.version = version


class TokenCipher:
    """
    Keyring of Fernet keys indexed by version.

    Usage:
        cipher = TokenCipher({1: old_key, 2: new_key})
        ciphertext, version = cipher.encrypt("access-token")
        plain = cipher.decrypt(ciphertext, version)
    """

    def __init__(self, keys: Mapping[int, str | bytes], active_version: Optional[int] = None):
        if not keys:
            raise TokenCryptoError("No token encryption keys configured")

        self._fernets: dict[int, Fernet] = {}
        for version, key in keys.items():
            try:
                self._fernets[int(version)] = Fernet(key)
            except (ValueError, TypeError) as e:
                raise TokenCryptoError(f"Invalid encryption key for version {version}") from e

        self.active_version = active_version if active_version is not None else max(self._fernets)
        if self.active_version not in self._fernets:
            raise UnknownKeyVersionError(self.active_version)

    @classmethod
    def from_settings(cls) -> "TokenCipher":
        """Build the keyring from application settings."""
        return cls(
            settings.encryption_keys,
            settings.token_encryption_active_version,
        )

    @property
    def versions(self) -> list[int]:
        return sorted(self._fernets)

    def encrypt(self, plaintext: str) -> tuple[str, int]:
        """
        Encrypt with the active key.

        Returns:
            (ciphertext, key_version)
        """
        token = self._fernets[self.active_version].encrypt(plaintext.encode("utf-8"))
        return token.decode("ascii"), self.active_version

    def decrypt(self, ciphertext: str, version: int) -> str:
        """
        Decrypt with the key the record was written under.

        Raises:
            UnknownKeyVersionError: Key version not in keyring
            TokenCryptoError: Ciphertext corrupt or key mismatch
        """
        fernet = self._fernets.get(version)
        if fernet is None:
            raise UnknownKeyVersionError(version)
        try:
            return fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            # Never include the ciphertext in the message
            raise TokenCryptoError(f"Token decryption failed (key v{version})") from e

    def needs_rotation(self, version: int) -> bool:
        return version != self.active_version
