"""
Credential primitives shared by the broker components

- Opaque random tokens for client ids, states, codes and bearer tokens
- SHA-256 hashing so raw credentials are never persisted
- Legacy long-lived API keys
- Optional at-rest encryption of stored upstream OAuth tokens
"""

import base64
import hashlib
import logging
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken as InvalidCiphertext
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import StorageFailure

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "gcal_"

CLIENT_ID_BYTES = 16
STATE_BYTES = 16
CODE_BYTES = 32
BEARER_TOKEN_BYTES = 32


def generate_secure_token(nbytes: int = 32) -> str:
    """Return nbytes of randomness encoded as unpadded base64url"""
    return secrets.token_urlsafe(nbytes)


def hash_token(value: str) -> str:
    """SHA-256 hex digest of a credential"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    """Generate a legacy API key of the form gcal_<64 hex chars>"""
    return API_KEY_PREFIX + secrets.token_hex(32)


def is_legacy_api_key(value: str) -> bool:
    return value.startswith(API_KEY_PREFIX)


class TokenCipher:
    """
    Encrypts serialized upstream tokens before they reach the store

    Without a key the cipher is a pass-through. Ciphertext is tagged with
    an "enc:" prefix so rows written before encryption was enabled are
    still readable.
    """

    PREFIX = "enc:"
    SALT = b"mcp-gcal-upstream-token"
    ITERATIONS = 390000

    def __init__(self, secret: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        if secret:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=self.SALT,
                iterations=self.ITERATIONS,
            )
            key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
            self._fernet = Fernet(key)

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            return plaintext
        return self.PREFIX + self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, stored: str) -> str:
        """
        Recover the serialized token

        Raises:
            StorageFailure: If the value is encrypted and no usable key is configured
        """
        if not stored.startswith(self.PREFIX):
            return stored
        if self._fernet is None:
            raise StorageFailure("stored upstream token is encrypted but no key is configured")
        try:
            return self._fernet.decrypt(stored[len(self.PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidCiphertext as e:
            logger.error("Failed to decrypt stored upstream token")
            raise StorageFailure("stored upstream token could not be decrypted") from e
