"""
PKCE (Proof Key for Code Exchange) verification, RFC 7636

Only the S256 transform is supported:
- challenge = BASE64URL(SHA256(ASCII(code_verifier))) without padding
- comparison is constant-time
- there is no "plain" fallback
"""

import base64
import hashlib
import logging
import secrets
import string
from dataclasses import dataclass

logger = logging.getLogger(__name__)

S256 = "S256"


@dataclass
class PKCEChallenge:
    """PKCE challenge data structure"""
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = S256


class PKCEError(ValueError):
    """Malformed code verifier"""


class PKCEVerifier:
    """
    Stateless PKCE S256 verification

    Requirements:
    - code_verifier: 43-128 characters
    - Allowed characters: A-Z, a-z, 0-9, "-", ".", "_", "~"
    """

    VALID_CHARS = frozenset(string.ascii_letters + string.digits + "-._~")

    MIN_VERIFIER_LENGTH = 43
    MAX_VERIFIER_LENGTH = 128

    SUPPORTED_METHODS = (S256,)

    @classmethod
    def generate_code_verifier(cls, nbytes: int = 64) -> str:
        """
        Generate a random code verifier

        Args:
            nbytes: Bytes of randomness; 32 to 96 keeps the result within 43-128 characters

        Returns:
            Unpadded base64url code verifier
        """
        verifier = secrets.token_urlsafe(nbytes)
        cls._validate_code_verifier(verifier)
        return verifier

    @classmethod
    def generate_code_challenge(cls, code_verifier: str) -> str:
        """
        Compute the S256 challenge for a verifier

        Raises:
            PKCEError: If the verifier is malformed
        """
        cls._validate_code_verifier(code_verifier)
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    @classmethod
    def create_pkce_challenge(cls) -> PKCEChallenge:
        """Create a verifier and its S256 challenge"""
        code_verifier = cls.generate_code_verifier()
        return PKCEChallenge(
            code_verifier=code_verifier,
            code_challenge=cls.generate_code_challenge(code_verifier),
        )

    @classmethod
    def verify(cls, code_verifier: str, code_challenge: str) -> bool:
        """
        Check a verifier against a stored S256 challenge

        Args:
            code_verifier: Verifier presented at the token endpoint
            code_challenge: Challenge recorded when authorization began

        Returns:
            True only if the transformed verifier equals the challenge
        """
        if not code_challenge:
            logger.warning("PKCE verification failed - empty challenge")
            return False
        try:
            expected = cls.generate_code_challenge(code_verifier)
        except PKCEError as e:
            logger.warning(f"PKCE verification failed - {e}")
            return False

        is_valid = secrets.compare_digest(
            expected.encode("ascii"), code_challenge.encode("utf-8")
        )
        if not is_valid:
            logger.warning("PKCE verification failed - challenge mismatch")
        return is_valid

    @classmethod
    def _validate_code_verifier(cls, code_verifier: str) -> None:
        if not code_verifier:
            raise PKCEError("code verifier cannot be empty")

        if not (cls.MIN_VERIFIER_LENGTH <= len(code_verifier) <= cls.MAX_VERIFIER_LENGTH):
            raise PKCEError(
                f"code verifier length must be between {cls.MIN_VERIFIER_LENGTH} "
                f"and {cls.MAX_VERIFIER_LENGTH} characters, got {len(code_verifier)}"
            )

        if not set(code_verifier) <= cls.VALID_CHARS:
            raise PKCEError("code verifier contains invalid characters")


def create_pkce_pair() -> PKCEChallenge:
    """Create PKCE challenge pair with secure defaults"""
    return PKCEVerifier.create_pkce_challenge()


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    return PKCEVerifier.verify(code_verifier, code_challenge)
