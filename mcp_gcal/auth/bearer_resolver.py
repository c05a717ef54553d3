"""
Bearer credential resolution for the MCP endpoint

Tries broker-issued access tokens first and falls back to legacy API
keys so existing integrations keep working. Failures never reveal which
method was attempted or why it failed.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..store_interface import CredentialStore
from .credentials import hash_token
from .errors import GrantError, Unauthenticated
from .token_manager import TokenIssuer

logger = logging.getLogger(__name__)

METHOD_OAUTH = "oauth"
METHOD_API_KEY = "api_key"


@dataclass
class AuthenticatedSubject:
    """Identity attached to an authenticated request"""
    subject: str
    method: str


class BearerResolver:
    """Maps an inbound bearer string to a subject identifier"""

    def __init__(self, token_issuer: TokenIssuer, store: CredentialStore):
        self.token_issuer = token_issuer
        self.store = store

    async def resolve(self, bearer: Optional[str]) -> AuthenticatedSubject:
        """
        Authenticate a bearer credential

        Raises:
            Unauthenticated: If the credential is absent or matches nothing
            StorageFailure: If the store could not be queried
        """
        if not bearer:
            raise Unauthenticated("missing bearer token")

        try:
            subject = await self.token_issuer.validate(bearer)
            return AuthenticatedSubject(subject=subject, method=METHOD_OAUTH)
        except GrantError as e:
            logger.debug(f"Bearer is not a valid broker access token: {e.description}")

        user = await self.store.get_user_by_api_key_hash(hash_token(bearer))
        if user is not None:
            return AuthenticatedSubject(subject=user.email, method=METHOD_API_KEY)

        raise Unauthenticated("invalid bearer token")


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the credential from an Authorization header value

    The scheme is matched case-insensitively. Returns None when the header
    is absent, uses another scheme, or carries an empty credential.
    """
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None
