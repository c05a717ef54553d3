"""
Broker Token Issuer

Handles the lifecycle of broker-issued bearer credentials:
- Opaque random access/refresh pairs; only SHA-256 hashes are stored
- Short-lived access tokens (one hour by default)
- Single-use refresh tokens with rotation
- Sweeping of expired sessions and stale token pairs
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..models import RotationOutcome, SweepResult, TokenPair, utc_now
from ..store_interface import CredentialStore
from .credentials import BEARER_TOKEN_BYTES, generate_secure_token, hash_token
from .errors import ClientMismatch, ExpiredToken, InvalidToken

logger = logging.getLogger(__name__)


@dataclass
class IssuedTokens:
    """Raw token values returned exactly once to the client"""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_response(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
        }


class TokenIssuer:
    """
    Mints, validates and rotates broker access/refresh pairs

    Features:
    - Access token validation distinguishes unknown from expired
    - Refresh stays possible for a retention window past access expiry
    - Rotation is atomic in the store; a replayed refresh token is rejected
    """

    def __init__(self,
                 store: CredentialStore,
                 access_token_ttl: timedelta = timedelta(hours=1),
                 token_retention: timedelta = timedelta(days=7),
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize token issuer

        Args:
            store: Credential store
            access_token_ttl: Access token lifetime
            token_retention: How long a pair survives past access expiry for refresh
            clock: Source of the current UTC time
        """
        self.store = store
        self.access_token_ttl = access_token_ttl
        self.token_retention = token_retention
        self.clock = clock

    @property
    def expires_in(self) -> int:
        return int(self.access_token_ttl.total_seconds())

    async def issue(self, client_id: str, subject: str) -> IssuedTokens:
        """
        Create a new token pair for a subject

        Returns:
            IssuedTokens carrying the raw values
        """
        access_token = generate_secure_token(BEARER_TOKEN_BYTES)
        refresh_token = generate_secure_token(BEARER_TOKEN_BYTES)
        now = self.clock()

        await self.store.create_token_pair(TokenPair(
            access_token_hash=hash_token(access_token),
            refresh_token_hash=hash_token(refresh_token),
            client_id=client_id,
            subject=subject,
            expires_at=now + self.access_token_ttl,
            created_at=now,
        ))

        logger.info(f"Token pair issued for client {client_id}")
        return IssuedTokens(access_token, refresh_token, self.expires_in)

    async def validate(self, access_token: str) -> str:
        """
        Resolve an access token to its subject

        Raises:
            InvalidToken: Unknown access token
            ExpiredToken: Access token past expiry
        """
        if not access_token:
            raise InvalidToken("missing access token")

        pair = await self.store.get_token_pair(hash_token(access_token))
        if pair is None:
            raise InvalidToken("invalid access token")
        if pair.expires_at <= self.clock():
            raise ExpiredToken("access token expired")
        return pair.subject

    async def rotate(self, refresh_token: str, client_id: str) -> IssuedTokens:
        """
        Exchange a refresh token for a new pair, invalidating the old one

        Raises:
            InvalidToken: Unknown, already rotated or swept refresh token
            ClientMismatch: Refresh token belongs to another client
        """
        if not refresh_token:
            raise InvalidToken("missing refresh token")

        access_token = generate_secure_token(BEARER_TOKEN_BYTES)
        new_refresh_token = generate_secure_token(BEARER_TOKEN_BYTES)
        now = self.clock()

        rotation = await self.store.rotate_token_pair(
            refresh_token_hash=hash_token(refresh_token),
            client_id=client_id,
            new_access_token_hash=hash_token(access_token),
            new_refresh_token_hash=hash_token(new_refresh_token),
            expires_at=now + self.access_token_ttl,
            stale_before=now - self.token_retention,
        )

        if rotation.outcome == RotationOutcome.NOT_FOUND:
            raise InvalidToken("invalid refresh token")
        if rotation.outcome == RotationOutcome.CLIENT_MISMATCH:
            logger.warning(f"Refresh token presented by wrong client {client_id}")
            raise ClientMismatch("client_id mismatch")

        logger.info(f"Token pair rotated for client {client_id}")
        return IssuedTokens(access_token, new_refresh_token, self.expires_in)

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Delete expired sessions and token pairs past the retention window
        """
        now = now or self.clock()
        sessions = await self.store.delete_expired_sessions(now)
        tokens = await self.store.delete_stale_tokens(now - self.token_retention)
        if sessions or tokens:
            logger.info(f"Sweep removed {sessions} session(s) and {tokens} token pair(s)")
        return SweepResult(sessions=sessions, tokens=tokens)
