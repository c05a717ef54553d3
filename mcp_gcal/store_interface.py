from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .models import (
    AuthorizationSession, CodeRedemption, OAuthClient, TokenPair,
    TokenRotation, UserRecord, UserUpdate
)


class CredentialStore(ABC):
    """
    Abstract interface for broker persistence

    All exclusivity guarantees (single-use codes, single-use refresh
    tokens, single-use login states) are enforced here with conditional
    writes. Callers pass ``now`` so the expiry filter and the state
    transition are evaluated at the same instant.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and create the schema"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release all connections"""
        pass

    # Client operations
    @abstractmethod
    async def create_client(self, client: OAuthClient) -> OAuthClient:
        """Persist a newly registered client"""
        pass

    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        """Get client by ID"""
        pass

    # Session operations
    @abstractmethod
    async def create_session(self, session: AuthorizationSession) -> None:
        """Persist a new authorization session or login state"""
        pass

    @abstractmethod
    async def get_session(self, state: str) -> Optional[AuthorizationSession]:
        """Get session by state token, regardless of flow"""
        pass

    @abstractmethod
    async def resolve_session(
        self, state: str, code_hash: str, subject: str, now: datetime
    ) -> bool:
        """Attach code hash and subject to an unexpired, unresolved broker session"""
        pass

    @abstractmethod
    async def consume_code(self, code_hash: str, now: datetime) -> CodeRedemption:
        """Mark the session owning code_hash as used, at most once"""
        pass

    @abstractmethod
    async def consume_login_state(self, state: str, now: datetime) -> bool:
        """Delete an unexpired login-flow state, at most once"""
        pass

    @abstractmethod
    async def delete_expired_sessions(self, now: datetime) -> int:
        """Delete sessions past expiry"""
        pass

    # Token operations
    @abstractmethod
    async def create_token_pair(self, pair: TokenPair) -> None:
        """Persist a token pair"""
        pass

    @abstractmethod
    async def get_token_pair(self, access_token_hash: str) -> Optional[TokenPair]:
        """Get token pair by access token hash"""
        pass

    @abstractmethod
    async def rotate_token_pair(
        self,
        refresh_token_hash: str,
        client_id: str,
        new_access_token_hash: str,
        new_refresh_token_hash: str,
        expires_at: datetime,
        stale_before: datetime,
    ) -> TokenRotation:
        """
        Replace the pair owning refresh_token_hash with a new pair for the same subject

        Pairs whose access expiry is before stale_before are treated as absent.
        Lookup, delete and insert run in one transaction.
        """
        pass

    @abstractmethod
    async def delete_stale_tokens(self, cutoff: datetime) -> int:
        """Delete token pairs whose access expiry is before cutoff"""
        pass

    # User operations
    @abstractmethod
    async def upsert_user(self, email: str, api_key_hash: str, token_json: str) -> UserRecord:
        """Create a user or replace its API key hash and upstream token"""
        pass

    @abstractmethod
    async def update_user(self, email: str, update: UserUpdate) -> bool:
        """Apply the non-empty fields of update"""
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        """Get user by subject identifier"""
        pass

    @abstractmethod
    async def get_user_by_api_key_hash(self, api_key_hash: str) -> Optional[UserRecord]:
        """Get user by legacy API key hash"""
        pass
