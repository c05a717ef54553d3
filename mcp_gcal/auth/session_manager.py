"""
Authorization Session Manager

Tracks in-flight authorization attempts between an MCP client, the
broker and the upstream identity provider.

Broker sessions move through CREATED -> RESOLVED -> REDEEMED. Expiry is
never an explicit transition; stale rows are removed by the sweeper and
every conditional write filters on expiry itself.

Login states for the single-user /auth/login flow share the same table
and state namespace, distinguished by the session flow. Each state
value belongs to exactly one flow, so a callback can never be replayed
across flows.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..models import AuthorizationSession, RedeemOutcome, SessionFlow, SessionStatus, utc_now
from ..store_interface import CredentialStore
from .client_registry import DynamicClientRegistry
from .credentials import CODE_BYTES, STATE_BYTES, generate_secure_token, hash_token
from .errors import (
    CodeAlreadyUsed, CodeExpired, InvalidCode, InvalidGrant, InvalidRedirectURI,
    UnknownClient, UnknownSession, ValidationError
)
from .pkce_verifier import PKCEVerifier

logger = logging.getLogger(__name__)


class AuthorizationSessionManager:
    """
    Creates, resolves and redeems authorization sessions

    Args:
        store: Credential store holding all session state
        registry: Client registry used to validate begin() preconditions
        session_ttl: Lifetime of a session from creation
        clock: Source of the current UTC time
    """

    def __init__(self,
                 store: CredentialStore,
                 registry: DynamicClientRegistry,
                 session_ttl: timedelta = timedelta(minutes=10),
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.registry = registry
        self.session_ttl = session_ttl
        self.clock = clock

    async def begin(self,
                    client_id: str,
                    redirect_uri: str,
                    code_challenge: str,
                    code_challenge_method: str,
                    client_state: Optional[str] = None) -> str:
        """
        Start a broker authorization session

        Returns:
            The broker state token to send to the upstream provider

        Raises:
            UnknownClient: If client_id is not registered
            InvalidRedirectURI: If redirect_uri is not registered for the client
            ValidationError: If the PKCE parameters are missing or unsupported
        """
        client = await self.registry.get_client(client_id)
        if client is None:
            raise UnknownClient("unknown client_id")

        if not redirect_uri or not self.registry.validate_redirect_uri(client, redirect_uri):
            raise InvalidRedirectURI("redirect_uri not registered", error="invalid_request")

        if code_challenge_method not in PKCEVerifier.SUPPORTED_METHODS:
            raise ValidationError("code_challenge_method must be S256")
        if not code_challenge:
            raise ValidationError("code_challenge is required")

        session = AuthorizationSession(
            state=generate_secure_token(STATE_BYTES),
            flow=SessionFlow.BROKER,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            client_state=client_state,
            expires_at=self.clock() + self.session_ttl,
        )
        await self.store.create_session(session)

        logger.info(f"Authorization session created for client {client_id}")
        return session.state

    async def begin_login(self) -> str:
        """Reserve a state token for the single-user login flow"""
        session = AuthorizationSession(
            state=generate_secure_token(STATE_BYTES),
            flow=SessionFlow.LOGIN,
            expires_at=self.clock() + self.session_ttl,
        )
        await self.store.create_session(session)
        return session.state

    async def lookup(self, state: str) -> Optional[AuthorizationSession]:
        """Find the session a callback state belongs to, in either flow"""
        if not state:
            return None
        return await self.store.get_session(state)

    async def resolve(self, state: str, subject: str) -> str:
        """
        Bind the upstream subject to a CREATED session and mint its one-time code

        Returns:
            The raw authorization code; only its hash is stored

        Raises:
            UnknownSession: If state does not name an unexpired CREATED broker session
        """
        code = generate_secure_token(CODE_BYTES)
        resolved = await self.store.resolve_session(state, hash_token(code), subject, self.clock())
        if not resolved:
            raise UnknownSession("authorization session not found, expired or already completed")

        logger.info("Authorization session resolved")
        return code

    async def consume_login(self, state: str) -> bool:
        """Consume a login-flow state exactly once"""
        if not state:
            return False
        return await self.store.consume_login_state(state, self.clock())

    async def redeem(self,
                     code: str,
                     client_id: str,
                     redirect_uri: str,
                     code_verifier: str) -> str:
        """
        Exchange a one-time code for the session it was issued to

        The session is consumed before the client binding and PKCE checks
        run, so a failed check still burns the code.

        Returns:
            The subject identifier bound to the session

        Raises:
            InvalidCode: No session carries this code
            CodeAlreadyUsed: The code was already redeemed
            CodeExpired: The session expired before redemption
            InvalidGrant: client_id, redirect_uri or PKCE verifier mismatch
        """
        redemption = await self.store.consume_code(hash_token(code), self.clock())

        if redemption.outcome == RedeemOutcome.INVALID:
            raise InvalidCode("invalid authorization code")
        if redemption.outcome == RedeemOutcome.USED:
            logger.warning("Authorization code replay rejected")
            raise CodeAlreadyUsed("authorization code already used")
        if redemption.outcome == RedeemOutcome.EXPIRED:
            raise CodeExpired("authorization code expired")

        session = redemption.session
        if session.client_id != client_id:
            raise InvalidGrant("client_id mismatch")
        if session.redirect_uri != redirect_uri:
            raise InvalidGrant("redirect_uri mismatch")
        if not PKCEVerifier.verify(code_verifier, session.code_challenge):
            raise InvalidGrant("PKCE verification failed")

        logger.info(f"Authorization code redeemed by client {client_id}")
        return session.subject

    @staticmethod
    def is_pending(session: AuthorizationSession, now: datetime) -> bool:
        """True while a broker session can still be resolved"""
        return session.status == SessionStatus.CREATED and not session.is_expired(now)
