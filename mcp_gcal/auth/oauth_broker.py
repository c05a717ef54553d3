"""
OAuth Broker for the MCP Google bridge

Acts as an OAuth 2.0 authorization server toward MCP clients and as an
OAuth client toward Google, bridging the two token spaces per user:
- Dynamic client registration (RFC 7591)
- Authorization code flow with mandatory PKCE S256
- Upstream callback handling for broker sessions and the login flow
- Token endpoint with refresh token rotation
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..models import AuthorizationSession, SessionFlow, SweepResult, utc_now
from ..security.audit_logger import AuditEventType, SecurityAuditLogger
from .bearer_resolver import AuthenticatedSubject, BearerResolver
from .client_registry import DynamicClientRegistry
from .discovery import DiscoveryService
from .errors import (
    CodeAlreadyUsed, GrantError, StorageFailure, Unauthenticated,
    UnknownSession, UnsupportedGrantType, UnsupportedResponseType, UpstreamFailure,
    ValidationError
)
from .session_manager import AuthorizationSessionManager
from .token_manager import TokenIssuer
from .upstream import UpstreamCredentialManager, UpstreamProvider

logger = logging.getLogger(__name__)


@dataclass
class CallbackResult:
    """
    Outcome of an upstream callback

    Broker sessions yield a redirect back to the MCP client; login
    sessions yield the subject and its freshly rotated API key.
    """
    redirect_url: Optional[str] = None
    email: Optional[str] = None
    api_key: Optional[str] = None


def append_query(uri: str, params: Dict[str, str]) -> str:
    """Add query parameters to a URI, keeping any it already has"""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))


class OAuthBroker:
    """
    Orchestrates the broker's OAuth endpoints

    Features:
    - JSON errors for invalid authorization requests (no open redirects)
    - Redirect errors once a session binds a registered redirect URI
    - A failed upstream exchange leaves the session unresolved
    """

    def __init__(self,
                 registry: DynamicClientRegistry,
                 sessions: AuthorizationSessionManager,
                 tokens: TokenIssuer,
                 resolver: BearerResolver,
                 upstream: UpstreamProvider,
                 credentials: UpstreamCredentialManager,
                 discovery: DiscoveryService,
                 audit: SecurityAuditLogger,
                 clock: Callable[[], datetime] = utc_now):
        self.registry = registry
        self.sessions = sessions
        self.tokens = tokens
        self.resolver = resolver
        self.upstream = upstream
        self.credentials = credentials
        self.discovery = discovery
        self.audit = audit
        self.clock = clock

    # Registration

    async def register_client(self, request_data: Any) -> Dict[str, Any]:
        response = await self.registry.register_client(request_data)
        self.audit.log(AuditEventType.CLIENT_REGISTERED, client_id=response["client_id"],
                       details={"client_name": response["client_name"]})
        return response

    # Authorization

    async def start_authorization(self, params: Mapping[str, str]) -> str:
        """
        Validate an authorization request and begin a session

        Returns:
            Upstream authorization URL to redirect the user agent to

        Raises:
            ValidationError, UnknownEntity: Reported to the caller as JSON, never redirected
        """
        response_type = params.get("response_type")
        if response_type != "code":
            raise UnsupportedResponseType("response_type must be code")

        client_id = params.get("client_id")
        if not client_id:
            raise ValidationError("client_id is required")

        state = await self.sessions.begin(
            client_id=client_id,
            redirect_uri=params.get("redirect_uri") or "",
            code_challenge=params.get("code_challenge") or "",
            code_challenge_method=params.get("code_challenge_method") or "",
            client_state=params.get("state") or None,
        )
        self.audit.log(AuditEventType.AUTHORIZATION_STARTED, client_id=client_id)
        return self.upstream.authorization_url(state)

    async def start_login(self) -> str:
        """Begin the single-user login flow and return the upstream URL"""
        state = await self.sessions.begin_login()
        return self.upstream.authorization_url(state)

    async def handle_callback(self,
                              state: Optional[str],
                              code: Optional[str],
                              error: Optional[str] = None) -> CallbackResult:
        """
        Complete the upstream round trip for whichever flow owns ``state``

        Raises:
            UnknownSession: If state names no session in either flow
            ValidationError, UpstreamFailure: Login-flow failures, rendered by the caller
        """
        session = await self.sessions.lookup(state or "")
        if session is None:
            raise UnknownSession("invalid state parameter")

        if session.flow == SessionFlow.LOGIN:
            return await self._complete_login(session, code, error)
        return await self._complete_authorization(session, code, error)

    async def _complete_authorization(self,
                                      session: AuthorizationSession,
                                      code: Optional[str],
                                      error: Optional[str]) -> CallbackResult:
        if not self.sessions.is_pending(session, self.clock()):
            return self._redirect_error(session, "invalid_request",
                                        "authorization session expired or already completed")
        if error:
            return self._redirect_error(session, "access_denied", error)
        if not code:
            return self._redirect_error(session, "server_error",
                                        "no authorization code from upstream provider")

        try:
            token = await self.upstream.exchange_code(code)
            email = await self.upstream.fetch_subject(token)
        except UpstreamFailure as e:
            logger.error(f"Upstream authorization failed for client {session.client_id}: {e}")
            return self._redirect_error(session, "server_error",
                                        "failed to complete upstream authorization")

        try:
            await self.credentials.save_user(email, token)
            auth_code = await self.sessions.resolve(session.state, email)
        except StorageFailure:
            return self._redirect_error(session, "server_error", "failed to save authorization")
        except UnknownSession as e:
            return self._redirect_error(session, "invalid_request", e.description)

        self.audit.log(AuditEventType.OAUTH_CODE_ISSUED, subject=email, client_id=session.client_id)
        return CallbackResult(redirect_url=append_query(
            session.redirect_uri, {"code": auth_code, "state": session.client_state or ""}
        ))

    def _redirect_error(self, session: AuthorizationSession, error: str,
                        description: str) -> CallbackResult:
        self.audit.log(AuditEventType.UPSTREAM_CALLBACK_FAILED, client_id=session.client_id,
                       success=False, error_code=error, error_message=description)
        return CallbackResult(redirect_url=append_query(session.redirect_uri, {
            "error": error,
            "error_description": description,
            "state": session.client_state or "",
        }))

    async def _complete_login(self,
                              session: AuthorizationSession,
                              code: Optional[str],
                              error: Optional[str]) -> CallbackResult:
        if not await self.sessions.consume_login(session.state):
            raise UnknownSession("invalid state parameter")
        if error:
            raise ValidationError(f"authentication failed: {error}", error="access_denied")
        if not code:
            raise ValidationError("no authorization code")

        token = await self.upstream.exchange_code(code)
        email = await self.upstream.fetch_subject(token)
        api_key = await self.credentials.save_user(email, token)

        logger.info("User authenticated through login flow")
        self.audit.log_authentication_success(email, method="login")
        return CallbackResult(email=email, api_key=api_key)

    # Token endpoint

    async def handle_token_request(self, form: Mapping[str, str]) -> Dict[str, Any]:
        """
        Handle token endpoint request

        Raises:
            BrokerError: Rendered as an OAuth error object
        """
        grant_type = form.get("grant_type")
        if grant_type == "authorization_code":
            return await self._handle_authorization_code_grant(form)
        if grant_type == "refresh_token":
            return await self._handle_refresh_token_grant(form)
        if not grant_type:
            raise ValidationError("grant_type is required")
        raise UnsupportedGrantType(f"Grant type '{grant_type}' not supported")

    async def _handle_authorization_code_grant(self, form: Mapping[str, str]) -> Dict[str, Any]:
        code = form.get("code")
        client_id = form.get("client_id")
        redirect_uri = form.get("redirect_uri")
        code_verifier = form.get("code_verifier")
        if not (code and client_id and redirect_uri and code_verifier):
            raise ValidationError(
                "code, client_id, redirect_uri and code_verifier are required"
            )

        try:
            subject = await self.sessions.redeem(code, client_id, redirect_uri, code_verifier)
        except GrantError as e:
            self.audit.log_grant_rejected(client_id, e.error, e.description,
                                          replay=isinstance(e, CodeAlreadyUsed))
            raise

        self.audit.log(AuditEventType.OAUTH_CODE_REDEEMED, subject=subject, client_id=client_id)
        issued = await self.tokens.issue(client_id, subject)
        self.audit.log_token_issued(subject, client_id)
        return issued.to_response()

    async def _handle_refresh_token_grant(self, form: Mapping[str, str]) -> Dict[str, Any]:
        refresh_token = form.get("refresh_token")
        client_id = form.get("client_id")
        if not (refresh_token and client_id):
            raise ValidationError("refresh_token and client_id are required")

        try:
            issued = await self.tokens.rotate(refresh_token, client_id)
        except GrantError as e:
            self.audit.log_grant_rejected(client_id, e.error, e.description)
            raise

        self.audit.log_token_issued(None, client_id, refreshed=True)
        return issued.to_response()

    # Resource access

    async def authenticate(self, bearer: Optional[str],
                           client_ip: Optional[str] = None) -> AuthenticatedSubject:
        """Resolve a bearer credential, auditing the outcome"""
        try:
            authenticated = await self.resolver.resolve(bearer)
        except Unauthenticated as e:
            self.audit.log_authentication_failure(e.description, client_ip=client_ip)
            raise
        self.audit.log_authentication_success(authenticated.subject, authenticated.method,
                                              client_ip=client_ip)
        return authenticated

    async def sweep(self) -> SweepResult:
        result = await self.tokens.sweep()
        self.audit.log(AuditEventType.SWEEP_COMPLETED,
                       details={"sessions": result.sessions, "tokens": result.tokens})
        return result

    # Discovery

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        return self.discovery.get_authorization_server_metadata()

    def get_protected_resource_metadata(self) -> Dict[str, Any]:
        return self.discovery.get_protected_resource_metadata()
