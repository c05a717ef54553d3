"""
Dynamic Client Registration (RFC 7591)

Public MCP clients register themselves before starting authorization:
- Client identifiers are generated, high-entropy and never reused
- Redirect URIs must be absolute http(s) URIs
- Registration is append-only; there is no update or delete
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from ..models import OAuthClient, utc_now
from ..store_interface import CredentialStore
from .credentials import CLIENT_ID_BYTES, generate_secure_token
from .errors import InvalidRedirectURI, MissingRedirectURIs, ValidationError

logger = logging.getLogger(__name__)


class DynamicClientRegistry:
    """
    RFC 7591 dynamic client registration backed by the credential store

    Features:
    - Public clients only (token_endpoint_auth_method "none")
    - Exact-match redirect URI validation at authorization time
    """

    GRANT_TYPES = ["authorization_code", "refresh_token"]
    RESPONSE_TYPES = ["code"]

    def __init__(self, store: CredentialStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def register(self, display_name: str, redirect_uris: List[str]) -> OAuthClient:
        """
        Register a new client

        Args:
            display_name: Human readable client name
            redirect_uris: Non-empty list of absolute http(s) URIs

        Returns:
            The stored client, including its generated client_id

        Raises:
            MissingRedirectURIs: If no redirect URI was supplied
            InvalidRedirectURI: If any URI is unparseable or not http(s)
        """
        self._validate_redirect_uris(redirect_uris)

        client = OAuthClient(
            client_id=generate_secure_token(CLIENT_ID_BYTES),
            client_name=display_name or "",
            redirect_uris=list(redirect_uris),
            created_at=self.clock(),
        )
        await self.store.create_client(client)

        logger.info(f"Client registered: {client.client_id} ({client.client_name!r})")
        return client

    async def register_client(self, request_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle an RFC 7591 registration request body

        Returns:
            Client registration response
        """
        if not isinstance(request_data, dict):
            raise ValidationError("registration request must be a JSON object")

        client_name = request_data.get("client_name") or ""
        if not isinstance(client_name, str):
            raise ValidationError("client_name must be a string")

        redirect_uris = request_data.get("redirect_uris")
        if redirect_uris is None:
            redirect_uris = []
        if not isinstance(redirect_uris, list):
            raise InvalidRedirectURI("redirect_uris must be an array")

        client = await self.register(client_name, redirect_uris)
        return self._build_registration_response(client)

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        """Get registered client by ID"""
        if not client_id:
            return None
        return await self.store.get_client(client_id)

    @staticmethod
    def validate_redirect_uri(client: OAuthClient, redirect_uri: str) -> bool:
        """Exact string match against the registered URIs"""
        return redirect_uri in client.redirect_uris

    def _validate_redirect_uris(self, redirect_uris: List[Any]) -> None:
        if not redirect_uris:
            raise MissingRedirectURIs("redirect_uris is required")

        for uri in redirect_uris:
            if not isinstance(uri, str) or not uri:
                raise InvalidRedirectURI("redirect_uris must contain non-empty strings")
            try:
                parsed = urlparse(uri)
            except ValueError:
                raise InvalidRedirectURI(f"invalid redirect_uri: {uri}")

            if parsed.scheme not in ("http", "https"):
                raise InvalidRedirectURI(f"redirect_uri must use http or https: {uri}")
            if not parsed.netloc:
                raise InvalidRedirectURI(f"redirect_uri must be absolute: {uri}")
            if parsed.fragment:
                raise InvalidRedirectURI(f"redirect_uri must not contain a fragment: {uri}")

    def _build_registration_response(self, client: OAuthClient) -> Dict[str, Any]:
        return {
            "client_id": client.client_id,
            "client_id_issued_at": int(client.created_at.timestamp()),
            "client_name": client.client_name,
            "redirect_uris": client.redirect_uris,
            "grant_types": self.GRANT_TYPES,
            "response_types": self.RESPONSE_TYPES,
            "token_endpoint_auth_method": "none",
        }
