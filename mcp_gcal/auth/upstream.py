"""
Upstream Identity Provider Integration

The broker is an OAuth client of exactly one upstream provider (Google):
- Authorization redirects requesting offline access
- Authorization code exchange and token refresh through authlib
- Subject lookup through the userinfo endpoint
- Per-user storage of the upstream token, refreshed on demand
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from ..config import UpstreamConfig
from ..models import UserUpdate
from ..store_interface import CredentialStore
from .credentials import TokenCipher, generate_api_key, hash_token
from .errors import UnknownEntity, UpstreamFailure

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_LEEWAY = 60


@dataclass
class ClientCredentials:
    """OAuth client registration of the broker at the upstream provider"""
    client_id: str
    client_secret: str
    auth_uri: str
    token_uri: str


def load_client_credentials(path: str) -> ClientCredentials:
    """
    Read a Google client secrets file

    Accepts both the "web" and "installed" application formats.

    Raises:
        ValueError: If the file is missing, malformed or lacks client fields
    """
    try:
        document = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"unable to read credentials file {path}: {e}") from e

    section = None
    if isinstance(document, dict):
        section = document.get("web") or document.get("installed")
    if not isinstance(section, dict):
        raise ValueError(f"credentials file {path} has no 'web' or 'installed' section")

    try:
        return ClientCredentials(
            client_id=section["client_id"],
            client_secret=section["client_secret"],
            auth_uri=section.get("auth_uri", ""),
            token_uri=section.get("token_uri", ""),
        )
    except KeyError as e:
        raise ValueError(f"credentials file {path} is missing {e.args[0]}") from e


class UpstreamProvider(ABC):
    """Abstract base class for the upstream identity provider"""

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """Build the provider URL the user agent is redirected to"""
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Exchange an upstream authorization code for a token"""
        pass

    @abstractmethod
    async def fetch_subject(self, token: Dict[str, Any]) -> str:
        """Return the verified email address the token belongs to"""
        pass

    @abstractmethod
    async def refresh(self, token: Dict[str, Any]) -> Dict[str, Any]:
        """Refresh an expired upstream token"""
        pass


class GoogleProvider(UpstreamProvider):
    """
    Google OAuth 2.0 provider

    Uses authlib's AsyncOAuth2Client for the OAuth exchanges and httpx
    for the userinfo lookup.
    """

    def __init__(self,
                 client_id: str,
                 client_secret: str,
                 redirect_uri: str,
                 scopes: List[str],
                 auth_uri: str,
                 token_uri: str,
                 userinfo_uri: str,
                 timeout: float = 30.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.auth_uri = auth_uri
        self.token_uri = token_uri
        self.userinfo_uri = userinfo_uri
        self.timeout = timeout

        logger.info("GoogleProvider initialized")

    @classmethod
    def from_config(cls, config: UpstreamConfig, base_url: str) -> "GoogleProvider":
        """
        Build the provider from configuration

        Explicit client id/secret take precedence over the credentials file.
        """
        client_id, client_secret = config.client_id, config.client_secret
        auth_uri, token_uri = config.auth_uri, config.token_uri
        if not (client_id and client_secret):
            credentials = load_client_credentials(config.credentials_file)
            client_id, client_secret = credentials.client_id, credentials.client_secret
            auth_uri = credentials.auth_uri or auth_uri
            token_uri = credentials.token_uri or token_uri

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=f"{base_url}/auth/callback",
            scopes=config.scopes,
            auth_uri=auth_uri,
            token_uri=token_uri,
            userinfo_uri=config.userinfo_uri,
            timeout=config.timeout,
        )

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes),
            redirect_uri=self.redirect_uri,
            timeout=self.timeout,
        )

    def authorization_url(self, state: str) -> str:
        client = self._client()
        url, _ = client.create_authorization_url(
            self.auth_uri,
            state=state,
            access_type="offline",
            prompt="consent",
        )
        return url

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                token = await client.fetch_token(self.token_uri, code=code)
        except (AuthlibBaseError, httpx.HTTPError) as e:
            logger.error(f"Upstream code exchange failed: {e}")
            raise UpstreamFailure(f"code exchange failed: {e}") from e
        return dict(token)

    async def fetch_subject(self, token: Dict[str, Any]) -> str:
        access_token = token.get("access_token")
        if not access_token:
            raise UpstreamFailure("upstream token has no access_token")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    self.userinfo_uri,
                    headers={"Authorization": f"Bearer {access_token}"}
                )
                response.raise_for_status()
                info = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Upstream userinfo lookup failed: {e}")
            raise UpstreamFailure(f"userinfo lookup failed: {e}") from e

        email = info.get("email") if isinstance(info, dict) else None
        if not email:
            raise UpstreamFailure("no email in userinfo response")
        return email

    async def refresh(self, token: Dict[str, Any]) -> Dict[str, Any]:
        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise UpstreamFailure("upstream token has no refresh_token")

        try:
            async with self._client() as client:
                refreshed = await client.refresh_token(self.token_uri, refresh_token=refresh_token)
        except (AuthlibBaseError, httpx.HTTPError) as e:
            logger.error(f"Upstream token refresh failed: {e}")
            raise UpstreamFailure(f"token refresh failed: {e}") from e

        refreshed = dict(refreshed)
        refreshed.setdefault("refresh_token", refresh_token)
        return refreshed


def token_expired(token: Dict[str, Any], leeway: int = TOKEN_EXPIRY_LEEWAY) -> bool:
    """True if the token carries an expiry that has passed (with leeway)"""
    expires_at = token.get("expires_at")
    if expires_at is None:
        return False
    return float(expires_at) - leeway <= time.time()


class UpstreamCredentialManager:
    """
    Stores and serves per-user upstream tokens

    Features:
    - Re-authentication replaces the stored token and rotates the API key
    - Expired tokens are refreshed and persisted before being returned
    - Optional at-rest encryption through TokenCipher
    """

    def __init__(self,
                 store: CredentialStore,
                 provider: UpstreamProvider,
                 cipher: Optional[TokenCipher] = None):
        self.store = store
        self.provider = provider
        self.cipher = cipher or TokenCipher()
        if not self.cipher.enabled:
            logger.info("Upstream tokens are stored unencrypted; set MCP_GCAL_ENCRYPTION_KEY to encrypt")

    async def save_user(self, email: str, token: Dict[str, Any]) -> str:
        """
        Create or update a user after a successful upstream login

        Returns:
            The new raw legacy API key; only its hash is stored
        """
        api_key = generate_api_key()
        await self.store.upsert_user(
            email,
            api_key_hash=hash_token(api_key),
            token_json=self.cipher.encrypt(json.dumps(token)),
        )
        logger.info("Upstream credentials stored and API key rotated")
        return api_key

    async def get_token(self, email: str) -> Dict[str, Any]:
        """
        Return a usable upstream token for a subject

        Raises:
            UnknownEntity: No credentials stored for this subject
            UpstreamFailure: The token expired and could not be refreshed
        """
        user = await self.store.get_user_by_email(email)
        if user is None or not user.token_json:
            raise UnknownEntity("no upstream credentials for subject")

        token = json.loads(self.cipher.decrypt(user.token_json))
        if not token_expired(token):
            return token

        if not token.get("refresh_token"):
            raise UpstreamFailure("upstream token expired; re-authenticate via /auth/login")

        refreshed = await self.provider.refresh(token)
        await self.store.update_user(
            email, UserUpdate(token_json=self.cipher.encrypt(json.dumps(refreshed)))
        )
        logger.info("Upstream token refreshed and persisted")
        return refreshed
