"""
Test configuration and fixtures for mcp-gcal tests
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from urllib.parse import urlencode

import pytest
import pytest_asyncio

from mcp_gcal.auth.client_registry import DynamicClientRegistry
from mcp_gcal.auth.errors import UpstreamFailure
from mcp_gcal.auth.pkce_verifier import PKCEVerifier
from mcp_gcal.auth.session_manager import AuthorizationSessionManager
from mcp_gcal.auth.token_manager import TokenIssuer
from mcp_gcal.auth.upstream import UpstreamProvider
from mcp_gcal.config import reset_config
from mcp_gcal.sqlite_store import SQLiteCredentialStore

TEST_EMAIL = "alice@example.com"
TEST_REDIRECT_URI = "http://localhost:3000/callback"
FAKE_AUTHORIZE_URL = "https://accounts.example.com/o/oauth2/auth"


class MutableClock:
    """Deterministic clock that tests advance explicitly"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeUpstreamProvider(UpstreamProvider):
    """In-process stand-in for Google"""

    def __init__(self, email: str = TEST_EMAIL):
        self.email = email
        self.exchanged: List[str] = []
        self.refreshed: List[Dict[str, Any]] = []
        self.fail_exchange = False

    def authorization_url(self, state: str) -> str:
        return f"{FAKE_AUTHORIZE_URL}?{urlencode({'state': state, 'access_type': 'offline'})}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        if self.fail_exchange:
            raise UpstreamFailure("exchange refused")
        self.exchanged.append(code)
        return {
            "access_token": f"upstream-access-{code}",
            "refresh_token": "upstream-refresh",
            "token_type": "Bearer",
            "expires_at": time.time() + 3600,
        }

    async def fetch_subject(self, token: Dict[str, Any]) -> str:
        return self.email

    async def refresh(self, token: Dict[str, Any]) -> Dict[str, Any]:
        self.refreshed.append(token)
        return {
            "access_token": "upstream-access-refreshed",
            "refresh_token": token["refresh_token"],
            "token_type": "Bearer",
            "expires_at": time.time() + 3600,
        }


@pytest.fixture(autouse=True)
def clean_config():
    """Keep the global configuration isolated between tests"""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def store(tmp_path):
    """Connected SQLite store in a temporary directory"""
    sqlite_store = SQLiteCredentialStore(str(tmp_path / "mcp-gcal.db"))
    await sqlite_store.connect()
    yield sqlite_store
    await sqlite_store.close()


@pytest.fixture
def registry(store, clock):
    return DynamicClientRegistry(store, clock=clock)


@pytest.fixture
def sessions(store, registry, clock):
    return AuthorizationSessionManager(store, registry, clock=clock)


@pytest.fixture
def tokens(store, clock):
    return TokenIssuer(store, clock=clock)


@pytest.fixture
def upstream():
    return FakeUpstreamProvider()


@pytest.fixture
def pkce():
    return PKCEVerifier.create_pkce_challenge()


@pytest_asyncio.fixture
async def client(registry):
    """A registered public client"""
    return await registry.register("Test Client", [TEST_REDIRECT_URI])
