"""
Unit tests for bearer credential resolution
"""

import sqlite3

import pytest

from mcp_gcal.auth.bearer_resolver import (
    METHOD_API_KEY, METHOD_OAUTH, BearerResolver, extract_bearer_token
)
from mcp_gcal.auth.credentials import generate_api_key, hash_token
from mcp_gcal.auth.errors import Unauthenticated
from tests.conftest import TEST_EMAIL


@pytest.fixture
def resolver(tokens, store):
    return BearerResolver(tokens, store)


class TestBearerResolver:
    """Test OAuth-first resolution with legacy API key fallback"""

    @pytest.mark.asyncio
    async def test_oauth_token(self, resolver, tokens):
        issued = await tokens.issue("client-1", TEST_EMAIL)

        authenticated = await resolver.resolve(issued.access_token)
        assert authenticated.subject == TEST_EMAIL
        assert authenticated.method == METHOD_OAUTH

    @pytest.mark.asyncio
    async def test_legacy_api_key(self, resolver, store):
        api_key = generate_api_key()
        await store.upsert_user(TEST_EMAIL, hash_token(api_key), "{}")

        authenticated = await resolver.resolve(api_key)
        assert authenticated.subject == TEST_EMAIL
        assert authenticated.method == METHOD_API_KEY

        conn = sqlite3.connect(store.db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM mcp_oauth_tokens").fetchone()[0]
        finally:
            conn.close()
        assert count == 0
        assert await store.get_token_pair(hash_token(api_key)) is None

    @pytest.mark.asyncio
    async def test_expired_oauth_token_rejected(self, resolver, tokens, clock):
        issued = await tokens.issue("client-1", TEST_EMAIL)
        clock.advance(hours=2)

        with pytest.raises(Unauthenticated) as exc_info:
            await resolver.resolve(issued.access_token)
        assert exc_info.value.to_dict() == {
            "error": "invalid_token",
            "error_description": "authentication required",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bearer", [None, "", "gcal_" + "0" * 64, "random-token"])
    async def test_unknown_credentials(self, resolver, bearer):
        with pytest.raises(Unauthenticated):
            await resolver.resolve(bearer)


class TestExtractBearerToken:
    """Test Authorization header parsing"""

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("BEARER  abc  ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer   ", None),
        ("", None),
        (None, None),
    ])
    def test_extract(self, header, expected):
        assert extract_bearer_token(header) == expected
