"""
Integration tests for the broker HTTP server
"""

import asyncio
import re
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import asyncpg
import pytest
from fastapi.testclient import TestClient

from mcp_gcal.auth.pkce_verifier import PKCEVerifier
from mcp_gcal.config import Config, DatabaseConfig, ServerConfig, UpstreamConfig
from mcp_gcal.http_server import BrokerHTTPServer, create_app
from tests.conftest import FAKE_AUTHORIZE_URL, TEST_EMAIL, TEST_REDIRECT_URI, FakeUpstreamProvider

BASE_URL = "https://gcal.example.com"
RESOURCE_METADATA_HEADER = (
    f'Bearer resource_metadata="{BASE_URL}/.well-known/oauth-protected-resource"'
)


@pytest.fixture
def fake_upstream():
    return FakeUpstreamProvider()


@pytest.fixture
def test_config(tmp_path):
    return Config(
        database=DatabaseConfig(path=str(tmp_path / "broker.db")),
        upstream=UpstreamConfig(credentials_file=str(tmp_path / "unused.json")),
        server=ServerConfig(addr="127.0.0.1:8080", base_url=BASE_URL),
    )


@pytest.fixture
def test_client(test_config, fake_upstream):
    server = BrokerHTTPServer(test_config, upstream=fake_upstream)
    with TestClient(server.app) as client:
        yield client


def query_of(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def register(client, redirect_uris=(TEST_REDIRECT_URI,)):
    response = client.post("/oauth/register", json={
        "client_name": "Test Client",
        "redirect_uris": list(redirect_uris),
    })
    assert response.status_code == 201
    return response.json()["client_id"]


def authorize(client, client_id, pkce, state="client-state"):
    response = client.get("/oauth/authorize", params={
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": TEST_REDIRECT_URI,
        "code_challenge": pkce.code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }, follow_redirects=False)
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(FAKE_AUTHORIZE_URL)
    return query_of(location)["state"]


def callback(client, broker_state, code="upstream-code"):
    return client.get("/auth/callback", params={"state": broker_state, "code": code},
                      follow_redirects=False)


def obtain_code(client, client_id, pkce):
    broker_state = authorize(client, client_id, pkce)
    response = callback(client, broker_state)
    assert response.status_code == 302
    params = query_of(response.headers["location"])
    assert response.headers["location"].startswith(TEST_REDIRECT_URI + "?")
    assert params["state"] == "client-state"
    return params["code"]


def exchange(client, client_id, code, pkce):
    return client.post("/oauth/token", data={
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "redirect_uri": TEST_REDIRECT_URI,
        "code_verifier": pkce.code_verifier,
    })


def mcp_call(client, bearer, method, params=None, request_id=1):
    payload = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return client.post("/mcp", json=payload, headers={"Authorization": f"Bearer {bearer}"})


class TestDiscovery:
    """Test metadata documents and health"""

    def test_health(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_authorization_server_metadata(self, test_client):
        data = test_client.get("/.well-known/oauth-authorization-server").json()

        assert data["issuer"] == BASE_URL
        assert data["authorization_endpoint"] == f"{BASE_URL}/oauth/authorize"
        assert data["token_endpoint"] == f"{BASE_URL}/oauth/token"
        assert data["registration_endpoint"] == f"{BASE_URL}/oauth/register"
        assert data["code_challenge_methods_supported"] == ["S256"]
        assert data["token_endpoint_auth_methods_supported"] == ["none"]
        assert set(data["grant_types_supported"]) == {"authorization_code", "refresh_token"}

    def test_protected_resource_metadata(self, test_client):
        data = test_client.get("/.well-known/oauth-protected-resource").json()

        assert data["resource"] == f"{BASE_URL}/mcp"
        assert data["authorization_servers"] == [BASE_URL]


class TestOAuthFlow:
    """Test the end-to-end broker flow"""

    def test_full_flow(self, test_client, fake_upstream):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        code = obtain_code(test_client, client_id, pkce)
        assert fake_upstream.exchanged == ["upstream-code"]

        response = exchange(test_client, client_id, code, pkce)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        tokens = response.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600

        result = mcp_call(test_client, tokens["access_token"], "tools/call",
                          {"name": "whoami", "arguments": {}}).json()
        assert result["result"]["content"][0]["text"] == TEST_EMAIL

        refreshed = test_client.post("/oauth/token", data={
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
            "client_id": client_id,
        })
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        assert mcp_call(test_client, tokens["access_token"], "ping").status_code == 401
        assert mcp_call(test_client, new_tokens["access_token"], "ping").status_code == 200

    def test_code_replay(self, test_client):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        code = obtain_code(test_client, client_id, pkce)

        assert exchange(test_client, client_id, code, pkce).status_code == 200
        replay = exchange(test_client, client_id, code, pkce)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_wrong_verifier(self, test_client):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        code = obtain_code(test_client, client_id, pkce)

        other = PKCEVerifier.create_pkce_challenge()
        response = exchange(test_client, client_id, code, other)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_refresh_replay(self, test_client):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        tokens = exchange(test_client, client_id, obtain_code(test_client, client_id, pkce), pkce).json()

        form = {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"],
                "client_id": client_id}
        assert test_client.post("/oauth/token", data=form).status_code == 200
        replay = test_client.post("/oauth/token", data=form)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_upstream_denial_redirects(self, test_client):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        broker_state = authorize(test_client, client_id, pkce)

        response = test_client.get("/auth/callback", params={
            "state": broker_state, "error": "access_denied",
        }, follow_redirects=False)

        assert response.status_code == 302
        params = query_of(response.headers["location"])
        assert params["error"] == "access_denied"
        assert params["state"] == "client-state"
        assert "code" not in params

    def test_upstream_failure_leaves_session_retryable(self, test_client, fake_upstream):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        broker_state = authorize(test_client, client_id, pkce)

        fake_upstream.fail_exchange = True
        failed = callback(test_client, broker_state)
        assert query_of(failed.headers["location"])["error"] == "server_error"

        fake_upstream.fail_exchange = False
        retried = callback(test_client, broker_state)
        assert "code" in query_of(retried.headers["location"])

    def test_callback_after_resolution(self, test_client):
        pkce = PKCEVerifier.create_pkce_challenge()
        client_id = register(test_client)
        broker_state = authorize(test_client, client_id, pkce)
        assert "code" in query_of(callback(test_client, broker_state).headers["location"])

        second = callback(test_client, broker_state)
        assert query_of(second.headers["location"])["error"] == "invalid_request"


class TestErrorResponses:
    """Test JSON error rendering"""

    def test_registration_requires_redirect_uris(self, test_client):
        response = test_client.post("/oauth/register", json={"client_name": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_redirect_uri"

    def test_registration_rejects_non_json(self, test_client):
        response = test_client.post("/oauth/register", content=b"not json",
                                    headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.parametrize("overrides,error", [
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"client_id": "unknown"}, "invalid_request"),
        ({"client_id": ""}, "invalid_request"),
        ({"redirect_uri": TEST_REDIRECT_URI + "/"}, "invalid_request"),
        ({"code_challenge_method": "plain"}, "invalid_request"),
        ({"code_challenge": ""}, "invalid_request"),
    ])
    def test_authorize_errors_are_not_redirected(self, test_client, overrides, error):
        client_id = register(test_client)
        pkce = PKCEVerifier.create_pkce_challenge()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": TEST_REDIRECT_URI,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": "S256",
        }
        params.update(overrides)

        response = test_client.get("/oauth/authorize", params=params, follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == error
        assert "location" not in response.headers

    @pytest.mark.parametrize("form,error", [
        ({}, "invalid_request"),
        ({"grant_type": "password"}, "unsupported_grant_type"),
        ({"grant_type": "authorization_code", "code": "x"}, "invalid_request"),
        ({"grant_type": "refresh_token", "refresh_token": "x", "client_id": "c"}, "invalid_grant"),
    ])
    def test_token_errors(self, test_client, form, error):
        response = test_client.post("/oauth/token", data=form)
        assert response.status_code == 400
        assert response.json()["error"] == error
        assert response.headers["cache-control"] == "no-store"

    def test_unknown_callback_state(self, test_client):
        response = test_client.get("/auth/callback", params={"state": "bogus", "code": "c"})
        assert response.status_code == 400
        assert "invalid state parameter" in response.text


class TestMCPEndpoint:
    """Test bearer protection and JSON-RPC dispatch"""

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer invalid"},
        {"Authorization": "Basic dXNlcjpwYXNz"},
    ])
    def test_unauthenticated(self, test_client, headers):
        response = test_client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
                                    headers=headers)
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == RESOURCE_METADATA_HEADER
        assert response.json()["error"] == "invalid_token"

    @pytest.fixture
    def api_key(self, test_client):
        state = query_of(test_client.get("/auth/login", follow_redirects=False)
                         .headers["location"])["state"]
        page = test_client.get("/auth/callback", params={"state": state, "code": "c"})
        return re.search(r"gcal_[0-9a-f]{64}", page.text).group(0)

    def test_initialize(self, test_client, api_key):
        data = mcp_call(test_client, api_key, "initialize", {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "test", "version": "1"},
        }).json()

        assert data["id"] == 1
        assert data["result"]["serverInfo"]["name"] == "mcp-gcal"
        assert data["result"]["protocolVersion"] == "2025-03-26"
        assert "tools" in data["result"]["capabilities"]

    def test_tools_list(self, test_client, api_key):
        data = mcp_call(test_client, api_key, "tools/list").json()
        names = [tool["name"] for tool in data["result"]["tools"]]
        assert "whoami" in names

    def test_unknown_tool(self, test_client, api_key):
        data = mcp_call(test_client, api_key, "tools/call",
                        {"name": "missing", "arguments": {}}).json()
        assert data["result"]["isError"] is True

    def test_unknown_method(self, test_client, api_key):
        data = mcp_call(test_client, api_key, "resources/list").json()
        assert data["error"]["code"] == -32601

    def test_notification_accepted(self, test_client, api_key):
        response = test_client.post(
            "/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={"Authorization": f"Bearer {api_key}"},
        )
        assert response.status_code == 202

    def test_parse_error(self, test_client, api_key):
        response = test_client.post("/mcp", content=b"{", headers={
            "Authorization": f"Bearer {api_key}", "Content-Type": "application/json",
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_wrong_jsonrpc_version(self, test_client, api_key):
        response = test_client.post(
            "/mcp", json={"jsonrpc": "1.0", "id": 7, "method": "ping"},
            headers={"Authorization": f"Bearer {api_key}"},
        )
        assert response.status_code == 400
        data = response.json()
        assert data["id"] == 7
        assert data["error"]["code"] == -32600


class TestLoginFlow:
    """Test the single-user login page"""

    def test_login_issues_api_key(self, test_client):
        location = test_client.get("/auth/login", follow_redirects=False).headers["location"]
        state = query_of(location)["state"]

        page = test_client.get("/auth/callback", params={"state": state, "code": "c"})
        assert page.status_code == 200
        assert TEST_EMAIL in page.text
        assert re.search(r"gcal_[0-9a-f]{64}", page.text)

        replay = test_client.get("/auth/callback", params={"state": state, "code": "c"})
        assert replay.status_code == 400

    def test_login_denied(self, test_client):
        location = test_client.get("/auth/login", follow_redirects=False).headers["location"]
        state = query_of(location)["state"]

        page = test_client.get("/auth/callback", params={"state": state, "error": "<denied>"})
        assert page.status_code == 400
        assert "&lt;denied&gt;" in page.text
        assert "<denied>" not in page.text

    def test_new_login_revokes_previous_key(self, test_client):
        keys = []
        for _ in range(2):
            state = query_of(test_client.get("/auth/login", follow_redirects=False)
                             .headers["location"])["state"]
            page = test_client.get("/auth/callback", params={"state": state, "code": "c"})
            keys.append(re.search(r"gcal_[0-9a-f]{64}", page.text).group(0))

        assert mcp_call(test_client, keys[0], "ping").status_code == 401
        assert mcp_call(test_client, keys[1], "ping").status_code == 200


class TestApplicationFactory:
    """Test building the app from configuration alone"""

    def test_create_app(self, test_config):
        test_config.upstream.client_id = "google-client"
        test_config.upstream.client_secret = "google-secret"
        app = create_app(test_config)

        paths = {route.path for route in app.routes}
        assert {"/oauth/register", "/oauth/authorize", "/oauth/token", "/auth/callback",
                "/auth/login", "/mcp", "/health"} <= paths


class TestBackgroundSweep:
    """Test the periodic sweep started by the lifespan"""

    @pytest.mark.asyncio
    async def test_sweep_continues_after_driver_error(self, test_config, fake_upstream):
        test_config.broker.sweep_interval = 0.01
        server = BrokerHTTPServer(test_config, upstream=fake_upstream)
        calls = {"n": 0}

        async def flaky_delete(now):
            calls["n"] += 1
            if calls["n"] == 1:
                raise asyncpg.InterfaceError("pool is closing")
            return 0

        with patch.object(server.store, "delete_expired_sessions", new=flaky_delete):
            async with server.lifespan(server.app):
                await asyncio.sleep(0.2)
                assert not server._sweep_task.done()

        assert calls["n"] > 1
        assert server._sweep_task.cancelled()
