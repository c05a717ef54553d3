"""
FastAPI HTTP server for the mcp-gcal broker

Serves:
- OAuth discovery metadata (RFC 8414, RFC 9728)
- Dynamic client registration, authorization and token endpoints
- The upstream callback shared by the broker and login flows
- The bearer-protected MCP JSON-RPC endpoint
- A periodic sweep of expired sessions and stale tokens
"""

import asyncio
import html
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from mcp.types import (
    LATEST_PROTOCOL_VERSION, Implementation, InitializeResult, ListToolsResult,
    ServerCapabilities, ToolsCapability
)
from pydantic import BaseModel

from . import __version__
from .auth.bearer_resolver import BearerResolver, extract_bearer_token
from .auth.client_registry import DynamicClientRegistry
from .auth.credentials import TokenCipher
from .auth.discovery import AUTHORIZATION_SERVER_PATH, PROTECTED_RESOURCE_PATH, DiscoveryService
from .auth.errors import (
    BrokerError, StorageFailure, Unauthenticated, UnknownSession, UpstreamFailure, ValidationError
)
from .auth.oauth_broker import OAuthBroker
from .auth.session_manager import AuthorizationSessionManager
from .auth.token_manager import TokenIssuer
from .auth.upstream import GoogleProvider, UpstreamCredentialManager, UpstreamProvider
from .config import Config, get_config, split_addr
from .models import utc_now
from .security.audit_logger import get_security_audit_logger
from .store_factory import StoreFactory
from .store_interface import CredentialStore
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-gcal"

JSONRPC_VERSION = "2.0"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class MCPRequest(BaseModel):
    jsonrpc: str = JSONRPC_VERSION
    id: Optional[Any] = None
    method: str
    params: Optional[Dict[str, Any]] = None


def jsonrpc_result(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def jsonrpc_error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}}


LOGIN_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authentication Successful</title>
<style>
body {{ font-family: -apple-system, BlinkMacSystemFont, sans-serif; max-width: 600px; margin: 40px auto; padding: 20px; }}
.key-box {{ background: #f5f5f5; border: 1px solid #ddd; border-radius: 8px; padding: 16px; margin: 16px 0; word-break: break-all; font-family: monospace; }}
</style>
</head>
<body>
<h2>Authentication Successful</h2>
<p>Welcome, <strong>{email}</strong></p>
<p>Your API key for MCP requests:</p>
<div class="key-box" id="api-key">{api_key}</div>
<p>Include it as a Bearer token in your MCP requests:</p>
<pre>Authorization: Bearer {api_key}</pre>
<p>This key is shown once. Logging in again replaces it.</p>
</body>
</html>"""

LOGIN_FAILURE_PAGE = """<!DOCTYPE html>
<html><body><h2>Authentication failed</h2><p>{message}</p></body></html>"""


class BrokerHTTPServer:
    """HTTP server wiring the broker components into a FastAPI application"""

    def __init__(self,
                 config: Config,
                 store: Optional[CredentialStore] = None,
                 upstream: Optional[UpstreamProvider] = None,
                 tool_dispatcher: Optional[ToolDispatcher] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.base_url = config.base_url
        self.store = store or StoreFactory.create_store(config)
        self.upstream = upstream or GoogleProvider.from_config(config.upstream, self.base_url)
        self.tool_dispatcher = tool_dispatcher or ToolDispatcher()
        self.discovery = DiscoveryService(self.base_url)

        broker_config = config.broker
        registry = DynamicClientRegistry(self.store, clock=clock)
        sessions = AuthorizationSessionManager(
            self.store, registry,
            session_ttl=timedelta(seconds=broker_config.session_ttl),
            clock=clock,
        )
        tokens = TokenIssuer(
            self.store,
            access_token_ttl=timedelta(seconds=broker_config.access_token_ttl),
            token_retention=timedelta(days=broker_config.token_retention_days),
            clock=clock,
        )
        self.credentials = UpstreamCredentialManager(
            self.store, self.upstream, TokenCipher(config.database.encryption_key)
        )
        self.broker = OAuthBroker(
            registry=registry,
            sessions=sessions,
            tokens=tokens,
            resolver=BearerResolver(tokens, self.store),
            upstream=self.upstream,
            credentials=self.credentials,
            discovery=self.discovery,
            audit=get_security_audit_logger(enabled=config.monitoring.audit_enabled),
            clock=clock,
        )
        self._sweep_task: Optional[asyncio.Task] = None

        self.app = FastAPI(
            title="mcp-gcal",
            description="OAuth broker and MCP endpoint for Google Calendar and Gmail",
            version=__version__,
            lifespan=self.lifespan
        )

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        """Manage application lifecycle"""
        logger.info(f"Starting mcp-gcal broker at {self.base_url}")
        await self.store.connect()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        try:
            yield
        finally:
            logger.info("Shutting down mcp-gcal broker...")
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            await self.store.close()

    async def _sweep_loop(self) -> None:
        interval = self.config.broker.sweep_interval
        while True:
            try:
                await self.broker.sweep()
            except BrokerError as e:
                logger.error(f"Sweep failed: {e}")
            except Exception:
                logger.exception("Sweep failed with an unexpected error")
            await asyncio.sleep(interval)

    def _setup_middleware(self):
        """Setup FastAPI middleware"""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.server.cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "Mcp-Session-Id", "Mcp-Protocol-Version"],
            expose_headers=["WWW-Authenticate"],
        )

    def _setup_exception_handlers(self):
        @self.app.exception_handler(BrokerError)
        async def broker_error_handler(request: Request, exc: BrokerError):
            if exc.status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            headers = dict(NO_STORE_HEADERS)
            if isinstance(exc, Unauthenticated):
                headers["WWW-Authenticate"] = self.discovery.www_authenticate_header()
            return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    def _setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint"""
            return {"status": "ok"}

        @self.app.get(AUTHORIZATION_SERVER_PATH)
        async def authorization_server_metadata():
            return self.broker.get_authorization_server_metadata()

        @self.app.get(PROTECTED_RESOURCE_PATH)
        async def protected_resource_metadata():
            return self.broker.get_protected_resource_metadata()

        @self.app.post("/oauth/register", status_code=status.HTTP_201_CREATED)
        async def register_client(request: Request):
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("request body must be JSON")
            return await self.broker.register_client(body)

        @self.app.get("/oauth/authorize")
        async def authorize(request: Request):
            upstream_url = await self.broker.start_authorization(request.query_params)
            return RedirectResponse(upstream_url, status_code=status.HTTP_302_FOUND)

        @self.app.post("/oauth/token")
        async def token(request: Request):
            form = await request.form()
            response = await self.broker.handle_token_request(
                {key: value for key, value in form.items() if isinstance(value, str)}
            )
            return JSONResponse(response, headers=NO_STORE_HEADERS)

        @self.app.get("/auth/login")
        async def login():
            upstream_url = await self.broker.start_login()
            return RedirectResponse(upstream_url, status_code=status.HTTP_302_FOUND)

        @self.app.get("/auth/callback")
        async def callback(request: Request):
            params = request.query_params
            try:
                result = await self.broker.handle_callback(
                    params.get("state"), params.get("code"), params.get("error")
                )
            except UnknownSession:
                return PlainTextResponse("invalid state parameter", status_code=400)
            except ValidationError as e:
                return HTMLResponse(
                    LOGIN_FAILURE_PAGE.format(message=html.escape(e.description)),
                    status_code=400,
                )
            except (UpstreamFailure, StorageFailure) as e:
                logger.error(f"Login callback failed: {e}")
                return PlainTextResponse("authentication failed", status_code=e.status_code)

            if result.redirect_url:
                return RedirectResponse(result.redirect_url, status_code=status.HTTP_302_FOUND)
            return HTMLResponse(
                LOGIN_SUCCESS_PAGE.format(
                    email=html.escape(result.email),
                    api_key=html.escape(result.api_key),
                ),
                headers=NO_STORE_HEADERS,
            )

        @self.app.post("/mcp")
        async def mcp_endpoint(request: Request):
            """Bearer-protected MCP JSON-RPC endpoint"""
            bearer = extract_bearer_token(request.headers.get("Authorization"))
            client_ip = request.client.host if request.client else None
            authenticated = await self.broker.authenticate(bearer, client_ip=client_ip)

            try:
                payload = await request.json()
            except ValueError:
                return JSONResponse(jsonrpc_error(None, PARSE_ERROR, "Parse error"), status_code=400)

            try:
                message = MCPRequest.model_validate(payload)
            except ValueError:
                return JSONResponse(jsonrpc_error(None, INVALID_REQUEST, "Invalid Request"),
                                    status_code=400)
            if message.jsonrpc != JSONRPC_VERSION:
                return JSONResponse(jsonrpc_error(message.id, INVALID_REQUEST, "Invalid Request"),
                                    status_code=400)

            if message.id is None:
                # Notification
                return Response(status_code=status.HTTP_202_ACCEPTED)

            return JSONResponse(await self._handle_mcp_request(message, authenticated.subject))

    async def _handle_mcp_request(self, message: MCPRequest, subject: str) -> Dict[str, Any]:
        params = message.params or {}

        if message.method == "initialize":
            result = InitializeResult(
                protocolVersion=params.get("protocolVersion") or LATEST_PROTOCOL_VERSION,
                capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
                serverInfo=Implementation(name=SERVER_NAME, version=__version__),
            )
            return jsonrpc_result(message.id, _dump(result))

        if message.method == "ping":
            return jsonrpc_result(message.id, {})

        if message.method == "tools/list":
            result = ListToolsResult(tools=self.tool_dispatcher.list_tools())
            return jsonrpc_result(message.id, _dump(result))

        if message.method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            if not isinstance(name, str) or not isinstance(arguments, dict):
                return jsonrpc_error(message.id, INVALID_PARAMS, "Invalid params")
            result = await self.tool_dispatcher.call_tool(name, arguments, subject)
            return jsonrpc_result(message.id, _dump(result))

        return jsonrpc_error(message.id, METHOD_NOT_FOUND, f"Method not found: {message.method}")

    def run(self):
        """Run the server"""
        host, port = split_addr(self.config.server.addr)
        uvicorn.run(
            self.app,
            host=host or "0.0.0.0",
            port=port,
            log_level=self.config.monitoring.log_level.lower(),
        )


def _dump(model: BaseModel) -> Dict[str, Any]:
    return json.loads(model.model_dump_json(by_alias=True, exclude_none=True))


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Application factory, e.g. ``uvicorn --factory mcp_gcal.http_server:create_app``"""
    return BrokerHTTPServer(config or get_config()).app
