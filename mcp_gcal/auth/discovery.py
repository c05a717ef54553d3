"""
OAuth discovery documents

Implements RFC 8414 (Authorization Server Metadata) and RFC 9728
(Protected Resource Metadata) so MCP clients can find the registration,
authorization and token endpoints from a 401 challenge.
"""

import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
MCP_RESOURCE_PATH = "/mcp"


class DiscoveryService:
    """Builds metadata documents rooted at the broker's public base URL"""

    def __init__(self, issuer: str):
        self.issuer = issuer.rstrip("/")

    @property
    def resource(self) -> str:
        return f"{self.issuer}{MCP_RESOURCE_PATH}"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.issuer}{PROTECTED_RESOURCE_PATH}"

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        """
        OAuth 2.0 Authorization Server Metadata (RFC 8414)

        Available at: /.well-known/oauth-authorization-server
        """
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/oauth/authorize",
            "token_endpoint": f"{self.issuer}/oauth/token",
            "registration_endpoint": f"{self.issuer}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "token_endpoint_auth_methods_supported": ["none"],
            "code_challenge_methods_supported": ["S256"],
        }

    def get_protected_resource_metadata(self) -> Dict[str, Any]:
        """
        OAuth 2.0 Protected Resource Metadata (RFC 9728)

        Available at: /.well-known/oauth-protected-resource
        """
        return {
            "resource": self.resource,
            "authorization_servers": [self.issuer],
            "bearer_methods_supported": ["header"],
        }

    def www_authenticate_header(self) -> str:
        """Challenge sent with 401 responses from the MCP endpoint"""
        return f'Bearer resource_metadata="{self.resource_metadata_url}"'
