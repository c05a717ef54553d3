"""
mcp-gcal: OAuth identity broker for an MCP Google Calendar and Gmail bridge

Components:
- OAuth 2.0 authorization server for MCP clients (PKCE S256, dynamic registration)
- OAuth client of Google holding each user's upstream token
- Bearer-protected MCP endpoint resolving broker tokens and legacy API keys
- SQLite and PostgreSQL credential stores
"""

__version__ = "0.1.0"

__all__ = ['__version__']
