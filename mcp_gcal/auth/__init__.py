"""
OAuth Broker Module for mcp-gcal

This module provides the authorization server side of the broker with:
- Dynamic client registration with exact redirect URI matching
- Single-use authorization codes bound to a PKCE S256 challenge
- Opaque bearer tokens with refresh token rotation
- Google as the single upstream identity provider
"""

from .bearer_resolver import AuthenticatedSubject, BearerResolver, extract_bearer_token
from .client_registry import DynamicClientRegistry
from .discovery import DiscoveryService
from .oauth_broker import CallbackResult, OAuthBroker
from .pkce_verifier import PKCEChallenge, PKCEVerifier
from .session_manager import AuthorizationSessionManager
from .token_manager import IssuedTokens, TokenIssuer
from .upstream import GoogleProvider, UpstreamCredentialManager, UpstreamProvider

__all__ = [
    'AuthenticatedSubject',
    'BearerResolver',
    'extract_bearer_token',
    'DynamicClientRegistry',
    'DiscoveryService',
    'CallbackResult',
    'OAuthBroker',
    'PKCEChallenge',
    'PKCEVerifier',
    'AuthorizationSessionManager',
    'IssuedTokens',
    'TokenIssuer',
    'GoogleProvider',
    'UpstreamCredentialManager',
    'UpstreamProvider'
]
