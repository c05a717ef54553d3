"""
Broker error taxonomy

Every error carries an OAuth 2.0 error code and an HTTP status so the
HTTP layer can render it without inspecting message text. Storage and
upstream failures never expose their internal detail to callers.
"""

from typing import Dict, Optional


class BrokerError(Exception):
    """Base class for all broker errors"""

    error = "invalid_request"
    status_code = 400
    public_description: Optional[str] = None

    def __init__(self, description: str = "", error: Optional[str] = None):
        self.description = description
        if error is not None:
            self.error = error
        super().__init__(f"{self.error}: {description}")

    def to_dict(self) -> Dict[str, str]:
        """Render the OAuth error object returned to clients"""
        result = {"error": self.error}
        description = self.public_description or self.description
        if description:
            result["error_description"] = description
        return result


class ValidationError(BrokerError):
    """Malformed or missing input"""


class InvalidRedirectURI(ValidationError):
    error = "invalid_redirect_uri"


class MissingRedirectURIs(ValidationError):
    error = "invalid_redirect_uri"


class UnsupportedGrantType(ValidationError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(ValidationError):
    error = "unsupported_response_type"


class UnknownEntity(BrokerError):
    """Client, session or user not found"""


class UnknownClient(UnknownEntity):
    pass


class UnknownSession(UnknownEntity):
    pass


class GrantError(BrokerError):
    """Authorization code or refresh token rejected"""

    error = "invalid_grant"


class InvalidCode(GrantError):
    pass


class CodeAlreadyUsed(GrantError):
    pass


class CodeExpired(GrantError):
    pass


class InvalidGrant(GrantError):
    pass


class InvalidToken(GrantError):
    pass


class ExpiredToken(GrantError):
    pass


class ClientMismatch(GrantError):
    pass


class Unauthenticated(BrokerError):
    """Bearer credential absent or rejected"""

    error = "invalid_token"
    status_code = 401
    public_description = "authentication required"


class UpstreamFailure(BrokerError):
    """The identity provider exchange or identity lookup failed"""

    error = "server_error"
    status_code = 502
    public_description = "upstream identity provider request failed"


class StorageFailure(BrokerError):
    """The credential store is unreachable or a write could not be committed"""

    error = "server_error"
    status_code = 500
    public_description = "internal server error"
