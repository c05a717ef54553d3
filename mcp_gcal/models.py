from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SessionFlow(str, Enum):
    BROKER = "broker"
    LOGIN = "login"


class SessionStatus(str, Enum):
    CREATED = "created"
    RESOLVED = "resolved"
    REDEEMED = "redeemed"


class RedeemOutcome(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    USED = "used"
    EXPIRED = "expired"


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    CLIENT_MISMATCH = "client_mismatch"


class OAuthClient(BaseModel):
    client_id: str
    client_name: str = ""
    client_secret_hash: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)
    created_at: datetime


class AuthorizationSession(BaseModel):
    """
    An in-flight authorization attempt keyed by the broker's state token.

    Broker sessions carry the client binding and PKCE challenge; login
    sessions only reserve a state value for the single-user login flow.
    """
    state: str
    flow: SessionFlow = SessionFlow.BROKER
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    client_state: Optional[str] = None
    auth_code_hash: Optional[str] = None
    subject: Optional[str] = None
    expires_at: datetime
    used: bool = False

    @property
    def status(self) -> SessionStatus:
        if self.used:
            return SessionStatus.REDEEMED
        if self.auth_code_hash is not None:
            return SessionStatus.RESOLVED
        return SessionStatus.CREATED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class TokenPair(BaseModel):
    access_token_hash: str
    refresh_token_hash: str
    client_id: str
    subject: str
    expires_at: datetime
    created_at: datetime


class UserRecord(BaseModel):
    email: str
    api_key_hash: Optional[str] = None
    token_json: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserUpdate(BaseModel):
    """Fields to change on a user record; None leaves a column untouched"""
    api_key_hash: Optional[str] = None
    token_json: Optional[str] = None

    def is_empty(self) -> bool:
        return self.api_key_hash is None and self.token_json is None


class CodeRedemption(BaseModel):
    outcome: RedeemOutcome
    session: Optional[AuthorizationSession] = None


class TokenRotation(BaseModel):
    outcome: RotationOutcome
    pair: Optional[TokenPair] = None


class SweepResult(BaseModel):
    sessions: int = 0
    tokens: int = 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
