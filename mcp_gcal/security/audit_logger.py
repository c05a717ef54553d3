"""
Security Audit Logging for the OAuth broker

Emits one structured JSON line per security-relevant event:
- Client registration and authorization starts
- Authorization code issue, redemption and replay
- Token issue and refresh
- Bearer authentication outcomes on the MCP endpoint
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

AUDIT_LOGGER_NAME = "mcp_gcal.audit"


class AuditEventType(Enum):
    """Types of security audit events"""

    CLIENT_REGISTERED = "client_registered"
    AUTHORIZATION_STARTED = "authorization_started"
    UPSTREAM_CALLBACK_FAILED = "upstream_callback_failed"

    OAUTH_CODE_ISSUED = "oauth_code_issued"
    OAUTH_CODE_REDEEMED = "oauth_code_redeemed"
    OAUTH_CODE_REPLAY = "oauth_code_replay"
    OAUTH_GRANT_REJECTED = "oauth_grant_rejected"

    TOKEN_ISSUED = "token_issued"
    TOKEN_REFRESHED = "token_refreshed"

    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"

    SWEEP_COMPLETED = "sweep_completed"


SEVERITY = {
    AuditEventType.UPSTREAM_CALLBACK_FAILED: logging.WARNING,
    AuditEventType.OAUTH_GRANT_REJECTED: logging.WARNING,
    AuditEventType.AUTH_FAILURE: logging.WARNING,
    AuditEventType.OAUTH_CODE_REPLAY: logging.ERROR,
}


@dataclass
class AuditEvent:
    """Security audit event data structure"""

    event_type: AuditEventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    subject: Optional[str] = None
    client_id: Optional[str] = None
    client_ip: Optional[str] = None
    success: bool = True
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class SecurityAuditLogger:
    """
    Structured audit logger

    Subject identifiers and client IPs are hashed with a salt before
    they are written.
    """

    def __init__(self,
                 logger_name: str = AUDIT_LOGGER_NAME,
                 enabled: bool = True,
                 hash_salt: str = "mcp-gcal-audit",
                 max_details_length: int = 2048):
        self.logger = logging.getLogger(logger_name)
        self.enabled = enabled
        self.hash_salt = hash_salt
        self.max_details_length = max_details_length

    def log_event(self, event: AuditEvent) -> None:
        if not self.enabled:
            return
        level = SEVERITY.get(event.event_type, logging.INFO)
        if not event.success and level < logging.WARNING:
            level = logging.WARNING
        self.logger.log(level, self._format_log_entry(self._hash_pii(event)))

    def log(self, event_type: AuditEventType, **kwargs: Any) -> None:
        """Shorthand for log_event(AuditEvent(event_type, ...))"""
        self.log_event(AuditEvent(event_type=event_type, **kwargs))

    def log_authentication_success(self, subject: str, method: str,
                                   client_ip: Optional[str] = None) -> None:
        self.log(AuditEventType.AUTH_SUCCESS, subject=subject, client_ip=client_ip,
                 details={"method": method})

    def log_authentication_failure(self, error_message: str,
                                   client_ip: Optional[str] = None) -> None:
        self.log(AuditEventType.AUTH_FAILURE, success=False, client_ip=client_ip,
                 error_code="invalid_token", error_message=error_message)

    def log_token_issued(self, subject: Optional[str], client_id: str,
                         refreshed: bool = False) -> None:
        event_type = AuditEventType.TOKEN_REFRESHED if refreshed else AuditEventType.TOKEN_ISSUED
        self.log(event_type, subject=subject, client_id=client_id)

    def log_grant_rejected(self, client_id: Optional[str], error_code: str,
                           error_message: str, replay: bool = False) -> None:
        event_type = AuditEventType.OAUTH_CODE_REPLAY if replay else AuditEventType.OAUTH_GRANT_REJECTED
        self.log(event_type, client_id=client_id, success=False,
                 error_code=error_code, error_message=error_message)

    def _hash_pii(self, event: AuditEvent) -> AuditEvent:
        return replace(
            event,
            subject=self._hash_value(event.subject) if event.subject else None,
            client_ip=self._hash_value(event.client_ip) if event.client_ip else None,
            details={
                key: self._hash_value(value) if isinstance(value, str) and "@" in value else value
                for key, value in event.details.items()
            },
        )

    def _hash_value(self, value: str) -> str:
        salted_value = f"{value}{self.hash_salt}"
        return hashlib.sha256(salted_value.encode()).hexdigest()[:16]

    def _format_log_entry(self, event: AuditEvent) -> str:
        log_data: Dict[str, Any] = {
            "event_type": event.event_type.value,
            "timestamp": event.timestamp.isoformat(),
            "success": event.success,
        }

        for name in ("subject", "client_id", "client_ip", "error_code", "error_message"):
            value = getattr(event, name)
            if value:
                log_data[name] = value

        if event.details:
            details_str = json.dumps(event.details, default=str)
            if len(details_str) > self.max_details_length:
                details_str = details_str[:self.max_details_length] + "..."
            log_data["details"] = details_str

        return json.dumps(log_data, separators=(",", ":"))


def get_security_audit_logger(enabled: bool = True) -> SecurityAuditLogger:
    """Create the broker's audit logger"""
    return SecurityAuditLogger(enabled=enabled)
