"""
Security Module for mcp-gcal

Provides structured audit logging of broker events.
"""

from .audit_logger import AuditEvent, AuditEventType, SecurityAuditLogger

__all__ = [
    'AuditEvent',
    'AuditEventType',
    'SecurityAuditLogger'
]
