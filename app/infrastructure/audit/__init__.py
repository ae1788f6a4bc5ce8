"""
Audit logging infrastructure for the login handshake.
"""

from app.infrastructure.audit.audit_logger import AuditEvent, AuditLogger, audit_logger

__all__ = ["AuditEvent", "AuditLogger", "audit_logger"]
