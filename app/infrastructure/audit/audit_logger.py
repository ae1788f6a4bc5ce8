"""
Audit trail for the login handshake.

Two kinds of events are recorded, each as a structured log line plus an
``audit_logs`` row:

- login events: ``telegram_login_confirmed`` when the bot backend confirms a
  token, ``telegram_login_exchanged`` when the completion payload is handed
  to a client. Tokens are stored as previews only.
- security events: rejected or rate-limited confirmation callers.

Audit writes never fail the request; a failed insert is logged with the
event attached so it can be replayed from the log stream.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, token_preview

logger = get_logger(__name__)

ANONYMOUS_USER_ID = "00000000-0000-0000-0000-000000000000"

INSERT_AUDIT_LOG = """
    INSERT INTO audit_logs (
        user_id, action, resource_type, resource_id,
        ip_address, user_agent, request_id, metadata, created_at
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""


@dataclass
class AuditEvent:
    user_id: str
    action: str
    resource_type: str
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditLogger:
    """Writes AuditEvents to the structured log and the audit_logs table."""

    async def log(self, event: AuditEvent) -> bool:
        """
        Returns:
            True if the row was written, False otherwise (never raises)
        """
        logger.info(
            "Audit event",
            audit_action=event.action,
            user_id=event.user_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            ip_address=event.ip_address,
            request_id=event.request_id,
        )

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    INSERT_AUDIT_LOG,
                    (
                        event.user_id,
                        event.action,
                        event.resource_type,
                        event.resource_id,
                        event.ip_address,
                        event.user_agent,
                        event.request_id,
                        Jsonb(event.metadata),
                        event.created_at,
                    ),
                )
            return True
        except Exception as e:
            payload = asdict(event)
            payload["created_at"] = event.created_at.isoformat()
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data=payload,
            )
            return False

    async def log_login_event(
        self,
        user_id: str,
        action: str,
        token: str,
        channel_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        origin: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        return await self.log(
            AuditEvent(
                user_id=str(user_id),
                action=action,
                resource_type="login_token",
                resource_id=token_preview(token),
                ip_address=ip_address,
                user_agent=user_agent,
                request_id=request_id,
                metadata={"channel_id": channel_id, "origin": origin},
            )
        )

    async def log_security_event(
        self,
        user_id: str | None,
        event_type: str,
        severity: str,
        description: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Args:
            event_type: e.g. "login_confirmation_rate_limited"
            severity: "low", "medium", "high" or "critical"
        """
        return await self.log(
            AuditEvent(
                user_id=str(user_id) if user_id else ANONYMOUS_USER_ID,
                action="security_event",
                resource_type="security",
                ip_address=ip_address,
                user_agent=user_agent,
                request_id=request_id,
                metadata={
                    **(metadata or {}),
                    "event_type": event_type,
                    "severity": severity,
                    "description": description,
                },
            )
        )


# Global singleton instance
audit_logger = AuditLogger()
