"""
Persistence for pending_login_tokens.

Every state change is a conditional UPDATE ... RETURNING gated on the
current status/used values, so concurrent confirmers and pollers can
never both win the same transition.
"""

from datetime import datetime, timedelta

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger, token_preview
from app.models.domain.login_domain import (
    ChannelMetadata,
    LoginToken,
    ResolvedIdentity,
    TokenStatus,
)

logger = get_logger(__name__)


class LoginTokenRepository:
    """Data access for login correlation tokens."""

    SELECT_COLUMNS = """
        token, created_at, expires_at, status, used, used_at,
        user_id, email, telegram_chat_id, telegram_username, telegram_first_name,
        ip_address, user_agent, origin
    """

    @staticmethod
    def _row_to_token(row: dict | None) -> LoginToken | None:
        if not row:
            return None

        identity = None
        if row.get("user_id") and row.get("email"):
            identity = ResolvedIdentity(user_id=str(row["user_id"]), email=row["email"])

        channel = None
        if row.get("telegram_chat_id") is not None:
            channel = ChannelMetadata(
                chat_id=int(row["telegram_chat_id"]),
                username=row.get("telegram_username"),
                first_name=row.get("telegram_first_name"),
            )

        return LoginToken(
            token=row["token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            status=TokenStatus(row["status"]),
            used=bool(row["used"]),
            used_at=row.get("used_at"),
            identity=identity,
            channel=channel,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            origin=row.get("origin"),
        )

    @with_db_retry(max_retries=2)
    async def insert_if_absent(self, record: LoginToken) -> bool:
        """
        Insert a pending token row.

        Returns:
            True if the row was created, False if the token already existed
        """
        query = """
            INSERT INTO pending_login_tokens (token, created_at, expires_at, status, used)
            VALUES (%s, %s, %s, 'pending', false)
            ON CONFLICT (token) DO NOTHING
            RETURNING token
        """
        row = await fetch_one(query, (record.token, record.created_at, record.expires_at))
        return row is not None

    @with_db_retry(max_retries=2)
    async def get(self, token: str) -> LoginToken | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM pending_login_tokens WHERE token = %s"
        return self._row_to_token(await fetch_one(query, (token,)))

    async def delete(self, token: str) -> bool:
        deleted = await execute_query("DELETE FROM pending_login_tokens WHERE token = %s", (token,))
        logger.debug("Login token deleted", token_preview=token_preview(token), deleted=deleted)
        return deleted > 0

    async def mark_complete(
        self,
        token: str,
        identity: ResolvedIdentity,
        channel: ChannelMetadata,
        now: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        origin: str | None = None,
    ) -> LoginToken | None:
        """
        pending -> complete. Returns the updated record, or None when the
        token was no longer pending/unused/unexpired.
        """
        query = f"""
            UPDATE pending_login_tokens
            SET status = 'complete',
                user_id = %s,
                email = %s,
                telegram_chat_id = %s,
                telegram_username = %s,
                telegram_first_name = %s,
                ip_address = %s,
                user_agent = %s,
                origin = %s
            WHERE token = %s
              AND status = 'pending'
              AND used = false
              AND expires_at > %s
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                identity.user_id,
                identity.email,
                channel.chat_id,
                channel.username,
                channel.first_name,
                ip_address,
                user_agent,
                origin,
                token,
                now,
            ),
        )
        return self._row_to_token(row)

    async def mark_used(self, token: str, now: datetime) -> LoginToken | None:
        """
        complete -> used. Only one caller can ever get a row back.
        """
        query = f"""
            UPDATE pending_login_tokens
            SET used = true, used_at = %s
            WHERE token = %s
              AND status = 'complete'
              AND used = false
            RETURNING {self.SELECT_COLUMNS}
        """
        return self._row_to_token(await fetch_one(query, (now, token)))

    async def delete_stale(
        self, now: datetime, max_age_seconds: int, used_retention_minutes: int
    ) -> dict:
        """
        Remove expired, over-age and long-consumed tokens.

        Returns:
            counts plus ``expired_tokens``, the unused tokens removed, so the
            caller can tombstone them
        """
        expired_rows = await fetch_all(
            """
            DELETE FROM pending_login_tokens
            WHERE used = false
              AND (expires_at <= %s OR created_at <= %s)
            RETURNING token
            """,
            (now, now - timedelta(seconds=max_age_seconds)),
        )
        consumed = await execute_query(
            "DELETE FROM pending_login_tokens WHERE used = true AND used_at <= %s",
            (now - timedelta(minutes=used_retention_minutes),),
        )
        expired_tokens = [row["token"] for row in expired_rows]
        return {
            "expired_deleted": len(expired_tokens),
            "used_deleted": consumed,
            "expired_tokens": expired_tokens,
        }


login_token_repository = LoginTokenRepository()
