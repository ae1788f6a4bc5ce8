"""
Lookups against profiles and Supabase's auth.users for identity resolution.
"""

from datetime import datetime

from app.db.helpers import fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.login_domain import ChannelMetadata, DurableUser

logger = get_logger(__name__)


class ProfileRepository:
    """Profile rows keyed by auth user id with a unique telegram_id."""

    @with_db_retry(max_retries=2)
    async def find_by_telegram_id(self, telegram_id: int) -> DurableUser | None:
        """Authoritative lookup: the email comes from auth.users, never recomputed."""
        query = """
            SELECT p.id, u.email, p.telegram_id
            FROM profiles p
            JOIN auth.users u ON u.id = p.id
            WHERE p.telegram_id = %s
        """
        row = await fetch_one(query, (telegram_id,))
        if not row:
            return None
        return DurableUser(user_id=str(row["id"]), email=row["email"], telegram_id=row["telegram_id"])

    @with_db_retry(max_retries=2)
    async def find_auth_user_by_email(self, email: str) -> DurableUser | None:
        query = "SELECT id, email FROM auth.users WHERE lower(email) = lower(%s)"
        row = await fetch_one(query, (email,))
        if not row:
            return None
        return DurableUser(user_id=str(row["id"]), email=row["email"])

    async def upsert_profile(self, user_id: str, channel: ChannelMetadata, now: datetime) -> None:
        """
        Insert or refresh the profile with the latest channel metadata.

        ``username`` is NOT NULL: a handle-less user is stored as '' and an
        empty handle never overwrites a stored one.
        """
        query = """
            INSERT INTO profiles (id, telegram_id, username, first_name, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                telegram_id = EXCLUDED.telegram_id,
                username = COALESCE(NULLIF(EXCLUDED.username, ''), profiles.username),
                first_name = COALESCE(EXCLUDED.first_name, profiles.first_name),
                updated_at = EXCLUDED.updated_at
            RETURNING id
        """
        await fetch_one(
            query, (user_id, channel.chat_id, channel.username or "", channel.first_name, now)
        )
        logger.debug("Profile upserted", user_id=user_id, telegram_id=channel.chat_id)


profile_repository = ProfileRepository()
