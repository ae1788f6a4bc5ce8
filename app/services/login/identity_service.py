"""
Identity resolution for confirmed Telegram logins.

Resolution order, first match wins:
    1. profiles.telegram_id  (authoritative; stored email is reused as-is)
    2. auth.users by the derived email  (legacy accounts without a profile link)
    3. create a new auth user through the admin API

The profile row is upserted afterwards in every case so the latest
Telegram username/first name is stored. That write is best effort: once a
user is resolved, a failed upsert is logged and the login goes ahead (the
next login finds the user again through the derived email).
"""

import hashlib
import hmac
from collections.abc import Callable
from datetime import datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.login_domain import ChannelMetadata, DurableUser, utc_now
from app.repositories.profile_repository import profile_repository
from app.services.login.errors import ConfigurationError, IdentityResolutionError
from app.services.supabase_admin import DuplicateUserError, SupabaseAdminError, supabase_admin

logger = get_logger(__name__)


def derive_email(chat_id: int) -> str:
    return f"{settings.LOGIN_EMAIL_PREFIX}-{chat_id}@{settings.LOGIN_EMAIL_DOMAIN}"


def derive_credential(chat_id: int, secret: str | None = None) -> str:
    """Stable per-channel sign-in credential: HMAC-SHA256 over the chat id."""
    secret = secret or settings.LOGIN_CREDENTIAL_SECRET
    if not secret:
        raise ConfigurationError("LOGIN_CREDENTIAL_SECRET is not configured")
    return hmac.new(secret.encode(), f"telegram:{chat_id}".encode(), hashlib.sha256).hexdigest()


class IdentityService:
    """Find-or-create the durable user behind a Telegram chat id."""

    def __init__(
        self,
        profiles=None,
        admin=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.profiles = profiles or profile_repository
        self.admin = admin or supabase_admin
        self.clock = clock

    async def resolve(self, channel: ChannelMetadata) -> DurableUser:
        """
        Raises:
            IdentityResolutionError: datastore or auth API failure
            ConfigurationError: credential secret missing for a new user
        """
        try:
            user = await self._find_or_create(channel)
        except DatabaseError as e:
            logger.error(
                "Identity resolution datastore failure",
                telegram_id=channel.chat_id,
                operation=e.operation,
                error=str(e),
            )
            raise IdentityResolutionError() from e
        except SupabaseAdminError as e:
            logger.error(
                "Identity resolution auth API failure",
                telegram_id=channel.chat_id,
                status_code=e.status_code,
                error=str(e),
            )
            raise IdentityResolutionError() from e

        await self._refresh_profile(user, channel)

        logger.info(
            "Telegram identity resolved",
            telegram_id=channel.chat_id,
            user_id=user.user_id,
            created=user.created,
        )
        return user

    async def _refresh_profile(self, user: DurableUser, channel: ChannelMetadata) -> None:
        # The user is resolved; a profile write failure must not block the login
        try:
            await self.profiles.upsert_profile(user.user_id, channel, self.clock())
        except DatabaseError as e:
            logger.warning(
                "Profile upsert failed, continuing login",
                telegram_id=channel.chat_id,
                user_id=user.user_id,
                operation=e.operation,
                error=str(e),
            )

    async def _find_or_create(self, channel: ChannelMetadata) -> DurableUser:
        user = await self.profiles.find_by_telegram_id(channel.chat_id)
        if user:
            return user

        email = derive_email(channel.chat_id)
        user = await self.profiles.find_auth_user_by_email(email)
        if user:
            logger.info("Linked legacy auth user by derived email", telegram_id=channel.chat_id)
            return user

        try:
            return await self.admin.create_user(email, derive_credential(channel.chat_id), channel)
        except DuplicateUserError:
            # Lost a creation race; the winner's row is now visible
            user = await self.profiles.find_auth_user_by_email(email)
            if user:
                return user
            raise


identity_service = IdentityService()
