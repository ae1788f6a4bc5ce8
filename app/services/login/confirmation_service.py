"""
Confirmation Receiver for the bot login handshake.

Invoked (through POST /api/login/confirm) by the Telegram bot backend after
a human approved the login in the chat. This is the trust boundary: a token
it marks complete becomes an authenticated session for whoever holds it.
The caller itself is authenticated by the route (X-Bot-Secret) before
anything here runs.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger, token_preview
from app.middleware.rate_limiter import confirmation_key, confirmation_rate_limiter
from app.models.api.login_request import ConfirmLoginRequest
from app.models.domain.login_domain import ChannelMetadata, ResolvedIdentity, utc_now
from app.repositories.login_token_repository import login_token_repository
from app.services.login.errors import (
    InvalidOrExpiredTokenError,
    MissingFieldsError,
    RateLimitedError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenStoreError,
)
from app.services.login.identity_service import identity_service
from app.services.login.token_registry import (
    TokenTombstones,
    discard_expired_token,
    token_tombstones,
    validate_token_format,
)

logger = get_logger(__name__)


@dataclass
class CallerContext:
    """Transport metadata of the confirmation call."""

    ip_address: str | None = None
    user_agent: str | None = None
    origin: str | None = None
    request_id: str | None = None
    rate_limit_info: dict | None = None


class ConfirmationService:
    """Validates a bot confirmation and marks the token complete."""

    def __init__(
        self,
        repository=None,
        identity=None,
        rate_limiter=None,
        tombstones: TokenTombstones | None = None,
        audit=None,
        clock: Callable[[], datetime] = utc_now,
        max_age_seconds: int | None = None,
    ):
        self.repository = repository or login_token_repository
        self.identity = identity or identity_service
        self.rate_limiter = rate_limiter or confirmation_rate_limiter
        self.tombstones = tombstones or token_tombstones
        self.audit = audit or audit_logger
        self.clock = clock
        self.max_age_seconds = max_age_seconds or settings.LOGIN_TOKEN_MAX_AGE_SECONDS

    async def confirm(self, payload: ConfirmLoginRequest, caller: CallerContext) -> dict:
        """
        Returns:
            {success, message, user_id, telegram_data}

        Raises:
            LoginFlowError subclass describing the rejection
        """
        if not payload.token or payload.chat_id is None:
            raise MissingFieldsError("Missing required fields: token and chat_id")

        token = validate_token_format(payload.token)
        channel = ChannelMetadata(
            chat_id=payload.chat_id,
            username=payload.username,
            first_name=payload.first_name,
            last_name=payload.last_name,
            language_code=payload.language_code,
        )

        await self._enforce_rate_limit(caller, channel.chat_id)

        record = await self._load(token)
        if record is None:
            logger.warning("Confirmation for unknown token", token_preview=token_preview(token))
            raise InvalidOrExpiredTokenError()

        if record.used or record.is_complete:
            raise TokenAlreadyUsedError()

        now = self.clock()
        if record.is_expired(now, self.max_age_seconds):
            await discard_expired_token(self.repository, self.tombstones, token)
            raise TokenExpiredError()

        # Failures past this point leave the token pending
        user = await self.identity.resolve(channel)
        identity = ResolvedIdentity(user_id=user.user_id, email=user.email)

        try:
            updated = await self.repository.mark_complete(
                token,
                identity,
                channel,
                now,
                ip_address=caller.ip_address,
                user_agent=caller.user_agent,
                origin=caller.origin,
            )
        except DatabaseError as e:
            logger.error(
                "Failed to mark login token complete",
                token_preview=token_preview(token),
                error=str(e),
            )
            raise TokenStoreError() from e

        if updated is None:
            await self._raise_for_lost_transition(token)

        logger.info(
            "Telegram login confirmed",
            token_preview=token_preview(token),
            user_id=identity.user_id,
            telegram_id=channel.chat_id,
            ip_address=caller.ip_address,
        )
        await self.audit.log_login_event(
            user_id=identity.user_id,
            action="telegram_login_confirmed",
            token=token,
            channel_id=channel.chat_id,
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
            origin=caller.origin,
            request_id=caller.request_id,
        )

        return {
            "success": True,
            "message": "Login confirmed",
            "user_id": identity.user_id,
            "telegram_data": channel.to_public_dict(),
        }

    async def _enforce_rate_limit(self, caller: CallerContext, chat_id: int) -> None:
        allowed, info = await self.rate_limiter.check_rate_limit(
            confirmation_key(caller.ip_address, chat_id)
        )
        caller.rate_limit_info = info
        if allowed:
            return

        logger.warning(
            "Confirmation rate limit exceeded",
            ip_address=caller.ip_address,
            telegram_id=chat_id,
            limit=info.get("limit"),
        )
        await self.audit.log_security_event(
            user_id=None,
            event_type="login_confirmation_rate_limited",
            severity="medium",
            description="Too many login confirmations from one caller/chat",
            ip_address=caller.ip_address,
            user_agent=caller.user_agent,
            request_id=caller.request_id,
            metadata={"channel_id": chat_id},
        )
        raise RateLimitedError(retry_after=info.get("retry_after"))

    async def _load(self, token: str):
        try:
            return await self.repository.get(token)
        except DatabaseError as e:
            logger.error("Failed to load login token", token_preview=token_preview(token), error=str(e))
            raise TokenStoreError() from e

    async def _raise_for_lost_transition(self, token: str) -> None:
        """The pending -> complete update matched nothing; report what happened instead."""
        current = await self._load(token)
        if current is None:
            raise InvalidOrExpiredTokenError()
        if current.used or current.is_complete:
            raise TokenAlreadyUsedError()
        if current.is_expired(self.clock(), self.max_age_seconds):
            await discard_expired_token(self.repository, self.tombstones, token)
            raise TokenExpiredError()
        raise TokenStoreError()


confirmation_service = ConfirmationService()
