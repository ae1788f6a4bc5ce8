"""
Polling Exchange for the bot login handshake.

Clients poll GET /api/login/status until the bot confirmation lands. The
completion payload is handed out at most once: the complete -> used flip is
a conditional update and only the caller whose update matched gets it.
"""

from collections.abc import Callable
from datetime import datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.audit import audit_logger
from app.infrastructure.observability.logging import get_logger, token_preview
from app.models.domain.login_domain import ExchangeStatus, LoginToken, utc_now
from app.repositories.login_token_repository import login_token_repository
from app.services.login.errors import (
    ConfigurationError,
    InvalidOrExpiredTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenStoreError,
)
from app.services.login.identity_service import derive_credential
from app.services.login.token_registry import (
    TokenTombstones,
    discard_expired_token,
    token_tombstones,
    validate_token_format,
)
from app.services.supabase_admin import supabase_admin

logger = get_logger(__name__)


class ExchangeService:
    """Answers status polls and drains completed tokens exactly once."""

    def __init__(
        self,
        repository=None,
        admin=None,
        tombstones: TokenTombstones | None = None,
        audit=None,
        clock: Callable[[], datetime] = utc_now,
        max_age_seconds: int | None = None,
        issue_login_links: bool = True,
    ):
        self.repository = repository or login_token_repository
        self.admin = admin or supabase_admin
        self.tombstones = tombstones or token_tombstones
        self.audit = audit or audit_logger
        self.clock = clock
        self.max_age_seconds = max_age_seconds or settings.LOGIN_TOKEN_MAX_AGE_SECONDS
        self.issue_login_links = issue_login_links

    async def check_status(self, token: str | None, ip_address: str | None = None,
                           user_agent: str | None = None, request_id: str | None = None) -> dict:
        """
        Returns:
            {"status": "pending"} or the one-time completion payload

        Raises:
            ValidationError, InvalidOrExpiredTokenError, TokenExpiredError,
            TokenAlreadyUsedError, TokenStoreError
        """
        token = validate_token_format(token)

        try:
            record = await self.repository.get(token)
        except DatabaseError as e:
            raise TokenStoreError() from e

        if record is None:
            if await self.tombstones.is_buried(token):
                raise InvalidOrExpiredTokenError()
            # Not registered yet; the client keeps polling
            return {"status": ExchangeStatus.PENDING.value}

        if record.is_expired(self.clock(), self.max_age_seconds):
            await discard_expired_token(self.repository, self.tombstones, token)
            raise TokenExpiredError()

        if record.used:
            raise TokenAlreadyUsedError()

        if record.is_complete:
            return await self._deliver(record, ip_address, user_agent, request_id)

        return {"status": ExchangeStatus.PENDING.value}

    async def _deliver(self, record: LoginToken, ip_address, user_agent, request_id) -> dict:
        # Everything that can fail is prepared before the token is burnt
        secure_password = self._credential_for(record)

        try:
            claimed = await self.repository.mark_used(record.token, self.clock())
        except DatabaseError as e:
            logger.error(
                "Failed to mark login token used",
                token_preview=token_preview(record.token),
                error=str(e),
            )
            raise TokenStoreError() from e

        if claimed is None:
            logger.info("Concurrent poll lost the exchange", token_preview=token_preview(record.token))
            raise TokenAlreadyUsedError()

        if claimed.identity is None or claimed.channel is None:
            logger.error("Completed token missing identity", token_preview=token_preview(record.token))
            raise TokenStoreError()

        # The token is burnt now; nothing below may lose the payload
        login_link_token = await self._login_link_for(claimed)

        logger.info(
            "Login token exchanged",
            token_preview=token_preview(record.token),
            user_id=claimed.identity.user_id,
            has_password=secure_password is not None,
            has_login_link=login_link_token is not None,
        )
        await self.audit.log_login_event(
            user_id=claimed.identity.user_id,
            action="telegram_login_exchanged",
            token=record.token,
            channel_id=claimed.channel.chat_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
        )

        payload = {
            "status": ExchangeStatus.COMPLETE.value,
            "email": claimed.identity.email,
            "user_id": claimed.identity.user_id,
            "secure_password": secure_password,
            "telegram_data": claimed.channel.to_public_dict(),
        }
        if login_link_token:
            payload["login_link_token"] = login_link_token
        return payload

    async def _login_link_for(self, claimed: LoginToken) -> str | None:
        if not self.issue_login_links:
            return None
        try:
            return await self.admin.generate_magic_link(claimed.identity.email)
        except Exception as e:
            logger.error(
                "Magic link generation raised after token was used",
                token_preview=token_preview(claimed.token),
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    @staticmethod
    def _credential_for(record: LoginToken) -> str | None:
        if record.channel is None:
            return None
        try:
            return derive_credential(record.channel.chat_id)
        except ConfigurationError:
            logger.warning("LOGIN_CREDENTIAL_SECRET not configured; password sign-in unavailable")
            return None


exchange_service = ExchangeService()
