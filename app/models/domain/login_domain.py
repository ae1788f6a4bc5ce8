# models/domain/login_domain.py
"""
Domain models for the bot-confirmed login handshake.

A LoginToken correlates one browser login attempt with the confirmation a
human gives inside the Telegram bot. Lifecycle:

    pending (registered) -> complete (bot confirmed) -> used (client drained)

Tokens are deleted once expired or after consumption cleanup.
"""

import re
import secrets
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

# 36 random bytes encode to exactly 48 URL-safe base64 characters,
# which fits Telegram's 64 character start-parameter limit.
TOKEN_BYTES = 36
TOKEN_LENGTH = 48
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{48}$")


class TokenStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


class ExchangeStatus(str, Enum):
    """Answers the polling exchange can give for a token."""

    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"
    USED = "used"


def generate_login_token() -> str:
    """Mint a new unguessable login token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_valid_token_format(token: str | None) -> bool:
    return bool(token) and TOKEN_PATTERN.match(token) is not None


class ChannelMetadata(BaseModel):
    """Telegram identity data captured when the human confirms in the bot."""

    chat_id: int = Field(..., description="Telegram numeric user/chat id")
    username: str | None = Field(None, description="Telegram @handle without the @")
    first_name: str | None = None
    last_name: str | None = None
    language_code: str | None = None

    def to_public_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "username": self.username,
            "first_name": self.first_name,
        }


class ResolvedIdentity(BaseModel):
    """Durable account the confirmation resolved to."""

    user_id: str
    email: str


class DurableUser(BaseModel):
    """Long-lived account keyed by the Telegram channel id."""

    user_id: str
    email: str
    telegram_id: int | None = None
    created: bool = Field(False, description="True when this confirmation created the account")


class LoginToken(BaseModel):
    """Correlation record persisted in pending_login_tokens."""

    token: str
    created_at: datetime
    expires_at: datetime
    status: TokenStatus = TokenStatus.PENDING
    used: bool = False
    used_at: datetime | None = None
    identity: ResolvedIdentity | None = None
    channel: ChannelMetadata | None = None

    # Transport metadata recorded at confirmation time
    ip_address: str | None = None
    user_agent: str | None = None
    origin: str | None = None

    @classmethod
    def new(cls, token: str, now: datetime, ttl_seconds: int) -> "LoginToken":
        return cls(token=token, created_at=now, expires_at=now + timedelta(seconds=ttl_seconds))

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def is_expired(self, now: datetime, max_age_seconds: int) -> bool:
        """Valid only while now < expires_at AND age < max_age."""
        return now >= self.expires_at or self.age(now) >= timedelta(seconds=max_age_seconds)

    @property
    def is_complete(self) -> bool:
        return self.status == TokenStatus.COMPLETE


class CompletionPayload(BaseModel):
    """What the exchange hands back exactly once per confirmed token."""

    user_id: str
    email: str
    secure_password: str | None = None
    login_link_token: str | None = None
    telegram_data: ChannelMetadata


def utc_now() -> datetime:
    return datetime.now(UTC)
