"""
Token Registry for the bot login handshake.

Mints unguessable login tokens and persists them as pending records before
the client hands them to the Telegram bot. Also keeps short-lived
tombstones for tokens removed on expiry, so later polls can tell
"never registered yet" apart from "expired and gone".
"""

import hashlib
import time
from collections.abc import Callable
from datetime import datetime

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger, token_preview
from app.models.domain.login_domain import (
    LoginToken,
    generate_login_token,
    is_valid_token_format,
    utc_now,
)
from app.repositories.login_token_repository import login_token_repository
from app.services.login.errors import TokenStoreError, ValidationError
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

TOMBSTONE_KEY_PREFIX = "login_token_tombstone"
MAX_MINT_ATTEMPTS = 3


def validate_token_format(token: str | None) -> str:
    """
    Raises:
        ValidationError: token is not 48 URL-safe base64 characters
    """
    if not is_valid_token_format(token):
        logger.warning(
            "Rejected malformed login token",
            token_length=len(token) if token else 0,
            token_preview=token_preview(token),
        )
        raise ValidationError("Invalid token format")
    return token


class TokenTombstones:
    """
    Markers for tokens deleted on expiry, kept for the token max age.

    Stored in Redis when available, otherwise in process memory.
    """

    def __init__(self, redis=None, ttl_seconds: int | None = None, clock: Callable[[], float] = time.monotonic):
        if redis is None and settings.REDIS_URL:
            redis = fast_redis
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.LOGIN_TOKEN_MAX_AGE_SECONDS
        self._clock = clock
        self._local: dict[str, float] = {}

    @staticmethod
    def _key(token: str) -> str:
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"{TOMBSTONE_KEY_PREFIX}:{digest}"

    async def bury(self, token: str) -> None:
        key = self._key(token)
        if self.redis is not None:
            if not await self.redis.set_with_ttl(key, "expired", self.ttl_seconds):
                logger.warning("Failed to store token tombstone", token_preview=token_preview(token))
            return
        now = self._clock()
        self._prune(now)
        self._local[key] = now + self.ttl_seconds

    def _prune(self, now: float) -> None:
        for key in [k for k, expires in self._local.items() if now >= expires]:
            del self._local[key]

    async def bury_many(self, tokens: list[str]) -> None:
        for token in tokens:
            await self.bury(token)

    async def is_buried(self, token: str) -> bool:
        key = self._key(token)
        if self.redis is not None:
            return await self.redis.get(key) is not None

        expires = self._local.get(key)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._local[key]
            return False
        return True


async def discard_expired_token(repository, tombstones: TokenTombstones, token: str) -> None:
    """Delete an expired token record and leave a tombstone behind."""
    try:
        await repository.delete(token)
    except DatabaseError as e:
        logger.error("Failed to delete expired token", token_preview=token_preview(token), error=str(e))
        raise TokenStoreError() from e
    await tombstones.bury(token)
    logger.info("Expired login token removed", token_preview=token_preview(token))


class TokenRegistry:
    """Creates and registers pending login tokens."""

    def __init__(
        self,
        repository=None,
        clock: Callable[[], datetime] = utc_now,
        ttl_seconds: int | None = None,
    ):
        self.repository = repository or login_token_repository
        self.clock = clock
        self.ttl_seconds = ttl_seconds or settings.LOGIN_TOKEN_TTL_SECONDS

    async def create_token(self) -> LoginToken:
        """Mint a fresh token and persist it as pending."""
        for attempt in range(1, MAX_MINT_ATTEMPTS + 1):
            record = LoginToken.new(generate_login_token(), self.clock(), self.ttl_seconds)
            if await self._insert(record):
                logger.info(
                    "Login token created",
                    token_preview=token_preview(record.token),
                    expires_at=record.expires_at.isoformat(),
                )
                return record
            logger.warning("Minted token collided, retrying", attempt=attempt)

        raise TokenStoreError("Could not allocate a unique login token")

    async def register_token(self, token: str | None) -> tuple[LoginToken, bool]:
        """
        Idempotently persist a client-minted token.

        Returns:
            (record, created) where created is False if it already existed
        """
        validate_token_format(token)
        record = LoginToken.new(token, self.clock(), self.ttl_seconds)

        if await self._insert(record):
            logger.info("Login token registered", token_preview=token_preview(token))
            return record, True

        try:
            existing = await self.repository.get(token)
        except DatabaseError as e:
            raise TokenStoreError() from e

        logger.info("Login token already registered", token_preview=token_preview(token))
        return existing or record, False

    async def _insert(self, record: LoginToken) -> bool:
        try:
            return await self.repository.insert_if_absent(record)
        except DatabaseError as e:
            logger.error(
                "Failed to persist login token",
                token_preview=token_preview(record.token),
                error=str(e),
            )
            raise TokenStoreError() from e


token_registry = TokenRegistry()

# Shared by the confirmation, exchange and cleanup paths
token_tombstones = TokenTombstones()
