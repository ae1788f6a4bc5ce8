"""
bot_secret.py
-------------
Purpose:
    Authenticate calls to the confirmation endpoint as coming from the
    trusted Telegram bot backend.

Notes:
    - The bot sends the shared secret in the X-Bot-Secret header.
    - Compared in constant time.
    - Missing server-side secret is a configuration error (500), never an open door.
"""

import hmac

from fastapi import Header

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.login.errors import ConfigurationError, UnauthorizedCallerError

logger = get_logger(__name__)

BOT_SECRET_HEADER = "X-Bot-Secret"


def verify_bot_secret(provided: str | None, expected: str | None) -> None:
    if not expected:
        logger.error("LOGIN_BOT_SHARED_SECRET is not configured")
        raise ConfigurationError()

    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Confirmation call with invalid bot secret", has_header=bool(provided))
        raise UnauthorizedCallerError()


def bot_secret_dependency(
    x_bot_secret: str | None = Header(default=None, alias=BOT_SECRET_HEADER),
) -> None:
    verify_bot_secret(x_bot_secret, settings.LOGIN_BOT_SHARED_SECRET)
