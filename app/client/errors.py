"""
Client-facing error taxonomy.

Every terminal outcome of a bot login becomes one BotLoginError with a
machine-readable ``kind`` for UI branching and a single user-facing message.
"""

from enum import Enum


class LoginErrorKind(str, Enum):
    VALIDATION = "validation_error"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_ALREADY_USED = "token_already_used"
    RATE_LIMITED = "rate_limited"
    POPUP_BLOCKED = "popup_blocked"
    TIMEOUT = "timeout"
    SESSION_ESTABLISHMENT = "session_establishment_error"


USER_MESSAGES = {
    LoginErrorKind.VALIDATION: "Something went wrong starting the login. Please try again.",
    LoginErrorKind.INVALID_OR_EXPIRED_TOKEN: "This login link is no longer valid. Please start again.",
    LoginErrorKind.TOKEN_EXPIRED: "The login request expired. Please start again.",
    LoginErrorKind.TOKEN_ALREADY_USED: "This login was already completed. Please start again.",
    LoginErrorKind.RATE_LIMITED: "Too many attempts. Please wait a while and try again.",
    LoginErrorKind.POPUP_BLOCKED: "Could not open Telegram. Allow pop-ups and try again.",
    LoginErrorKind.TIMEOUT: "We did not hear back from Telegram in time. Please try again.",
    LoginErrorKind.SESSION_ESTABLISHMENT: (
        "Telegram confirmed your login but signing in failed. Retry sign-in or reload."
    ),
}


class BotLoginError(Exception):
    """Terminal failure of a bot login attempt."""

    kind: LoginErrorKind = LoginErrorKind.VALIDATION

    def __init__(self, message: str | None = None, kind: LoginErrorKind | None = None):
        if kind is not None:
            self.kind = kind
        self.user_message = USER_MESSAGES[self.kind]
        super().__init__(message or self.user_message)

    @property
    def user_actionable(self) -> bool:
        """True when the user can fix the cause and retry with a fresh login."""
        return self.kind in (
            LoginErrorKind.POPUP_BLOCKED,
            LoginErrorKind.TIMEOUT,
            LoginErrorKind.SESSION_ESTABLISHMENT,
        )


class ValidationError(BotLoginError):
    kind = LoginErrorKind.VALIDATION


class InvalidOrExpiredTokenError(BotLoginError):
    kind = LoginErrorKind.INVALID_OR_EXPIRED_TOKEN


class TokenExpiredError(BotLoginError):
    kind = LoginErrorKind.TOKEN_EXPIRED


class TokenAlreadyUsedError(BotLoginError):
    kind = LoginErrorKind.TOKEN_ALREADY_USED


class PopupBlockedError(BotLoginError):
    kind = LoginErrorKind.POPUP_BLOCKED


class PollingTimeoutError(BotLoginError):
    kind = LoginErrorKind.TIMEOUT


class SessionEstablishmentError(BotLoginError):
    kind = LoginErrorKind.SESSION_ESTABLISHMENT


class TransientApiError(Exception):
    """Network failure or 5xx/429 answer; retried while polling, never surfaced."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionProviderError(Exception):
    """The auth provider rejected a sign-in attempt."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
