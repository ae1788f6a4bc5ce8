"""
Error taxonomy for the bot login handshake.

Every failure the login endpoints can report is a LoginFlowError subclass
carrying the HTTP status and the optional machine-readable ``status`` field
the client branches on. register_login_error_handlers() turns them into
``{"error": ..., "status"?: ...}`` JSON bodies.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class LoginFlowError(Exception):
    """Base exception for login handshake failures."""

    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "login_error"
    default_message = "Login request failed"
    token_status: str | None = None
    recoverable = False

    def __init__(self, message: str | None = None, token_status: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if token_status is not None:
            self.token_status = token_status

    def to_body(self) -> dict:
        body = {"error": self.message}
        if self.token_status:
            body["status"] = self.token_status
        return body


class ValidationError(LoginFlowError):
    error_code = "invalid_token"
    default_message = "Invalid token format"


class MissingFieldsError(LoginFlowError):
    error_code = "missing_fields"
    default_message = "Missing required fields"


class InvalidOrExpiredTokenError(LoginFlowError):
    error_code = "invalid_or_expired_token"
    default_message = "Invalid or expired token"
    token_status = "expired"


class TokenExpiredError(LoginFlowError):
    error_code = "token_expired"
    default_message = "Token expired"
    token_status = "expired"


class TokenAlreadyUsedError(LoginFlowError):
    error_code = "token_already_used"
    default_message = "Token already used"
    token_status = "used"


class RateLimitedError(LoginFlowError):
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limited"
    default_message = "Too many confirmation attempts. Please try again later."
    recoverable = True

    def __init__(self, message: str | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class UnauthorizedCallerError(LoginFlowError):
    http_status = status.HTTP_401_UNAUTHORIZED
    error_code = "unauthorized_caller"
    default_message = "Unauthorized"


class ConfigurationError(LoginFlowError):
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "configuration_error"
    default_message = "Server configuration error"


class IdentityResolutionError(LoginFlowError):
    """User lookup/creation failed; the token stays pending."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "identity_resolution_failed"
    default_message = "Internal server error"
    recoverable = True


class TokenStoreError(LoginFlowError):
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "token_store_error"
    default_message = "Internal server error"
    recoverable = True


def register_login_error_handlers(app: FastAPI) -> None:
    """Attach JSON error handlers for the login flow to an app."""

    @app.exception_handler(LoginFlowError)
    async def _login_flow_error_handler(request: Request, exc: LoginFlowError):
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "Login flow request rejected",
            path=request.url.path,
            error_code=exc.error_code,
            http_status=exc.http_status,
        )
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.http_status, content=exc.to_body(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        missing = [
            ".".join(str(p) for p in err.get("loc", ())[1:])
            for err in exc.errors()
            if err.get("type") == "missing"
        ]
        logger.warning(
            "Request validation failed",
            path=request.url.path,
            missing_fields=missing,
            error_count=len(exc.errors()),
        )
        message = "Missing required fields" if missing else "Invalid request body"
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error in login flow",
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )
