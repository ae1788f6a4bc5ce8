"""
Bot login handshake routes.

    POST /api/login/tokens   - register (or mint) a pending login token
    GET  /api/login/status   - poll a token; drains the completion payload once
    POST /api/login/confirm  - bot backend confirmation (X-Bot-Secret required)

Errors are raised as LoginFlowError subclasses and rendered by
register_login_error_handlers().
"""

from fastapi import APIRouter, Depends, Query, Request

from app.auth.bot_secret import bot_secret_dependency
from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.api.login_request import ConfirmLoginRequest, RegisterTokenRequest
from app.models.api.login_response import (
    ConfirmLoginResponse,
    LoginStatusResponse,
    RegisterTokenResponse,
)
from app.services.login.confirmation_service import (
    CallerContext,
    ConfirmationService,
    confirmation_service,
)
from app.services.login.exchange_service import ExchangeService, exchange_service
from app.services.login.token_registry import TokenRegistry, token_registry

logger = get_logger(__name__)

router = APIRouter(prefix="/api/login", tags=["login"])


def get_token_registry() -> TokenRegistry:
    return token_registry


def get_confirmation_service() -> ConfirmationService:
    return confirmation_service


def get_exchange_service() -> ExchangeService:
    return exchange_service


def _request_meta(request: Request) -> dict:
    """Request context set by RequestContextMiddleware, with fallbacks when it is absent."""
    state = request.state
    return {
        "ip_address": getattr(state, "ip_address", None)
        or (request.client.host if request.client else None),
        "user_agent": getattr(state, "user_agent", None) or request.headers.get("user-agent"),
        "request_id": getattr(state, "request_id", None),
    }


@router.post("/tokens", response_model=RegisterTokenResponse)
async def register_login_token(
    body: RegisterTokenRequest | None = None,
    registry: TokenRegistry = Depends(get_token_registry),
):
    """
    Register a client-minted login token before opening the bot.

    Idempotent: re-registering an existing token answers ``exists``.
    Without a token in the body a new one is minted server-side.

    Raises:
        400: Invalid token format
        500: Token store failure
    """
    if body is None or body.token is None:
        record = await registry.create_token()
        created = True
    else:
        record, created = await registry.register_token(body.token)

    return RegisterTokenResponse(
        status="created" if created else "exists",
        token=record.token,
        expires_at=record.expires_at,
        bot_link=settings.bot_deep_link(record.token),
    )


@router.get("/status", response_model=LoginStatusResponse, response_model_exclude_none=True)
async def login_status(
    request: Request,
    token: str | None = Query(default=None),
    service: ExchangeService = Depends(get_exchange_service),
):
    """
    Poll a login token.

    Returns ``pending`` until the bot confirms, then the completion payload
    exactly once. Later polls get 400 ``used``.
    """
    meta = _request_meta(request)
    return await service.check_status(
        token,
        ip_address=meta["ip_address"],
        user_agent=meta["user_agent"],
        request_id=meta["request_id"],
    )


@router.post(
    "/confirm",
    response_model=ConfirmLoginResponse,
    dependencies=[Depends(bot_secret_dependency)],
)
async def confirm_login(
    request: Request,
    body: ConfirmLoginRequest,
    service: ConfirmationService = Depends(get_confirmation_service),
):
    """
    Confirmation callback from the Telegram bot backend.

    Raises:
        400: Missing fields, bad token, unknown/expired/used token
        401: Bad or missing X-Bot-Secret
        429: Too many attempts for this caller and chat
        500: Configuration or datastore failure (token stays pending)
    """
    meta = _request_meta(request)
    caller = CallerContext(
        ip_address=meta["ip_address"],
        user_agent=meta["user_agent"],
        origin=request.headers.get("origin"),
        request_id=meta["request_id"],
    )
    try:
        return await service.confirm(body, caller)
    finally:
        if caller.rate_limit_info:
            request.state.rate_limit_info = caller.rate_limit_info
