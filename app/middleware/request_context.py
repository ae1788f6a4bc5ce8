"""
RequestContext Middleware - per-request tracing and caller identification.

Sets on request.state:
- request_id: UUID echoed back as X-Request-ID
- ip_address: caller IP (keys the confirmation rate limit and audit rows)
- user_agent: caller user agent

Other request.state attributes in use:
- rate_limit_info: set by the confirmation route
"""

import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def extract_client_ip(request: Request) -> str | None:
    """
    Caller IP with proxy spoofing protection.

    X-Forwarded-For is honoured only when TRUST_X_FORWARDED_FOR is on and the
    direct peer is one of TRUSTED_PROXY_IPS; otherwise a bot caller could
    rotate the header to dodge the confirmation rate limit.
    """
    direct_ip = request.client.host if request.client else None

    if not settings.TRUST_X_FORWARDED_FOR or direct_ip not in settings.TRUSTED_PROXY_IPS:
        return direct_ip

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # "client, proxy1, proxy2"
        client_ip = forwarded_for.split(",")[0].strip()
        logger.debug("Using X-Forwarded-For from trusted proxy", proxy_ip=direct_ip, client_ip=client_ip)
        return client_ip

    return direct_ip


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach request id, caller IP and user agent to every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.ip_address = extract_client_ip(request)
        request.state.user_agent = request.headers.get("user-agent")

        logger.debug(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            ip_address=request.state.ip_address,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
