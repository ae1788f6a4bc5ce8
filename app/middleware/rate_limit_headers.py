"""
Rate Limit Headers Middleware - expose confirmation rate limit state.

Reads request.state.rate_limit_info (copied there by the confirmation
route from the limiter result) and adds:
- X-RateLimit-Limit
- X-RateLimit-Remaining
- X-RateLimit-Reset (unix timestamp)
- Retry-After (only when the attempt was rejected)
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Add rate limit headers to responses that went through the limiter."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        info = getattr(request.state, "rate_limit_info", None)
        if not info:
            return response

        if "limit" in info:
            response.headers["X-RateLimit-Limit"] = str(info["limit"])
        if "remaining" in info:
            response.headers["X-RateLimit-Remaining"] = str(info["remaining"])

        retry_after = info.get("retry_after")
        if retry_after is not None:
            response.headers["X-RateLimit-Reset"] = str(int(time.time()) + int(retry_after))
            if not info.get("allowed", True):
                response.headers["Retry-After"] = str(retry_after)

        return response
