"""
Middleware components for request processing.

This package contains middleware for:
- Request context (request ID, caller IP, user agent)
- Confirmation rate limiting
- CORS for the browser-facing login endpoints
"""

from app.middleware.cors import CORSMiddleware
from app.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from app.middleware.rate_limiter import confirmation_rate_limiter
from app.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
    "RateLimitHeadersMiddleware",
    "CORSMiddleware",
    "confirmation_rate_limiter",
]
