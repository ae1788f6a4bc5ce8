"""
CORS Middleware - cross-origin access for the browser login client.

The web client registers tokens (POST) and polls status (GET) from its own
origin; the bot backend calls /api/login/confirm server-to-server and is
unaffected by CORS.

Usage:
    app.add_middleware(
        CORSMiddleware,
        allowed_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
    )
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CORSMiddleware(BaseHTTPMiddleware):
    """Answers preflights and stamps CORS headers for allowed origins."""

    def __init__(
        self,
        app,
        allowed_origins: list[str] | None = None,
        allow_credentials: bool = True,
        allow_methods: list[str] | None = None,
        allow_headers: list[str] | None = None,
        max_age: int = 600,
    ):
        super().__init__(app)
        self.allowed_origins = allowed_origins or []
        self.allow_all = "*" in self.allowed_origins
        self.allow_credentials = allow_credentials and not self.allow_all
        self.allow_methods = allow_methods or ["GET", "POST", "OPTIONS"]
        self.allow_headers = allow_headers or [
            "Accept",
            "Content-Type",
            "Authorization",
            "X-Request-ID",
        ]
        self.max_age = max_age

        logger.info(
            "CORS middleware initialized",
            allowed_origins=self.allowed_origins,
            allow_methods=self.allow_methods,
        )

    def _is_allowed(self, origin: str | None) -> bool:
        if not origin:
            return False
        return self.allow_all or origin in self.allowed_origins

    async def dispatch(self, request, call_next):
        origin = request.headers.get("origin")
        is_allowed_origin = self._is_allowed(origin)

        # Preflight
        if request.method == "OPTIONS" and request.headers.get("access-control-request-method"):
            if is_allowed_origin:
                return self._preflight_response(origin)
            logger.warning("CORS preflight rejected - origin not allowed", origin=origin)
            return Response(status_code=403, content="Origin not allowed")

        response = await call_next(request)

        if is_allowed_origin:
            response.headers["Access-Control-Allow-Origin"] = "*" if self.allow_all else origin
            if self.allow_credentials:
                response.headers["Access-Control-Allow-Credentials"] = "true"
            if not self.allow_all:
                response.headers["Vary"] = "Origin"
        elif origin:
            logger.warning(
                "CORS request from disallowed origin",
                origin=origin,
                path=request.url.path,
            )

        return response

    def _preflight_response(self, origin: str) -> Response:
        headers = {
            "Access-Control-Allow-Origin": "*" if self.allow_all else origin,
            "Access-Control-Allow-Methods": ", ".join(self.allow_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allow_headers),
            "Access-Control-Max-Age": str(self.max_age),
            "X-Content-Type-Options": "nosniff",
        }

        if self.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"

        logger.debug("CORS preflight request handled", origin=origin)

        return Response(status_code=204, headers=headers)
