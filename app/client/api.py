"""
HTTP client for the login endpoints.
"""

from dataclasses import dataclass, field

import httpx

from app.client.config import ClientSettings
from app.client.errors import TransientApiError, ValidationError
from app.infrastructure.observability.logging import get_logger, token_preview

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {408, 429}


@dataclass
class StatusResult:
    """One answer of GET /api/login/status.

    ``status`` is pending, complete, expired, used or invalid (bad format).
    """

    status: str
    error: str | None = None
    email: str | None = None
    user_id: str | None = None
    secure_password: str | None = None
    login_link_token: str | None = None
    telegram_data: dict = field(default_factory=dict)


class LoginApiClient:
    """Talks to the login API; transport failures become TransientApiError."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or ClientSettings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.API_BASE_URL.rstrip("/"),
            timeout=httpx.Timeout(self.settings.REQUEST_TIMEOUT_SECONDS),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise TransientApiError(f"{method} {path} failed: {type(e).__name__}") from e

        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientApiError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def register_token(self, token: str) -> dict:
        """
        Pre-register a token. Returns {status: created|exists, token, expires_at}.

        Raises:
            ValidationError: the server rejected the token format
            TransientApiError: network failure or server error
        """
        response = await self._request("POST", "/api/login/tokens", json={"token": token})
        data = self._json(response)
        if response.status_code == 400:
            raise ValidationError(data.get("error") or "Invalid token format")
        if response.status_code != 200:
            raise TransientApiError(
                f"Unexpected status {response.status_code}", status_code=response.status_code
            )
        logger.debug(
            "Login token registered",
            token_preview=token_preview(token),
            status=data.get("status"),
        )
        return data

    async def check_status(self, token: str) -> StatusResult:
        """
        Poll the exchange once.

        Raises:
            TransientApiError: network failure or server error
        """
        response = await self._request("GET", "/api/login/status", params={"token": token})
        data = self._json(response)

        if response.status_code == 200:
            return StatusResult(
                status=data.get("status", "pending"),
                email=data.get("email"),
                user_id=data.get("user_id"),
                secure_password=data.get("secure_password"),
                login_link_token=data.get("login_link_token"),
                telegram_data=data.get("telegram_data") or {},
            )

        if response.status_code == 400:
            return StatusResult(status=data.get("status") or "invalid", error=data.get("error"))

        raise TransientApiError(
            f"Unexpected status {response.status_code}", status_code=response.status_code
        )
