"""
Supabase Auth (GoTrue) admin API client.

Used server-side with the service role key to create durable users for
first-time Telegram logins and to mint magic-link token hashes for the
client's fallback sign-in.
"""

import asyncio

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.login_domain import ChannelMetadata, DurableUser

logger = get_logger(__name__)

REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5  # 0.5, 1 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class SupabaseAdminError(Exception):
    """Custom exception for Supabase admin API failures."""

    def __init__(self, message: str, status_code: int | None = None, error_code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class DuplicateUserError(SupabaseAdminError):
    """The email is already registered (usually a concurrent creation)."""


class SupabaseAdminClient:
    """Thin async wrapper over the GoTrue admin endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        service_role_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.auth_admin_url()).rstrip("/")
        self.service_role_key = service_role_key or settings.SUPABASE_SERVICE_ROLE_KEY
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
        }

    async def _post_with_retry(self, path: str, payload: dict, operation: str) -> httpx.Response:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(url, json=payload, headers=self._headers())
                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = BACKOFF_FACTOR * attempt
                        logger.warning(
                            "Supabase admin transient status",
                            operation=operation,
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue
                    return response
                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise SupabaseAdminError(f"{operation} request failed: {exc}") from exc
                    wait_time = BACKOFF_FACTOR * attempt
                    logger.warning(
                        "Supabase admin request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise SupabaseAdminError(f"{operation} failed: retries exhausted")

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, str | None]:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200], None
        message = data.get("msg") or data.get("message") or data.get("error_description") or ""
        code = data.get("error_code") or data.get("code")
        return str(message), str(code) if code is not None else None

    async def create_user(
        self, email: str, password: str, channel: ChannelMetadata
    ) -> DurableUser:
        """
        Create a confirmed auth user for a Telegram identity.

        Raises:
            DuplicateUserError: The email is already registered
            SupabaseAdminError: Any other failure
        """
        payload = {
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": {
                "telegram_id": channel.chat_id,
                "telegram_username": channel.username,
                "first_name": channel.first_name,
                "auth_provider": "telegram",
            },
        }
        response = await self._post_with_retry("/users", payload, "create_user")

        if response.status_code in (200, 201):
            data = response.json()
            user = data.get("user", data)
            logger.info("Auth user created", user_id=user["id"], telegram_id=channel.chat_id)
            return DurableUser(
                user_id=str(user["id"]),
                email=user.get("email", email),
                telegram_id=channel.chat_id,
                created=True,
            )

        message, code = self._error_details(response)
        if response.status_code in (409, 422) and (
            code == "email_exists" or "already" in message.lower()
        ):
            raise DuplicateUserError(message, status_code=response.status_code, error_code=code)

        logger.error(
            "Auth user creation failed",
            status_code=response.status_code,
            error_code=code,
            telegram_id=channel.chat_id,
        )
        raise SupabaseAdminError(
            f"create_user failed: {message}", status_code=response.status_code, error_code=code
        )

    async def generate_magic_link(self, email: str) -> str | None:
        """
        Mint a magic-link token hash for ``email``.

        Best effort: returns None instead of raising.
        """
        try:
            response = await self._post_with_retry(
                "/generate_link", {"type": "magiclink", "email": email}, "generate_link"
            )
        except SupabaseAdminError as e:
            logger.warning("Magic link generation failed", error=str(e))
            return None

        if response.status_code != 200:
            message, code = self._error_details(response)
            logger.warning(
                "Magic link generation rejected",
                status_code=response.status_code,
                error_code=code,
                error=message,
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning(
                "Magic link response was not JSON",
                content_type=response.headers.get("content-type"),
            )
            return None
        if not isinstance(data, dict):
            logger.warning("Magic link response had unexpected shape")
            return None

        hashed = data.get("hashed_token") or (data.get("properties") or {}).get("hashed_token")
        if not hashed:
            logger.warning("Magic link response missing hashed_token")
        return hashed


supabase_admin = SupabaseAdminClient()
