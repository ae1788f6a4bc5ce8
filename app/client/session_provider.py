"""
Supabase Auth session provider for the login client.

Primary sign-in is email + the derived password from the exchange payload;
the fallback verifies a magic-link token hash. Session changes are emitted
to registered listeners (the AuthSessionStore subscribes exactly once).
"""

from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from app.client.config import ClientSettings
from app.client.errors import SessionProviderError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str | None = None
    user_metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AuthSession:
    user: AuthUser
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None


SessionListener = Callable[[str, AuthSession | None], None]


class SupabaseSessionProvider:
    """Minimal GoTrue client holding the current session in memory."""

    def __init__(
        self,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or ClientSettings()
        if not self.settings.SUPABASE_URL or not self.settings.SUPABASE_ANON_KEY:
            raise ValueError("LOGIN_CLIENT_SUPABASE_URL and LOGIN_CLIENT_SUPABASE_ANON_KEY are required")
        self._auth_url = f"{self.settings.SUPABASE_URL.rstrip('/')}/auth/v1"
        self._transport = transport
        self._session: AuthSession | None = None
        self._listeners: list[SessionListener] = []

    def _headers(self) -> dict:
        return {
            "apikey": self.settings.SUPABASE_ANON_KEY,
            "Content-Type": "application/json",
        }

    async def get_session(self) -> AuthSession | None:
        return self._session

    def on_auth_state_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: str, session: AuthSession | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("Auth state listener failed", auth_event=event)

    async def _post(self, path: str, payload: dict, params: dict | None = None) -> dict:
        async with httpx.AsyncClient(
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS, transport=self._transport
        ) as client:
            try:
                response = await client.post(
                    f"{self._auth_url}{path}", json=payload, params=params, headers=self._headers()
                )
            except httpx.RequestError as e:
                raise SessionProviderError(f"Auth request failed: {type(e).__name__}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200:
            message = data.get("error_description") or data.get("msg") or data.get("message")
            raise SessionProviderError(
                message or f"Auth request returned {response.status_code}",
                status_code=response.status_code,
            )
        return data

    def _establish(self, data: dict) -> AuthSession:
        user = data.get("user") or {}
        if not data.get("access_token") or not user.get("id"):
            raise SessionProviderError("Auth response did not contain a session")

        session = AuthSession(
            user=AuthUser(
                id=str(user["id"]),
                email=user.get("email"),
                user_metadata=user.get("user_metadata") or {},
            ),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )
        self._session = session
        self._emit(SIGNED_IN, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = await self._post(
            "/token", {"email": email, "password": password}, params={"grant_type": "password"}
        )
        logger.info("Signed in with password", user_id=(data.get("user") or {}).get("id"))
        return self._establish(data)

    async def verify_login_link(self, token_hash: str) -> AuthSession:
        data = await self._post("/verify", {"type": "magiclink", "token_hash": token_hash})
        logger.info("Signed in with login link", user_id=(data.get("user") or {}).get("id"))
        return self._establish(data)

    async def sign_out(self) -> None:
        self._session = None
        self._emit(SIGNED_OUT, None)
