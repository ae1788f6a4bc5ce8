from pathlib import Path
from urllib.parse import quote

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Settings for the login client, read from LOGIN_CLIENT_* variables."""

    API_BASE_URL: str = "http://localhost:8000"
    BOT_USERNAME: str = "startups_are_easy_bot"

    # Supabase project used to establish the session
    SUPABASE_URL: str | None = None
    SUPABASE_ANON_KEY: str | None = None

    # Polling schedule: quick retries first, then a fixed interval, hard cap overall.
    # The cap must stay below the server token lifetime (20 minutes).
    POLL_BACKOFF_SECONDS: list[float] = [1.0, 2.0, 4.0]
    POLL_INTERVAL_SECONDS: float = 10.0
    POLL_TIMEOUT_SECONDS: float = 300.0  # 5 minutes
    TRANSIENT_RETRY_SECONDS: float = 5.0
    REQUEST_TIMEOUT_SECONDS: float = 8.0

    RECOVERY_FILE: Path = Path.home() / ".startup-login" / "pending_login.json"

    model_config = SettingsConfigDict(env_prefix="LOGIN_CLIENT_", extra="ignore")

    def bot_deep_link(self, token: str) -> str:
        return f"https://t.me/{self.BOT_USERNAME}?start={quote(token, safe='')}"

    def poll_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th pending answer (0-based)."""
        if attempt < len(self.POLL_BACKOFF_SECONDS):
            return self.POLL_BACKOFF_SECONDS[attempt]
        return self.POLL_INTERVAL_SECONDS
