# models/api/login_request.py
from pydantic import BaseModel, ConfigDict, Field


class RegisterTokenRequest(BaseModel):
    """Request to pre-register a login token before the bot handoff."""

    token: str | None = Field(
        default=None, description="Client-minted login token; omitted to mint one server-side"
    )


class ConfirmLoginRequest(BaseModel):
    """Confirmation sent by the bot backend once the human approves the login."""

    model_config = ConfigDict(extra="allow")

    token: str | None = Field(default=None, description="Login token from the /start parameter")
    chat_id: int | None = Field(default=None, description="Telegram numeric user/chat id")
    username: str | None = Field(default=None, description="Telegram @handle without the @")
    first_name: str | None = None
    last_name: str | None = None
    language_code: str | None = None
