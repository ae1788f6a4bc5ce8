# models/api/login_response.py
"""
Response models for the login handshake endpoints.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class TelegramData(BaseModel):
    """Channel metadata echoed back to callers."""

    chat_id: int = Field(..., description="Telegram numeric user/chat id")
    username: str | None = Field(default=None, description="Telegram @handle")
    first_name: str | None = Field(default=None, description="Telegram first name")


class RegisterTokenResponse(BaseModel):
    """Result of registering (or minting) a login token."""

    status: Literal["created", "exists"] = Field(..., description="Whether the row was inserted")
    token: str = Field(..., description="The registered login token")
    expires_at: datetime = Field(..., description="When the token stops being accepted")
    bot_link: str | None = Field(default=None, description="Telegram deep link carrying the token")


class ConfirmLoginResponse(BaseModel):
    """Readiness signal returned to the bot backend. Never carries credentials."""

    success: bool = Field(..., description="Whether the login was confirmed")
    message: str = Field(..., description="Human readable outcome")
    user_id: str = Field(..., description="Durable user id the token resolved to")
    telegram_data: TelegramData


class LoginStatusResponse(BaseModel):
    """Polling answer for a login token."""

    status: Literal["pending", "complete"] = Field(..., description="Token state")

    # Only present on the single complete delivery
    email: str | None = None
    user_id: str | None = None
    secure_password: str | None = None
    login_link_token: str | None = None
    telegram_data: TelegramData | None = None
