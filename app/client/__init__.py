"""
Client side of the Telegram bot login handshake.

Drives a login from a user-facing process: mints and registers the token,
opens the bot deep link, polls the exchange and establishes the local
Supabase session.
"""

from app.client.errors import BotLoginError, LoginErrorKind
from app.client.orchestrator import BotLoginOrchestrator, LoginState
from app.client.session_store import AuthSessionStore, AuthState

__all__ = [
    "AuthSessionStore",
    "AuthState",
    "BotLoginError",
    "BotLoginOrchestrator",
    "LoginErrorKind",
    "LoginState",
]
