"""
Bot login orchestrator.

    idle -> requesting -> polling -> session_established | error | cancelled

requesting: mint + best-effort register the token, persist recovery
state, open the Telegram deep link.
polling: check the exchange on a 1s/2s/4s then 10s schedule, capped at
POLL_TIMEOUT_SECONDS. Transient failures are retried silently.
completion: sign in with the derived password, falling back to the
login-link token; then publish the user and invalidate dependent state.

Only one poll loop runs per orchestrator; starting a new login cancels
the previous one first.
"""

import asyncio
import time
import webbrowser
from collections.abc import Awaitable, Callable
from enum import Enum

from app.client.api import LoginApiClient, StatusResult
from app.client.config import ClientSettings
from app.client.errors import (
    BotLoginError,
    InvalidOrExpiredTokenError,
    PollingTimeoutError,
    PopupBlockedError,
    SessionEstablishmentError,
    SessionProviderError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TransientApiError,
    ValidationError,
)
from app.client.recovery import PendingLogin, RecoveryStore
from app.client.session_provider import AuthSession, AuthUser
from app.client.session_store import AuthSessionStore
from app.infrastructure.observability.logging import get_logger, token_preview
from app.models.domain.login_domain import generate_login_token

logger = get_logger(__name__)


class LoginState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    POLLING = "polling"
    SESSION_ESTABLISHED = "session_established"
    ERROR = "error"
    CANCELLED = "cancelled"


class BotLoginOrchestrator:
    """Runs the client half of the bot login handshake."""

    def __init__(
        self,
        api: LoginApiClient,
        store: AuthSessionStore,
        provider,
        recovery: RecoveryStore,
        settings: ClientSettings | None = None,
        open_url: Callable[[str], bool] = webbrowser.open,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = generate_login_token,
    ):
        self.api = api
        self.store = store
        self.provider = provider
        self.recovery = recovery
        self.settings = settings or ClientSettings()
        self._open_url = open_url
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._token_factory = token_factory

        self.state = LoginState.IDLE
        self.error: BotLoginError | None = None
        self.token: str | None = None
        self._attempt = 0
        self._task: asyncio.Task | None = None
        self._cancelled_tasks: set[asyncio.Task] = set()
        self._state_listeners: list[Callable[[LoginState], None]] = []
        self._unclaimed_completion: StatusResult | None = None

    # -- state -------------------------------------------------------------

    def on_state_change(self, listener: Callable[[LoginState], None]) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _unsubscribe

    def _transition(self, state: LoginState) -> None:
        if state == self.state:
            return
        logger.debug("Bot login state change", from_state=self.state.value, to_state=state.value)
        self.state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Login state listener failed")

    def _fail(self, error: BotLoginError) -> BotLoginError:
        self.recovery.clear()
        self.error = error
        self._transition(LoginState.ERROR)
        logger.warning(
            "Bot login failed",
            kind=error.kind.value,
            token_preview=token_preview(self.token),
        )
        return error

    # -- public API --------------------------------------------------------

    async def login_with_bot(self) -> AuthUser | None:
        """
        Start a fresh login.

        Returns:
            The signed-in user, or None if the attempt was cancelled

        Raises:
            BotLoginError: terminal failure (kind tells which)
        """
        await self._stop_inflight()
        self._attempt += 1
        attempt = self._attempt

        self.error = None
        self._unclaimed_completion = None
        token = self._token_factory()
        self.token = token
        self._transition(LoginState.REQUESTING)

        try:
            await self.api.register_token(token)
        except (TransientApiError, BotLoginError) as e:
            # The bot confirmation still works once the server sees the token
            logger.warning("Token pre-registration failed", token_preview=token_preview(token), error=str(e))

        if attempt != self._attempt:
            return None

        self.recovery.save(token, self._wall_clock())

        if not self._open_url(self.settings.bot_deep_link(token)):
            raise self._fail(PopupBlockedError())

        return await self._run_poll(token, self.settings.POLL_TIMEOUT_SECONDS)

    async def cancel(self) -> None:
        """
        Stop polling and forget the pending login. Safe from any state.

        When this returns, no further status request will be sent.
        """
        task = self._task
        active = self.state in (LoginState.REQUESTING, LoginState.POLLING)
        if not active and (task is None or task.done()):
            return

        self._attempt += 1
        await self._stop_inflight()
        self.recovery.clear()
        logger.info("Bot login cancelled", token_preview=token_preview(self.token))
        self._transition(LoginState.CANCELLED)
        self._transition(LoginState.IDLE)

    def pending_recovery(self) -> PendingLogin | None:
        """Recovery state young enough to resume; stale state is discarded."""
        pending = self.recovery.load()
        if pending is None:
            return None
        if pending.age(self._wall_clock()) >= self.settings.POLL_TIMEOUT_SECONDS:
            logger.info("Discarding stale pending login", token_preview=token_preview(pending.token))
            self.recovery.clear()
            return None
        return pending

    async def resume_pending(self) -> AuthUser | None:
        """Resume polling a login left over from a previous run, if any."""
        pending = self.pending_recovery()
        if pending is None:
            return None

        await self._stop_inflight()
        self._attempt += 1
        self.error = None
        self.token = pending.token
        remaining = self.settings.POLL_TIMEOUT_SECONDS - pending.age(self._wall_clock())
        logger.info(
            "Resuming pending login",
            token_preview=token_preview(pending.token),
            remaining_seconds=round(remaining, 1),
        )
        return await self._run_poll(pending.token, remaining)

    async def retry_session(self) -> AuthUser | None:
        """Retry sign-in after a SessionEstablishmentError with the payload already received."""
        completion = self._unclaimed_completion
        if completion is None:
            return None
        return await self._establish_session(completion)

    # -- polling -----------------------------------------------------------

    async def _stop_inflight(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        self._cancelled_tasks.add(task)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except BotLoginError:
            pass

    async def _run_poll(self, token: str, budget_seconds: float) -> AuthUser | None:
        self._transition(LoginState.POLLING)
        task = asyncio.create_task(self._poll_loop(token, budget_seconds))
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._cancelled_tasks:
                return None
            raise
        finally:
            self._cancelled_tasks.discard(task)
            if self._task is task:
                self._task = None

    async def _poll_loop(self, token: str, budget_seconds: float) -> AuthUser:
        started = self._clock()
        pending_answers = 0

        while True:
            if self._clock() - started >= budget_seconds:
                raise self._fail(PollingTimeoutError())

            try:
                result = await self.api.check_status(token)
            except TransientApiError as e:
                logger.debug("Transient polling error", token_preview=token_preview(token), error=str(e))
                delay = self.settings.TRANSIENT_RETRY_SECONDS
            else:
                if result.status == "complete":
                    return await self._establish_session(result)
                if result.status != "pending":
                    raise self._fail(self._terminal_error(result))
                delay = self.settings.poll_delay(pending_answers)
                pending_answers += 1

            remaining = budget_seconds - (self._clock() - started)
            if remaining <= 0:
                raise self._fail(PollingTimeoutError())
            await self._sleep(min(delay, remaining))

    @staticmethod
    def _terminal_error(result: StatusResult) -> BotLoginError:
        if result.status == "used":
            return TokenAlreadyUsedError(result.error)
        if result.status == "expired":
            if result.error == "Token expired":
                return TokenExpiredError(result.error)
            return InvalidOrExpiredTokenError(result.error)
        return ValidationError(result.error)

    # -- session -----------------------------------------------------------

    async def _establish_session(self, result: StatusResult) -> AuthUser:
        session = await self._sign_in(result)
        if session is None:
            self._unclaimed_completion = result
            raise self._fail(SessionEstablishmentError())

        self._unclaimed_completion = None
        self.error = None
        self.recovery.clear()
        self.store.update(user=session.user, loading=False)
        self._transition(LoginState.SESSION_ESTABLISHED)
        self.store.invalidate()
        logger.info("Bot login session established", user_id=session.user.id)
        return session.user

    async def _sign_in(self, result: StatusResult) -> AuthSession | None:
        if result.email and result.secure_password:
            try:
                return await self.provider.sign_in_with_password(result.email, result.secure_password)
            except SessionProviderError as e:
                logger.warning("Password sign-in failed, trying login link", error=str(e))

        if result.login_link_token:
            try:
                return await self.provider.verify_login_link(result.login_link_token)
            except SessionProviderError as e:
                logger.warning("Login link sign-in failed", error=str(e))

        return None
