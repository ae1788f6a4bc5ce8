"""
Process-wide auth session state shared by all consumers.

Single writer, many readers: ``update()`` is the only mutation entry point
and is called by the provider subscription and the login orchestrator.
Everything else reads ``state`` or subscribes for changes.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace

from app.client.session_provider import SIGNED_OUT, AuthSession, AuthUser
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UNSET = object()

StateListener = Callable[["AuthState"], None]


@dataclass(frozen=True)
class AuthState:
    user: AuthUser | None = None
    loading: bool = True


class AuthSessionStore:
    """Observable ``{user, loading}`` with an explicit init/reset lifecycle."""

    def __init__(self):
        self._state = AuthState()
        self._listeners: list[StateListener] = []
        self._invalidation_listeners: list[Callable[[int], None]] = []
        self._provider_unsubscribe: Callable[[], None] | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._generation = 0

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def generation(self) -> int:
        """Bumped on every invalidate(); dependents refetch when it changes."""
        return self._generation

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register for state changes; returns the unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def on_invalidate(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._invalidation_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._invalidation_listeners:
                self._invalidation_listeners.remove(listener)

        return _unsubscribe

    def update(self, user=_UNSET, loading=_UNSET) -> AuthState:
        """The single mutation entry point."""
        changes = {}
        if user is not _UNSET:
            changes["user"] = user
        if loading is not _UNSET:
            changes["loading"] = loading

        new_state = replace(self._state, **changes)
        if new_state == self._state:
            return self._state

        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("Auth state subscriber failed")
        return new_state

    async def initialize(self, provider) -> bool:
        """
        Load the current session and subscribe to provider events.

        Runs at most once per store; returns False if already initialized.
        """
        async with self._init_lock:
            if self._initialized:
                return False
            self._initialized = True

            self.update(loading=True)
            self._provider_unsubscribe = provider.on_auth_state_change(self._on_session_event)
            session = await provider.get_session()
            self.update(user=session.user if session else None, loading=False)
            logger.debug("Auth session store initialized", signed_in=session is not None)
            return True

    def _on_session_event(self, event: str, session: AuthSession | None) -> None:
        if event == SIGNED_OUT or session is None:
            self.update(user=None, loading=False)
        else:
            self.update(user=session.user, loading=False)

    def invalidate(self) -> int:
        """Mark all derived state stale after a session transition."""
        self._generation += 1
        for listener in list(self._invalidation_listeners):
            try:
                listener(self._generation)
            except Exception:
                logger.exception("Invalidation listener failed")
        return self._generation

    def reset(self) -> None:
        """Drop the provider subscription and return to the initial state."""
        if self._provider_unsubscribe:
            self._provider_unsubscribe()
            self._provider_unsubscribe = None
        self._initialized = False
        self.update(user=None, loading=True)
