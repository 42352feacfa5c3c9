"""Authentication collaborator: sessions, session-changed events and tokens."""

from __future__ import annotations

import inspect
import logging
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Union

from .models import _now_ms


logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"


@dataclass(frozen=True)
class AuthSession:
    """What the auth provider hands back after sign-in."""

    user_id: str
    email: str | None = None

    def context(self) -> "SessionContext":
        return SessionContext(user_id=self.user_id, seed=self.email)


@dataclass(frozen=True)
class SessionContext:
    """The caller's identity, passed explicitly into every core operation."""

    user_id: str
    seed: str | None = None


@dataclass(frozen=True)
class SessionChanged:
    kind: str
    session: AuthSession | None
    previous: AuthSession | None = None


Listener = Callable[[SessionChanged], Union[None, Awaitable[None]]]


class AuthEvents:
    """Session-changed notifications, delivered to listeners in registration order."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._current: AuthSession | None = None

    @property
    def current(self) -> AuthSession | None:
        return self._current

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return unsubscribe

    async def sign_in(self, session: AuthSession) -> None:
        previous = self._current
        self._current = session
        await self._emit(SessionChanged(SIGNED_IN, session, previous))

    async def sign_out(self) -> None:
        previous = self._current
        if previous is None:
            return
        self._current = None
        await self._emit(SessionChanged(SIGNED_OUT, None, previous))

    async def _emit(self, event: SessionChanged) -> None:
        for listener in list(self._listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result


@dataclass
class TokenSession:
    session_token: str
    auth: AuthSession
    expires_at_ms: int


class SessionStore:
    """Tracks bearer tokens issued to HTTP and WebSocket clients."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000) -> None:
        self._ttl_ms = ttl_ms
        self._by_token: Dict[str, TokenSession] = {}

    def create(self, auth: AuthSession) -> TokenSession:
        session = TokenSession(
            session_token=f"st_{secrets.token_urlsafe(16)}",
            auth=auth,
            expires_at_ms=_now_ms() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get(self, session_token: str) -> TokenSession | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= _now_ms():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: TokenSession) -> None:
        self._by_token.pop(session.session_token, None)


def user_id_from_auth_token(auth_token: str) -> str | None:
    """Development auth: the token is ``Bearer <user_id>`` or the bare user id."""

    token = auth_token.strip()
    if token.startswith("Bearer "):
        token = token[len("Bearer ") :].strip()
    return token or None
