"""Pending authentication handshakes, one per user.

A handshake runs as a background task that waits on two one-shot
primitives: a ``CodeChannel`` the user's pasted code is delivered through,
and a ``CancelSignal`` fired when the handshake is replaced or abandoned.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from modules.claude_code.errors import NoActiveSession

logger = structlog.get_logger()


class CancelSignal:
    """Fire-once cancellation flag."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self) -> bool:
        """Fire the signal. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class CodeChannel:
    """Single-slot, single-use channel carrying one authentication code."""

    def __init__(self):
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._sent = False

    @property
    def sent(self) -> bool:
        return self._sent

    def send(self, code: str) -> bool:
        """Deliver ``code``. Returns False if a code was already sent."""
        if self._sent:
            return False
        try:
            self._queue.put_nowait(code)
        except asyncio.QueueFull:
            return False
        self._sent = True
        return True

    async def receive(self) -> str:
        return await self._queue.get()


class AuthResult(Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class AuthOutcome:
    result: AuthResult
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.result is AuthResult.SUCCESS


# An external handshake: receives the code channel and cancel signal, and
# reports how it ended.
AuthProvider = Callable[[CodeChannel, CancelSignal], Awaitable[AuthOutcome]]


@dataclass
class AuthSession:
    """A pending handshake for one user.

    ``abandoned`` is set when another actor (a newer handshake, an explicit
    cancel, or a session clear) took over the user's session status, so the
    handshake task must not touch it when it finishes.
    """

    container_name: str
    codes: CodeChannel = field(default_factory=CodeChannel)
    cancel: CancelSignal = field(default_factory=CancelSignal)
    abandoned: bool = False

    def abandon(self) -> None:
        self.abandoned = True
        self.cancel.fire()


class AuthSessionRegistry:
    """Maps user ids to their pending handshake.

    The lock only guards the mapping; nothing awaits a handshake while
    holding it.
    """

    def __init__(self):
        self._sessions: dict[int, AuthSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, container_name: str) -> AuthSession:
        """Start tracking a new handshake, cancelling any previous one."""
        session = AuthSession(container_name=container_name)
        async with self._lock:
            previous = self._sessions.get(user_id)
            if previous is not None:
                previous.abandon()
                logger.info("auth_session_replaced", user_id=user_id)
            self._sessions[user_id] = session
        logger.info("auth_session_registered", user_id=user_id, container=container_name)
        return session

    async def get(self, user_id: int) -> Optional[AuthSession]:
        async with self._lock:
            return self._sessions.get(user_id)

    async def has_session(self, user_id: int) -> bool:
        return await self.get(user_id) is not None

    async def deliver_code(self, user_id: int, code: str) -> None:
        """Hand ``code`` to the user's pending handshake.

        The entry is removed on delivery, so a second code is rejected.

        Raises:
            NoActiveSession: Nothing is waiting for a code from this user
        """
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None or session.cancel.fired or not session.codes.send(code):
            raise NoActiveSession(f"No pending authentication for user {user_id}")
        logger.info("auth_code_delivered", user_id=user_id)

    async def cancel(self, user_id: int) -> AuthSession:
        """Cancel and forget the user's pending handshake.

        Raises:
            NoActiveSession: Nothing is pending for this user
        """
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            raise NoActiveSession(f"No pending authentication for user {user_id}")
        session.abandon()
        logger.info("auth_session_cancelled", user_id=user_id)
        return session

    async def discard(self, user_id: int, session: AuthSession) -> None:
        """Remove ``session`` if it is still the user's current entry."""
        async with self._lock:
            if self._sessions.get(user_id) is session:
                del self._sessions[user_id]

    async def cancel_all(self) -> int:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.abandon()
        return len(sessions)
