"""In-memory record of each user's coding session."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional

import structlog

from modules.claude_code.errors import InvalidTransition, SessionBusy
from modules.claude_code.lifecycle import SESSION_CONTAINER_PREFIX, generate_container_name
from modules.claude_code.volume import VOLUME_PREFIX, generate_volume_name

logger = structlog.get_logger()


class SessionStatus(Enum):
    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    AUTHENTICATING = "authenticating_external_tool"
    FAILED = "failed"
    CLEARED = "cleared"


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.STARTING, SessionStatus.FAILED, SessionStatus.CLEARED}),
    SessionStatus.STARTING: frozenset(
        {SessionStatus.READY, SessionStatus.FAILED, SessionStatus.AUTHENTICATING, SessionStatus.CLEARED}
    ),
    SessionStatus.READY: frozenset(
        {SessionStatus.AUTHENTICATING, SessionStatus.FAILED, SessionStatus.CLEARED, SessionStatus.STARTING}
    ),
    # A second handshake replaces the first without leaving this state
    SessionStatus.AUTHENTICATING: frozenset(
        {
            SessionStatus.AUTHENTICATING,
            SessionStatus.READY,
            SessionStatus.FAILED,
            SessionStatus.CLEARED,
            SessionStatus.STARTING,
        }
    ),
    SessionStatus.FAILED: frozenset(
        {SessionStatus.STARTING, SessionStatus.AUTHENTICATING, SessionStatus.CLEARED}
    ),
    SessionStatus.CLEARED: frozenset({SessionStatus.STARTING}),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in _TRANSITIONS[current]


@dataclass
class ClaudeSession:
    user_id: int
    container_name: str
    volume_name: str
    status: SessionStatus = SessionStatus.CREATED
    container_id: Optional[str] = None
    working_directory: Optional[str] = None
    # Claude CLI session id, passed to --resume for follow-up prompts
    conversation_id: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.READY, SessionStatus.AUTHENTICATING)


class ClaudeSessionRegistry:
    """Maps user ids to their ``ClaudeSession``.

    Callers get copies; changes go through ``upsert``/``set_status`` so they
    happen under the lock.
    """

    def __init__(
        self,
        container_prefix: str = SESSION_CONTAINER_PREFIX,
        volume_prefix: str = VOLUME_PREFIX,
    ):
        self.container_prefix = container_prefix
        self.volume_prefix = volume_prefix
        self._sessions: dict[int, ClaudeSession] = {}
        self._starting: set[int] = set()
        self._prompting: set[int] = set()
        self._lock = asyncio.Lock()

    def _new_session(self, user_id: int) -> ClaudeSession:
        return ClaudeSession(
            user_id=user_id,
            container_name=generate_container_name(user_id, self.container_prefix),
            volume_name=generate_volume_name(user_id, self.volume_prefix),
        )

    async def get_or_create(self, user_id: int) -> ClaudeSession:
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = self._new_session(user_id)
                self._sessions[user_id] = session
            return replace(session)

    async def get(self, user_id: int) -> Optional[ClaudeSession]:
        async with self._lock:
            session = self._sessions.get(user_id)
            return replace(session) if session else None

    async def upsert(self, session: ClaudeSession) -> None:
        async with self._lock:
            session.updated_at = datetime.now(timezone.utc)
            self._sessions[session.user_id] = replace(session)

    async def remove(self, user_id: int) -> Optional[ClaudeSession]:
        async with self._lock:
            return self._sessions.pop(user_id, None)

    async def update(self, user_id: int, **changes) -> Optional[ClaudeSession]:
        """Change fields other than the status; None if there is no session."""
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            session = replace(session, updated_at=datetime.now(timezone.utc), **changes)
            self._sessions[user_id] = session
            return replace(session)

    async def set_status(self, user_id: int, status: SessionStatus, **changes) -> ClaudeSession:
        """Move the user's session to ``status``.

        Extra keyword arguments update other session fields in the same step.

        Raises:
            InvalidTransition: The change is not allowed from the current status
        """
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = self._new_session(user_id)
            if session.status is not status and not can_transition(session.status, status):
                raise InvalidTransition(
                    f"Cannot move session from {session.status.value} to {status.value}"
                )
            session = replace(
                session, status=status, updated_at=datetime.now(timezone.utc), **changes
            )
            self._sessions[user_id] = session
        logger.debug("session_status_changed", user_id=user_id, status=status.value)
        return replace(session)

    async def finish_authentication(
        self,
        user_id: int,
        success: bool,
        is_current: Callable[[], bool] = lambda: True,
    ) -> bool:
        """Leave ``AUTHENTICATING`` for ``READY`` or ``FAILED``.

        Does nothing if the session is no longer authenticating, e.g. because
        it was cleared meanwhile, or if ``is_current`` says a newer handshake
        took over. ``is_current`` is checked under the registry lock. Returns
        whether the status changed.
        """
        target = SessionStatus.READY if success else SessionStatus.FAILED
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None or session.status is not SessionStatus.AUTHENTICATING:
                return False
            if not is_current():
                return False
            self._sessions[user_id] = replace(
                session, status=target, updated_at=datetime.now(timezone.utc)
            )
        logger.info("authentication_finished", user_id=user_id, status=target.value)
        return True

    @asynccontextmanager
    async def _reserve(self, reserved: set[int], user_id: int, busy: str) -> AsyncIterator[None]:
        async with self._lock:
            if user_id in reserved:
                raise SessionBusy(busy)
            reserved.add(user_id)
        try:
            yield
        finally:
            async with self._lock:
                reserved.discard(user_id)

    def start_guard(self, user_id: int):
        """Reserve the user for a start operation.

        Raises:
            SessionBusy: Another start for the same user is in flight
        """
        return self._reserve(
            self._starting, user_id, f"A session is already starting for user {user_id}"
        )

    def prompt_guard(self, user_id: int):
        """Allow one running Claude prompt per user."""
        return self._reserve(
            self._prompting, user_id, f"A prompt is already running for user {user_id}"
        )

    async def all(self) -> list[ClaudeSession]:
        async with self._lock:
            return [replace(s) for s in self._sessions.values()]
