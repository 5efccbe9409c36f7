"""Process-wide state shared by every command handler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Coroutine

import structlog

from modules.claude_code.auth_sessions import AuthSessionRegistry
from modules.claude_code.claude_sessions import ClaudeSessionRegistry
from modules.claude_code.errors import SessionError
from modules.claude_code.lifecycle import ContainerManager
from shared.config import Settings

logger = structlog.get_logger()


@dataclass
class BotState:
    """Container manager, registries and background handshakes.

    Built once at startup and handed to every handler. When both registries
    have to be locked, take ``claude_sessions`` before ``auth_sessions``.
    """

    settings: Settings
    containers: ContainerManager
    claude_sessions: ClaudeSessionRegistry
    auth_sessions: AuthSessionRegistry = field(default_factory=AuthSessionRegistry)
    tasks: set[asyncio.Task] = field(default_factory=set)

    @classmethod
    def create(cls, settings: Settings, containers: ContainerManager | None = None) -> BotState:
        if containers is None:
            containers = ContainerManager(volume_prefix=settings.volume_prefix)
        return cls(
            settings=settings,
            containers=containers,
            claude_sessions=ClaudeSessionRegistry(
                container_prefix=settings.container_prefix,
                volume_prefix=settings.volume_prefix,
            ),
        )

    def spawn(self, coro: Coroutine, name: str | None = None) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def startup(self) -> None:
        """Remove session containers left over from a previous run."""
        if not self.settings.clear_sessions_on_startup:
            return
        try:
            removed = await self.containers.clear_all_session_containers(
                self.settings.container_prefix
            )
            logger.info("startup_cleanup_complete", removed=removed)
        except SessionError as e:
            logger.warning("startup_cleanup_failed", error=str(e))

    async def shutdown(self) -> None:
        """Cancel pending handshakes and remove live session containers."""
        cancelled = await self.auth_sessions.cancel_all()
        for task in list(self.tasks):
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        for session in await self.claude_sessions.all():
            try:
                await self.containers.clear_coding_session(session.container_name)
            except SessionError as e:
                logger.warning(
                    "shutdown_cleanup_failed",
                    container=session.container_name,
                    error=str(e),
                )
        self.containers.close()
        logger.info("bot_state_shutdown", cancelled_handshakes=cancelled)
