"""Exceptions raised by the coding session core.

Docker SDK errors never leak past ``ContainerManager``; they are translated
into the types below so handlers can render them without importing docker.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from modules.claude_code.lifecycle import ExecResult


class SessionError(Exception):
    """Base class for coding session failures."""


class InvalidName(SessionError):
    """A derived container or volume name failed validation."""


class EngineUnavailable(SessionError):
    """The container engine could not be reached."""


class EngineError(SessionError):
    """The container engine rejected an operation."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFound(SessionError):
    """The referenced container or volume does not exist."""


class SessionTimeout(SessionError):
    """An operation did not complete before its deadline."""


class ContainerExited(SessionError):
    """The container stopped while it was expected to be running."""

    def __init__(self, name: str, status: str):
        super().__init__(f"Container {name} is not running (status: {status})")
        self.name = name
        self.status = status


class CommandFailed(SessionError):
    """A command inside the container exited non-zero."""

    def __init__(self, command: list[str], result: ExecResult):
        super().__init__(
            f"Command {' '.join(command)!r} failed with exit code {result.exit_code}"
        )
        self.command = command
        self.result = result


class CommandTimedOut(SessionTimeout):
    """A command exceeded its timeout; ``result`` holds the partial output."""

    def __init__(self, command: list[str], timeout: float, result: ExecResult):
        super().__init__(
            f"Command {' '.join(command)!r} timed out after {timeout:g}s"
        )
        self.command = command
        self.timeout = timeout
        self.result = result


class NoActiveSession(SessionError):
    """No authentication handshake is pending for the user."""


class SessionBusy(SessionError):
    """Another start operation for the same user is already in flight."""


class InvalidTransition(SessionError):
    """A session status change is not allowed from the current status."""
