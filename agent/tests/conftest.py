"""Shared test fixtures for the coding session test suite.

Provides a mocked Docker client, scripted exec responses, and a ready-made
``BotState`` so module tests can run without a Docker daemon.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from docker.errors import NotFound

from modules.claude_code.lifecycle import ContainerManager
from modules.claude_code.state import BotState
from shared.config import Settings


# ---------------------------------------------------------------------------
# Docker mocks
# ---------------------------------------------------------------------------


class ExecScript:
    """Scripted responses for ``client.api.exec_*``.

    Each ``push`` queues the result of the next command run through
    ``exec_command``; unscripted commands succeed with no output.
    """

    def __init__(self, client: MagicMock):
        self.calls: list[list[str]] = []
        self._queue: list[tuple[bytes, bytes, int]] = []
        self._by_id: dict[str, tuple[bytes, bytes, int]] = {}
        client.api.exec_create.side_effect = self._create
        client.api.exec_start.side_effect = self._start
        client.api.exec_inspect.side_effect = self._inspect

    def push(self, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0) -> None:
        self._queue.append((stdout, stderr, exit_code))

    @property
    def commands(self) -> list[list[str]]:
        """Commands as passed to ``exec_command``, without the pid wrapper."""
        return [cmd[4:] for cmd in self.calls if len(cmd) > 4]

    def _create(self, container, cmd, **kwargs):
        exec_id = f"exec-{len(self.calls)}"
        self.calls.append(list(cmd))
        is_wrapped = len(cmd) > 4
        if is_wrapped and self._queue:
            self._by_id[exec_id] = self._queue.pop(0)
        else:
            self._by_id[exec_id] = (b"", b"", 0)
        return {"Id": exec_id}

    def _start(self, exec_id, stream=False, demux=False, detach=False, **kwargs):
        stdout, stderr, _ = self._by_id[exec_id]
        if detach:
            return b""
        return iter([(stdout or None, stderr or None)])

    def _inspect(self, exec_id):
        return {"ExitCode": self._by_id[exec_id][2], "Running": False}


def _make_container(name: str = "coding-session-42", status: str = "running") -> MagicMock:
    container = MagicMock()
    container.id = f"id-{name}"
    container.name = name
    container.status = status
    container.exec_run.return_value = MagicMock(exit_code=0, output=b"ready\n")
    return container


@pytest.fixture
def container_factory():
    """Build mock containers: ``container_factory(name, status)``."""
    return _make_container


@pytest.fixture
def mock_container():
    return _make_container()


@pytest.fixture
def mock_docker_client(mock_container):
    """Mock Docker client with one running session container.

    ``containers.get`` raises NotFound for the first lookup (the stale
    container check on start) and returns ``mock_container`` afterwards.
    """
    client = MagicMock()
    client.containers.create.return_value = mock_container
    client.containers.get.side_effect = [NotFound("No such container")] + [mock_container] * 50
    client.containers.list.return_value = []
    client.volumes.get.return_value = MagicMock(attrs={"Labels": {"created_by": "telegram-claude-code"}})
    client.images.get.return_value = MagicMock()
    client.api.put_archive.return_value = True
    return client


@pytest.fixture
def exec_script(mock_docker_client):
    return ExecScript(mock_docker_client)


@pytest.fixture
def containers(mock_docker_client):
    return ContainerManager(client=mock_docker_client)


# ---------------------------------------------------------------------------
# Settings and state
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        telegram_token="test-token",
        ready_timeout=1.0,
        ready_poll_interval=0.01,
        auth_timeout=5.0,
    )


@pytest.fixture
def bot_state(settings, containers):
    return BotState.create(settings, containers)
