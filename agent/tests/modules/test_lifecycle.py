"""Tests for the container lifecycle manager against a mocked Docker client."""

from __future__ import annotations

import asyncio
import io
import tarfile
import threading
import time
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from modules.claude_code.errors import (
    CommandFailed,
    CommandTimedOut,
    ContainerExited,
    EngineError,
    SessionTimeout,
)
from modules.claude_code.lifecycle import (
    MAIN_CONTAINER_IMAGE,
    ContainerConfig,
    ContainerManager,
    ContainerRef,
    ContainerState,
    generate_container_name,
    session_container_config,
)


def _ref(name: str = "coding-session-42") -> ContainerRef:
    return ContainerRef(id=f"id-{name}", name=name, state=ContainerState.RUNNING)


class TestSessionConfig:
    def test_container_name(self):
        assert generate_container_name(42) == "coding-session-42"
        assert generate_container_name(-42) == "coding-session--42"

    def test_session_config_defaults(self):
        config = session_container_config(42, gh_token="ghp_secret")

        assert config.name == "coding-session-42"
        assert config.image == MAIN_CONTAINER_IMAGE
        assert config.working_dir == "/workspace"
        assert config.command == ["-c", "sleep infinity"]
        assert config.persistent_user_id == 42
        assert config.environment["CODEX_ENV_PYTHON_VERSION"] == "3.12"
        assert config.environment["GH_TOKEN"] == "ghp_secret"

    def test_gh_token_omitted_when_empty(self):
        assert "GH_TOKEN" not in session_container_config(42).environment


class TestStartCodingSession:
    @pytest.mark.asyncio
    async def test_creates_and_starts_with_volume(self, containers, mock_docker_client, mock_container):
        ref = await containers.start_coding_session(session_container_config(42))

        assert ref.state is ContainerState.STARTING
        assert ref.id == mock_container.id
        kwargs = mock_docker_client.containers.create.call_args.kwargs
        assert kwargs["name"] == "coding-session-42"
        assert kwargs["mounts"][0]["Target"] == "/volume_data"
        assert kwargs["mounts"][0]["Source"] == "dev-session-claude-42"
        mock_container.start.assert_called_once()
        mock_docker_client.volumes.get.assert_called_once_with("dev-session-claude-42")

    @pytest.mark.asyncio
    async def test_stale_container_is_removed_first(self, mock_docker_client, mock_container, container_factory):
        stale = container_factory()
        mock_docker_client.containers.get.side_effect = [stale]
        manager = ContainerManager(client=mock_docker_client)

        await manager.start_coding_session(session_container_config(42))

        stale.stop.assert_called_once()
        stale.remove.assert_called_once_with(force=True)
        mock_docker_client.containers.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_start_removes_container(self, containers, mock_docker_client, mock_container):
        mock_container.start.side_effect = APIError(
            "port already allocated", response=MagicMock(status_code=500)
        )

        with pytest.raises(EngineError):
            await containers.start_coding_session(session_container_config(42))

        mock_container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_cancelled_start_removes_container(self, containers, mock_container):
        entered = threading.Event()
        release = threading.Event()

        def blocking_start():
            entered.set()
            release.wait(5)

        mock_container.start.side_effect = blocking_start
        task = asyncio.ensure_future(
            containers.start_coding_session(session_container_config(42))
        )
        try:
            while not entered.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        mock_container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_missing_image_is_pulled(self, containers, mock_docker_client):
        mock_docker_client.images.get.side_effect = NotFound("no such image")

        await containers.start_coding_session(session_container_config(42))

        mock_docker_client.images.pull.assert_called_once_with(MAIN_CONTAINER_IMAGE)

    @pytest.mark.asyncio
    async def test_failed_pull_still_attempts_create(self, containers, mock_docker_client):
        mock_docker_client.images.get.side_effect = NotFound("no such image")
        mock_docker_client.images.pull.side_effect = APIError(
            "registry unreachable", response=MagicMock(status_code=500)
        )

        await containers.start_coding_session(session_container_config(42))

        mock_docker_client.containers.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_name_rejected_before_engine_calls(self, containers, mock_docker_client):
        from modules.claude_code.errors import InvalidName

        with pytest.raises(InvalidName):
            await containers.start_coding_session(ContainerConfig(name="../escape"))

        mock_docker_client.containers.create.assert_not_called()
        mock_docker_client.volumes.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_test_container_has_no_volume(self, containers, mock_docker_client):
        ref = await containers.create_test_container("test-container")

        assert ref.name == "test-container"
        kwargs = mock_docker_client.containers.create.call_args.kwargs
        assert kwargs["command"] == ["/bin/bash"]
        assert kwargs["mounts"] == []
        mock_docker_client.volumes.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_resource_limits(self, containers, mock_docker_client):
        config = session_container_config(42, cpu_limit=1.5, memory_limit="2g")

        await containers.start_coding_session(config)

        kwargs = mock_docker_client.containers.create.call_args.kwargs
        assert kwargs["nano_cpus"] == 1_500_000_000
        assert kwargs["mem_limit"] == "2g"


class TestWaitForReady:
    @pytest.mark.asyncio
    async def test_ready_when_check_succeeds(self, mock_docker_client, mock_container):
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = mock_container
        manager = ContainerManager(client=mock_docker_client)
        ref = _ref()

        await manager.wait_for_container_ready(ref, timeout=1.0, interval=0.01)

        assert ref.state is ContainerState.READY
        mock_container.exec_run.assert_called_with(["echo", "ready"])

    @pytest.mark.asyncio
    async def test_retries_until_check_succeeds(self, mock_docker_client, mock_container):
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = mock_container
        mock_container.exec_run.side_effect = [
            MagicMock(exit_code=1),
            MagicMock(exit_code=1),
            MagicMock(exit_code=0),
        ]
        manager = ContainerManager(client=mock_docker_client)

        await manager.wait_for_container_ready(_ref(), timeout=1.0, interval=0.01)

        assert mock_container.exec_run.call_count == 3

    @pytest.mark.asyncio
    async def test_exited_container(self, mock_docker_client, container_factory):
        exited = container_factory(status="exited")
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = exited
        manager = ContainerManager(client=mock_docker_client)
        ref = _ref()

        with pytest.raises(ContainerExited):
            await manager.wait_for_container_ready(ref, timeout=1.0, interval=0.01)
        assert ref.state is ContainerState.FAILED

    @pytest.mark.asyncio
    async def test_times_out(self, mock_docker_client, mock_container):
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = mock_container
        mock_container.exec_run.return_value = MagicMock(exit_code=1)
        manager = ContainerManager(client=mock_docker_client)

        with pytest.raises(SessionTimeout):
            await manager.wait_for_container_ready(_ref(), timeout=0.05, interval=0.01)

    @pytest.mark.asyncio
    async def test_hanging_exec_is_bounded_by_timeout(self, mock_docker_client, mock_container):
        release = threading.Event()
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = mock_container
        mock_container.exec_run.side_effect = lambda cmd: release.wait(5)
        manager = ContainerManager(client=mock_docker_client)
        ref = _ref()

        started = time.monotonic()
        try:
            with pytest.raises(SessionTimeout):
                await manager.wait_for_container_ready(ref, timeout=0.2, interval=0.01)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 0.2 + 1.0
        assert ref.state is ContainerState.FAILED


class TestExecCommand:
    @pytest.mark.asyncio
    async def test_output_is_not_trimmed(self, containers, exec_script):
        exec_script.push(stdout=b"hi\n")

        result = await containers.exec_command(_ref(), ["echo", "hi"], timeout=5)

        assert result.stdout == "hi\n"
        assert result.exit_code == 0
        assert result.succeeded
        assert exec_script.commands == [["echo", "hi"]]

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, containers, exec_script):
        exec_script.push(stderr=b"boom\n", exit_code=2)

        with pytest.raises(CommandFailed) as exc_info:
            await containers.exec_command(_ref(), ["false"], timeout=5)

        assert exc_info.value.result.exit_code == 2
        assert exc_info.value.result.stderr == "boom\n"

    @pytest.mark.asyncio
    async def test_allow_failure_returns_result(self, containers, exec_script):
        exec_script.push(stdout=b"nope", exit_code=1)

        result = await containers.exec_command(_ref(), ["test", "-f", "/x"], allow_failure=True)

        assert result.exit_code == 1
        assert not result.succeeded

    @pytest.mark.asyncio
    async def test_workdir_and_environment_are_forwarded(self, containers, mock_docker_client, exec_script):
        await containers.exec_command(
            _ref(), ["pwd"], workdir="/workspace", environment={"A": "1"}
        )

        kwargs = mock_docker_client.api.exec_create.call_args.kwargs
        assert kwargs["workdir"] == "/workspace"
        assert kwargs["environment"] == {"A": "1"}

    @pytest.mark.asyncio
    async def test_timeout_kills_command_and_keeps_partial_output(self, mock_docker_client):
        released = threading.Event()
        created: list[list[str]] = []

        def exec_create(container, cmd, **kwargs):
            created.append(list(cmd))
            return {"Id": f"exec-{len(created)}"}

        def blocking_stream():
            yield (b"partial\n", None)
            released.wait(5)

        def exec_start(exec_id, stream=False, demux=False, detach=False, **kwargs):
            if detach:
                # The kill exec unblocks the running command
                released.set()
                return b""
            return blocking_stream()

        mock_docker_client.api.exec_create.side_effect = exec_create
        mock_docker_client.api.exec_start.side_effect = exec_start
        manager = ContainerManager(client=mock_docker_client)

        started = time.monotonic()
        with pytest.raises(CommandTimedOut) as exc_info:
            await manager.exec_command(_ref(), ["sleep", "60"], timeout=0.2)
        elapsed = time.monotonic() - started

        result = exc_info.value.result
        assert result.timed_out is True
        assert result.exit_code is None
        assert result.stdout == "partial\n"
        assert len(created) == 2
        kill_cmd = created[1]
        assert "kill -TERM" in kill_cmd[2]
        # The kill targets the pid file written by the wrapped command
        assert kill_cmd[3] == created[0][3]
        assert released.is_set()
        assert elapsed <= 0.2 + 1.0

    @pytest.mark.asyncio
    async def test_timed_out_is_a_session_timeout(self):
        assert issubclass(CommandTimedOut, SessionTimeout)


class TestBackgroundExec:
    @pytest.mark.asyncio
    async def test_stdout_lines_splits_chunks(self, containers, exec_script, mock_docker_client):
        exec_script.push(stdout=b'{"type": "system"}\nsecond\nno newline', stderr=b"warn\n")

        handle = await containers.start_background_exec(_ref(), ["claude"], workdir="/workspace")
        lines = [line async for line in handle.stdout_lines(poll_interval=0.01)]

        assert lines == ['{"type": "system"}', "second", "no newline"]
        assert mock_docker_client.api.exec_create.call_args.kwargs["workdir"] == "/workspace"
        result = await handle.wait(timeout=1.0)
        assert result.exit_code == 0
        assert result.stderr == "warn\n"


class TestClearSessions:
    @pytest.mark.asyncio
    async def test_clear_existing_container(self, mock_docker_client, container_factory):
        container = container_factory()
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = container
        manager = ContainerManager(client=mock_docker_client)

        assert await manager.clear_coding_session("coding-session-42") is True

        container.stop.assert_called_once_with(timeout=3)
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_clear_is_idempotent(self, mock_docker_client):
        mock_docker_client.containers.get.side_effect = NotFound("No such container")
        manager = ContainerManager(client=mock_docker_client)

        assert await manager.clear_coding_session("coding-session-42") is False
        assert await manager.clear_coding_session("coding-session-42") is False

    @pytest.mark.asyncio
    async def test_stop_failure_still_removes(self, mock_docker_client, container_factory):
        container = container_factory()
        container.stop.side_effect = APIError("cannot stop", response=MagicMock(status_code=500))
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = container
        manager = ContainerManager(client=mock_docker_client)

        assert await manager.clear_coding_session("coding-session-42") is True
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_clear_keeps_volume(self, mock_docker_client, container_factory):
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = container_factory()
        manager = ContainerManager(client=mock_docker_client)

        await manager.clear_coding_session("coding-session-42")

        mock_docker_client.volumes.get.return_value.remove.assert_not_called()

    @pytest.mark.asyncio
    async def test_clear_all_only_removes_prefixed(self, mock_docker_client, container_factory):
        matching = [container_factory(f"coding-session-{i}") for i in (1, 2, 3)]
        # Docker name filters match substrings
        other = container_factory("my-coding-session-x")
        mock_docker_client.containers.list.return_value = matching + [other]
        manager = ContainerManager(client=mock_docker_client)

        removed = await manager.clear_all_session_containers("coding-session-")

        assert removed == 3
        for c in matching:
            c.remove.assert_called_once_with(force=True)
        other.remove.assert_not_called()
        mock_docker_client.containers.list.assert_called_once_with(
            all=True, filters={"name": "coding-session-"}
        )

    @pytest.mark.asyncio
    async def test_clear_all_skips_failures(self, mock_docker_client, container_factory):
        ok = container_factory("coding-session-1")
        broken = container_factory("/coding-session-2")
        broken.remove.side_effect = APIError("busy", response=MagicMock(status_code=409))
        mock_docker_client.containers.list.return_value = [broken, ok]
        manager = ContainerManager(client=mock_docker_client)

        assert await manager.clear_all_session_containers() == 1
        ok.remove.assert_called_once_with(force=True)


class TestFilesAndLookup:
    @pytest.mark.asyncio
    async def test_put_file_uploads_tar(self, containers, mock_docker_client):
        await containers.put_file(_ref(), "/root/.claude/settings.json", '{"a": 1}', mode=0o600)

        container_id, path, data = mock_docker_client.api.put_archive.call_args.args
        assert container_id == "id-coding-session-42"
        assert path == "/root/.claude"
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            member = tar.getmember("settings.json")
            assert member.mode == 0o600
            assert tar.extractfile(member).read() == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_put_file_failure(self, containers, mock_docker_client):
        mock_docker_client.api.put_archive.return_value = False

        with pytest.raises(EngineError):
            await containers.put_file(_ref(), "/tmp/x", b"x")

    @pytest.mark.asyncio
    async def test_get_container_not_running(self, mock_docker_client, container_factory):
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = container_factory(status="exited")
        manager = ContainerManager(client=mock_docker_client)

        with pytest.raises(ContainerExited):
            await manager.get_container("coding-session-42")

    @pytest.mark.asyncio
    async def test_prepare_environment_links_volume(self, containers, exec_script, mock_docker_client):
        await containers.prepare_coding_environment(_ref(), persistent=True)

        scripts = " ".join(" ".join(cmd) for cmd in exec_script.commands)
        assert "hasCompletedOnboarding" in scripts
        assert "user.email noreply@anthropic.com" in scripts
        assert "ln -sf /volume_data/claude /root/.claude" in scripts
        assert "ln -sf /volume_data/gh /root/.config/gh" in scripts
        path = mock_docker_client.api.put_archive.call_args.args[1]
        assert path == "/volume_data/claude"

    @pytest.mark.asyncio
    async def test_prepare_environment_without_volume(self, containers, exec_script, mock_docker_client):
        await containers.prepare_coding_environment(_ref(), persistent=False)

        scripts = " ".join(" ".join(cmd) for cmd in exec_script.commands)
        assert "/volume_data" not in scripts
        assert mock_docker_client.api.put_archive.call_args.args[1] == "/root/.claude"
