"""Coding session container lifecycle on top of the Docker SDK.

``ContainerManager`` is the only owner of the docker client. Every blocking
SDK call goes through ``engine_call`` so it runs in a worker thread and its
errors arrive as ``modules.claude_code.errors`` types.
"""

from __future__ import annotations

import asyncio
import io
import json
import posixpath
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Optional

import docker
import structlog

from modules.claude_code.engine import connect, engine_call
from modules.claude_code.errors import (
    CommandFailed,
    CommandTimedOut,
    ContainerExited,
    EngineError,
    NotFound,
    SessionError,
    SessionTimeout,
)
from modules.claude_code.volume import (
    VOLUME_MOUNT_TARGET,
    VOLUME_PREFIX,
    MountSpec,
    VolumeManager,
    validate_volume_key,
)

logger = structlog.get_logger()

MAIN_CONTAINER_IMAGE = "ghcr.io/goniz/telegram-claude-code-runtime:main"
SESSION_CONTAINER_PREFIX = "coding-session-"
WORKSPACE_DIR = "/workspace"
STOP_TIMEOUT = 3

# Toolchain versions selected by the runtime image's entrypoint
DEFAULT_ENVIRONMENT = {
    "CODEX_ENV_PYTHON_VERSION": "3.12",
    "CODEX_ENV_NODE_VERSION": "22",
    "CODEX_ENV_RUST_VERSION": "1.87.0",
    "CODEX_ENV_GO_VERSION": "1.23.8",
}

CLAUDE_SETTINGS = {
    "permissions": {
        "defaultMode": "acceptEdits",
        "allow": [
            "Edit",
            "Read",
            "Write",
            "Bash",
            "Glob",
            "Grep",
            "LS",
            "MultiEdit",
            "Task",
        ],
    }
}

# Runs the command as a child so its pid can be recorded in "$0" and
# signalled from a second exec when the caller gives up on it.
_PID_WRAPPER = '"$@" & echo $! > "$0"; wait $!; rc=$?; rm -f "$0"; exit $rc'


def generate_container_name(user_id: int, prefix: str = SESSION_CONTAINER_PREFIX) -> str:
    """Return the session container name for ``user_id``."""
    return f"{prefix}{user_id}"


class ContainerState(Enum):
    REQUESTED = "requested"
    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass
class ContainerConfig:
    """Everything needed to create a session container.

    When ``persistent_user_id`` is set the user's volume is ensured and
    mounted at ``/volume_data`` in addition to ``mounts``.
    """

    name: str
    image: str = MAIN_CONTAINER_IMAGE
    cpu_limit: Optional[float] = None
    memory_limit: Optional[str] = None
    mounts: list[MountSpec] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    entrypoint: Optional[list[str]] = None
    command: Optional[list[str]] = None
    readiness_probe: list[str] = field(default_factory=lambda: ["echo", "ready"])
    labels: dict[str, str] = field(default_factory=dict)
    persistent_user_id: Optional[int] = None
    tty: bool = True


@dataclass
class ContainerRef:
    id: str
    name: str
    state: ContainerState = ContainerState.REQUESTED


@dataclass
class ExecResult:
    """Captured output of a command run inside a container."""

    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped for display."""
        return "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)


def session_container_config(
    user_id: int,
    image: str = MAIN_CONTAINER_IMAGE,
    prefix: str = SESSION_CONTAINER_PREFIX,
    gh_token: str = "",
    cpu_limit: Optional[float] = None,
    memory_limit: Optional[str] = None,
) -> ContainerConfig:
    """Build the config of a user's persistent coding session container."""
    environment = dict(DEFAULT_ENVIRONMENT)
    if gh_token:
        environment["GH_TOKEN"] = gh_token
    return ContainerConfig(
        name=generate_container_name(user_id, prefix),
        image=image,
        cpu_limit=cpu_limit,
        memory_limit=memory_limit,
        environment=environment,
        working_dir=WORKSPACE_DIR,
        command=["-c", "sleep infinity"],
        labels={
            "created_by": "telegram-claude-code",
            "type": "coding_session",
            "user_id": str(user_id),
            "created_at": str(int(time.time())),
        },
        persistent_user_id=user_id,
    )


def _decode(chunks: list[bytes]) -> str:
    return b"".join(list(chunks)).decode("utf-8", errors="replace")


class BackgroundExec:
    """A long-running command whose output is consumed while it runs."""

    def __init__(
        self,
        manager: ContainerManager,
        ref: ContainerRef,
        command: list[str],
        workdir: Optional[str] = None,
    ):
        self.manager = manager
        self.ref = ref
        self.command = command
        self.workdir = workdir
        self.pidfile = f"/tmp/.exec-{uuid.uuid4().hex}.pid"
        self.exec_id: Optional[str] = None
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.exec_id = await self.manager._exec_create(
            self.ref, self.command, self.pidfile, workdir=self.workdir
        )
        self._task = asyncio.create_task(
            engine_call(self.manager._drain, self.exec_id, self._stdout, self._stderr)
        )

    @property
    def output(self) -> str:
        return _decode(self._stdout) + _decode(self._stderr)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait_for_output(
        self,
        predicate: Callable[[str], bool],
        timeout: float,
        poll_interval: float = 0.2,
    ) -> Optional[str]:
        """Return the output once ``predicate`` accepts it.

        Returns None if the command finishes or ``timeout`` elapses first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            text = self.output
            if predicate(text):
                return text
            if self.done or loop.time() >= deadline:
                return None
            await asyncio.sleep(poll_interval)

    async def stdout_lines(self, poll_interval: float = 0.2) -> AsyncIterator[str]:
        """Yield stdout line by line while the command runs.

        Ends once the command has exited and its output is drained; a final
        line without a newline is still yielded.
        """
        consumed = 0
        pending = b""
        while True:
            finished = self.done
            chunks = self._stdout[consumed:]
            consumed += len(chunks)
            *lines, pending = (pending + b"".join(chunks)).split(b"\n")
            for line in lines:
                yield line.decode("utf-8", errors="replace")
            if finished:
                break
            await asyncio.sleep(poll_interval)
        if pending:
            yield pending.decode("utf-8", errors="replace")

    async def wait(self, timeout: Optional[float] = None) -> ExecResult:
        """Wait for the command to exit.

        Raises:
            CommandTimedOut: The command was still running after ``timeout``;
                it is terminated before the error is raised
        """
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            await self.terminate()
            result = ExecResult(
                stdout=_decode(self._stdout),
                stderr=_decode(self._stderr),
                timed_out=True,
            )
            raise CommandTimedOut(self.command, timeout, result)
        info = await engine_call(self.manager.client.api.exec_inspect, self.exec_id)
        return ExecResult(
            stdout=_decode(self._stdout),
            stderr=_decode(self._stderr),
            exit_code=info.get("ExitCode"),
        )

    async def terminate(self) -> None:
        if self.done:
            return
        await self.manager._kill_exec(self.ref, self.pidfile)


class ContainerManager:
    """Creates, probes, executes in, and removes coding session containers."""

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        volume_prefix: str = VOLUME_PREFIX,
        stop_timeout: int = STOP_TIMEOUT,
    ):
        self.client = client if client is not None else connect()
        self.volumes = VolumeManager(self.client, volume_prefix)
        self.stop_timeout = stop_timeout

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def start_coding_session(self, config: ContainerConfig) -> ContainerRef:
        """Create and start a container for ``config``.

        A container left behind under the same name is removed first. If the
        container is created but fails to start it is force-removed before
        the error propagates, so no half-started container survives.

        Returns:
            ContainerRef in the ``STARTING`` state; call
            ``wait_for_container_ready`` before using it.
        """
        validate_volume_key(config.name)

        mounts = list(config.mounts)
        if config.persistent_user_id is not None:
            await self.volumes.ensure_user_volume(config.persistent_user_id)
            mounts.extend(self.volumes.create_auth_mounts(config.persistent_user_id))

        if await self.clear_coding_session(config.name):
            logger.info("stale_session_container_removed", container=config.name)

        await self._ensure_image(config.image)

        kwargs = {
            "image": config.image,
            "name": config.name,
            "command": config.command,
            "entrypoint": config.entrypoint,
            "environment": config.environment,
            "working_dir": config.working_dir,
            "labels": config.labels,
            "mounts": [m.to_docker() for m in mounts],
            "tty": config.tty,
            "stdin_open": config.tty,
        }
        if config.cpu_limit:
            kwargs["nano_cpus"] = int(config.cpu_limit * 1_000_000_000)
        if config.memory_limit:
            kwargs["mem_limit"] = config.memory_limit

        logger.info("creating_session_container", container=config.name, image=config.image)
        try:
            container = await engine_call(self.client.containers.create, **kwargs)
        except NotFound as e:
            logger.error("session_image_missing", image=config.image, error=str(e))
            raise EngineError(f"Image {config.image} is not available: {e}") from e

        ref = ContainerRef(id=container.id, name=config.name, state=ContainerState.CREATED)

        try:
            await engine_call(container.start)
        except BaseException as e:
            # Cancellation too, or the created container is leaked
            logger.error(
                "session_container_start_failed", container=config.name, error=repr(e)
            )
            ref.state = ContainerState.FAILED
            await self._force_remove(container)
            raise

        ref.state = ContainerState.STARTING
        logger.info("session_container_started", container=config.name, container_id=ref.id)
        return ref

    async def create_test_container(self, name: str) -> ContainerRef:
        """Start a throwaway container without a persistent volume."""
        config = ContainerConfig(
            name=name,
            command=["/bin/bash"],
            working_dir=WORKSPACE_DIR,
            labels={"created_by": "telegram-claude-code", "type": "test"},
        )
        return await self.start_coding_session(config)

    async def _ensure_image(self, image: str) -> None:
        try:
            await engine_call(self.client.images.get, image)
            return
        except NotFound:
            pass

        logger.info("pulling_image", image=image)
        try:
            await engine_call(self.client.images.pull, image)
        except SessionError as e:
            # Creation is still attempted and reports the real problem
            logger.warning("image_pull_failed", image=image, error=str(e))

    async def _force_remove(self, container) -> None:
        try:
            await engine_call(container.remove, force=True)
        except SessionError as e:
            logger.warning("container_cleanup_failed", container_id=container.id, error=str(e))

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def wait_for_container_ready(
        self,
        ref: ContainerRef,
        timeout: float = 30.0,
        interval: float = 1.0,
        probe: Optional[list[str]] = None,
    ) -> None:
        """Poll ``probe`` inside the container until it exits zero.

        Raises:
            ContainerExited: The container stopped while waiting
            SessionTimeout: The probe did not succeed within ``timeout``
        """
        probe = probe or ["echo", "ready"]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def timed_out() -> SessionTimeout:
            ref.state = ContainerState.FAILED
            return SessionTimeout(f"Container {ref.name} not ready after {timeout:g}s")

        async def bounded(func, *args):
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise timed_out()
            try:
                return await asyncio.wait_for(engine_call(func, *args), remaining)
            except asyncio.TimeoutError:
                logger.warning("readiness_check_hung", container=ref.name, timeout=timeout)
                raise timed_out() from None

        container = await bounded(self.client.containers.get, ref.id)
        attempt = 0

        while True:
            attempt += 1
            await bounded(container.reload)
            status = container.status
            if status in ("exited", "dead"):
                ref.state = ContainerState.FAILED
                logger.error("session_container_exited", container=ref.name, status=status)
                raise ContainerExited(ref.name, status)

            if status == "running":
                try:
                    result = await bounded(container.exec_run, probe)
                    if result.exit_code == 0:
                        ref.state = ContainerState.READY
                        logger.info("session_container_ready", container=ref.name, attempt=attempt)
                        return
                except EngineError as e:
                    logger.debug("readiness_probe_error", container=ref.name, error=str(e))

            if loop.time() + interval > deadline:
                raise timed_out()
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def exec_command(
        self,
        ref: ContainerRef,
        command: list[str],
        timeout: Optional[float] = None,
        allow_failure: bool = False,
        workdir: Optional[str] = None,
        environment: Optional[dict[str, str]] = None,
    ) -> ExecResult:
        """Run ``command`` in the container and capture its output.

        Output is returned as produced, without trimming.

        Raises:
            CommandTimedOut: ``timeout`` elapsed; the command was signalled
                and ``error.result`` holds what it printed so far
            CommandFailed: Non-zero exit and ``allow_failure`` is False
        """
        pidfile = f"/tmp/.exec-{uuid.uuid4().hex}.pid"
        exec_id = await self._exec_create(ref, command, pidfile, workdir, environment)
        stdout: list[bytes] = []
        stderr: list[bytes] = []

        logger.debug("exec_command", container=ref.name, command=command)
        try:
            await asyncio.wait_for(
                engine_call(self._drain, exec_id, stdout, stderr), timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "exec_command_timed_out",
                container=ref.name,
                command=command,
                timeout=timeout,
            )
            await self._kill_exec(ref, pidfile)
            result = ExecResult(
                stdout=_decode(stdout),
                stderr=_decode(stderr),
                timed_out=True,
            )
            raise CommandTimedOut(command, timeout, result)

        info = await engine_call(self.client.api.exec_inspect, exec_id)
        result = ExecResult(
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            exit_code=info.get("ExitCode"),
        )
        if result.exit_code != 0 and not allow_failure:
            logger.debug(
                "exec_command_failed",
                container=ref.name,
                command=command,
                exit_code=result.exit_code,
            )
            raise CommandFailed(command, result)
        return result

    async def start_background_exec(
        self, ref: ContainerRef, command: list[str], workdir: Optional[str] = None
    ) -> BackgroundExec:
        """Start ``command`` and return a handle for reading its output."""
        handle = BackgroundExec(self, ref, command, workdir=workdir)
        await handle.start()
        return handle

    async def _exec_create(
        self,
        ref: ContainerRef,
        command: list[str],
        pidfile: str,
        workdir: Optional[str] = None,
        environment: Optional[dict[str, str]] = None,
    ) -> str:
        exec_instance = await engine_call(
            self.client.api.exec_create,
            ref.id,
            ["sh", "-c", _PID_WRAPPER, pidfile, *command],
            stdout=True,
            stderr=True,
            workdir=workdir,
            environment=environment,
        )
        return exec_instance["Id"]

    def _drain(self, exec_id: str, stdout: list[bytes], stderr: list[bytes]) -> None:
        stream = self.client.api.exec_start(exec_id, stream=True, demux=True)
        for out, err in stream:
            if out:
                stdout.append(out)
            if err:
                stderr.append(err)

    async def _kill_exec(self, ref: ContainerRef, pidfile: str) -> None:
        try:
            exec_instance = await engine_call(
                self.client.api.exec_create,
                ref.id,
                ["sh", "-c", 'kill -TERM "$(cat "$0")" 2>/dev/null; rm -f "$0"', pidfile],
            )
            await engine_call(self.client.api.exec_start, exec_instance["Id"], detach=True)
        except SessionError as e:
            logger.warning("exec_kill_failed", container=ref.name, error=str(e))

    # ------------------------------------------------------------------
    # Files and environment setup
    # ------------------------------------------------------------------

    async def put_file(
        self, ref: ContainerRef, path: str, data: bytes | str, mode: int = 0o644
    ) -> None:
        """Write ``data`` to ``path`` inside the container."""
        if isinstance(data, str):
            data = data.encode("utf-8")

        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo(name=posixpath.basename(path))
            info.size = len(data)
            info.mode = mode
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))

        ok = await engine_call(
            self.client.api.put_archive, ref.id, posixpath.dirname(path) or "/", buf.getvalue()
        )
        if not ok:
            raise EngineError(f"Failed to write {path} in {ref.name}")

    async def prepare_coding_environment(self, ref: ContainerRef, persistent: bool = True) -> None:
        """Configure Claude and git, and link auth state into the user volume."""
        await self.exec_command(
            ref,
            ["sh", "-c", "echo '{ \"hasCompletedOnboarding\": true }' > /root/.claude.json"],
        )
        await self.exec_command(
            ref,
            [
                "sh",
                "-c",
                '/opt/entrypoint.sh -c "nvm use default && claude config set hasTrustDialogAccepted true"',
            ],
        )
        await self.exec_command(ref, ["git", "config", "--global", "user.email", "noreply@anthropic.com"])
        await self.exec_command(ref, ["git", "config", "--global", "user.name", "Claude"])

        if not persistent:
            await self._write_claude_settings(ref, "/root/.claude")
            logger.info("coding_environment_prepared", container=ref.name, persistent=False)
            return

        vol = VOLUME_MOUNT_TARGET
        await self.exec_command(
            ref,
            [
                "sh",
                "-c",
                f"mkdir -p {vol}/claude {vol}/gh /root/.config"
                " && rm -rf /root/.claude /root/.config/gh",
            ],
        )
        # Keep an existing claude.json from earlier sessions
        await self.exec_command(
            ref,
            [
                "sh",
                "-c",
                f"test -f {vol}/claude.json || cp /root/.claude.json {vol}/claude.json;"
                " rm -f /root/.claude.json",
            ],
        )
        await self.exec_command(
            ref,
            [
                "sh",
                "-c",
                f"ln -sf {vol}/claude /root/.claude"
                f" && ln -sf {vol}/gh /root/.config/gh"
                f" && ln -sf {vol}/claude.json /root/.claude.json",
            ],
        )
        await self._write_claude_settings(ref, f"{vol}/claude")
        logger.info("coding_environment_prepared", container=ref.name, persistent=True)

    async def _write_claude_settings(self, ref: ContainerRef, claude_dir: str) -> None:
        await self.exec_command(ref, ["mkdir", "-p", claude_dir])
        await self.put_file(
            ref, f"{claude_dir}/settings.json", json.dumps(CLAUDE_SETTINGS, indent=2)
        )

    # ------------------------------------------------------------------
    # Lookup and teardown
    # ------------------------------------------------------------------

    async def get_container(self, name: str) -> ContainerRef:
        """Return a running container by name.

        Raises:
            NotFound: No container with that name exists
            ContainerExited: The container exists but is not running
        """
        validate_volume_key(name)
        container = await engine_call(self.client.containers.get, name)
        if container.status != "running":
            raise ContainerExited(name, container.status)
        return ContainerRef(id=container.id, name=name, state=ContainerState.RUNNING)

    async def clear_coding_session(self, name: str) -> bool:
        """Stop and remove the named container; its volume is kept.

        Returns:
            True if a container was removed, False if none existed
        """
        validate_volume_key(name)
        try:
            container = await engine_call(self.client.containers.get, name)
        except NotFound:
            logger.debug("session_container_absent", container=name)
            return False

        try:
            await engine_call(container.stop, timeout=self.stop_timeout)
        except NotFound:
            return False
        except SessionError as e:
            logger.debug("session_container_stop_failed", container=name, error=str(e))

        try:
            await engine_call(container.remove, force=True)
        except NotFound:
            return False

        logger.info("session_container_removed", container=name)
        return True

    async def clear_all_session_containers(self, prefix: str = SESSION_CONTAINER_PREFIX) -> int:
        """Remove every container whose name starts with ``prefix``.

        Failures on individual containers are logged and skipped.

        Returns:
            Number of containers removed
        """
        containers = await engine_call(
            self.client.containers.list, all=True, filters={"name": prefix}
        )
        removed = 0
        for container in containers:
            # The name filter is a substring match, so check the prefix here
            name = (container.name or "").lstrip("/")
            if not name.startswith(prefix):
                continue
            try:
                await engine_call(container.remove, force=True)
                removed += 1
            except SessionError as e:
                logger.warning("session_container_cleanup_failed", container=name, error=str(e))

        logger.info("session_containers_cleared", prefix=prefix, removed=removed)
        return removed

    def close(self) -> None:
        self.client.close()
