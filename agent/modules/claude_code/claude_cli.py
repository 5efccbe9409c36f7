"""Helpers for the Claude Code CLI installed in the session image."""

from __future__ import annotations

import asyncio
import shlex
from typing import Awaitable, Callable, Optional

import structlog

from modules.claude_code.errors import CommandFailed, CommandTimedOut
from modules.claude_code.lifecycle import ContainerManager, ContainerRef, ExecResult
from modules.claude_code.stream import ClaudeEvent, EventKind, PromptOutcome, parse_stream_line

logger = structlog.get_logger()

ENTRYPOINT = "/opt/entrypoint.sh"
CLAUDE_PACKAGE = "@anthropic-ai/claude-code"
CREDENTIALS_PATH = "/root/.claude/.credentials.json"

EventHandler = Callable[[ClaudeEvent], Awaitable[None]]


def node_command(command: str) -> list[str]:
    """Run ``command`` through the image entrypoint with the default node selected."""
    inner = f"nvm use default >/dev/null && {command}"
    return ["sh", "-c", f"{ENTRYPOINT} -c {shlex.quote(inner)}"]


def prompt_command(prompt: str, conversation_id: Optional[str] = None) -> list[str]:
    """``claude --print`` with streamed JSON output, resuming a conversation if given."""
    args = ["claude", "--print", "--verbose", "--output-format", "stream-json"]
    if conversation_id:
        args += ["--resume", conversation_id]
    args.append(prompt)
    return node_command(shlex.join(args))


class ClaudeCli:
    """Runs ``claude`` inside a user's session container."""

    def __init__(self, containers: ContainerManager, ref: ContainerRef, timeout: float = 120.0):
        self.containers = containers
        self.ref = ref
        self.timeout = timeout

    async def check_availability(self) -> str:
        result = await self.containers.exec_command(
            self.ref, node_command("claude --version"), timeout=self.timeout
        )
        return result.stdout.strip()

    async def has_credentials(self) -> bool:
        result = await self.containers.exec_command(
            self.ref,
            ["test", "-s", CREDENTIALS_PATH],
            timeout=self.timeout,
            allow_failure=True,
        )
        return result.exit_code == 0

    async def read_credentials(self) -> Optional[str]:
        """Raw credentials file contents, None if the file is missing."""
        result = await self.containers.exec_command(
            self.ref, ["cat", CREDENTIALS_PATH], timeout=self.timeout, allow_failure=True
        )
        return result.stdout if result.exit_code == 0 else None

    async def update(self, timeout: float = 300.0) -> ExecResult:
        """Install the latest CLI release with npm."""
        logger.info("claude_cli_update_started", container=self.ref.name)
        result = await self.containers.exec_command(
            self.ref,
            node_command(f"npm install -g {CLAUDE_PACKAGE}@latest && claude --version"),
            timeout=timeout,
        )
        logger.info("claude_cli_updated", container=self.ref.name)
        return result

    async def run_prompt(
        self,
        prompt: str,
        on_event: EventHandler,
        conversation_id: Optional[str] = None,
        timeout: float = 600.0,
        workdir: Optional[str] = None,
    ) -> PromptOutcome:
        """Run one prompt, passing each parsed event to ``on_event`` as it arrives.

        Raises:
            CommandTimedOut: Claude was still running after ``timeout``
            CommandFailed: The CLI exited non-zero without a result message
        """
        command = prompt_command(prompt, conversation_id)
        handle = await self.containers.start_background_exec(self.ref, command, workdir=workdir)
        outcome = PromptOutcome(conversation_id=conversation_id)
        logger.info(
            "claude_prompt_started",
            container=self.ref.name,
            resumed=conversation_id is not None,
        )

        async def consume() -> None:
            async for line in handle.stdout_lines():
                event = parse_stream_line(line)
                if event is None:
                    continue
                outcome.events.append(event)
                if event.conversation_id:
                    outcome.conversation_id = event.conversation_id
                if event.kind is EventKind.RESULT:
                    outcome.result = event
                await on_event(event)

        try:
            await asyncio.wait_for(consume(), timeout)
        except asyncio.TimeoutError:
            await handle.terminate()
            logger.warning("claude_prompt_timed_out", container=self.ref.name, timeout=timeout)
            raise CommandTimedOut(
                command, timeout, ExecResult(stdout=handle.output, timed_out=True)
            ) from None
        except BaseException:
            await handle.terminate()
            raise

        result = await handle.wait(timeout=self.timeout)
        outcome.exit_code = result.exit_code
        outcome.stderr = result.stderr
        if outcome.result is None and result.exit_code != 0:
            logger.error(
                "claude_prompt_failed",
                container=self.ref.name,
                exit_code=result.exit_code,
                stderr=result.stderr[-500:],
            )
            raise CommandFailed(command, result)

        logger.info(
            "claude_prompt_finished",
            container=self.ref.name,
            exit_code=result.exit_code,
            is_error=outcome.failed,
        )
        return outcome
