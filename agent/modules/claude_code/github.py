"""GitHub CLI (``gh``) operations inside a session container."""

from __future__ import annotations

import asyncio
import posixpath
import re
from dataclasses import dataclass
from typing import Optional

import structlog

from modules.claude_code.auth_sessions import (
    AuthOutcome,
    AuthProvider,
    AuthResult,
    CancelSignal,
    CodeChannel,
)
from modules.claude_code.errors import InvalidName, SessionError
from modules.claude_code.lifecycle import (
    WORKSPACE_DIR,
    BackgroundExec,
    ContainerManager,
    ContainerRef,
)

logger = structlog.get_logger()

DEVICE_LOGIN_URL = "https://github.com/login/device"
REPO_LIST_LIMIT = 50
# How long to wait for gh to print the device code
DEVICE_CODE_TIMEOUT = 30.0

_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)?$")
_DEVICE_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4,}-[A-Za-z0-9]{4,}$")
_USERNAME_PATTERN = re.compile(r"Logged in to github\.com (?:as|account) (\S+)")


@dataclass
class GithubAuthResult:
    authenticated: bool
    username: Optional[str] = None
    message: str = ""
    oauth_url: Optional[str] = None
    device_code: Optional[str] = None


@dataclass
class GithubCloneResult:
    success: bool
    repository: str
    target_directory: str
    message: str


@dataclass
class Repository:
    name: str
    description: str = ""
    visibility: str = ""


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def parse_oauth_response(output: str) -> tuple[Optional[str], Optional[str]]:
    """Extract the device login URL and one-time code from ``gh auth login``."""
    oauth_url = None
    device_code = None
    for line in output.splitlines():
        line = line.strip()
        if DEVICE_LOGIN_URL in line:
            oauth_url = line[line.index(DEVICE_LOGIN_URL):].split()[0]
        if device_code is None and "code" in line.lower():
            for word in line.split():
                if _DEVICE_CODE_PATTERN.match(word) and "time" not in word.lower():
                    device_code = word
                    break
    return oauth_url, device_code


def extract_username(output: str) -> Optional[str]:
    match = _USERNAME_PATTERN.search(output)
    if not match:
        return None
    return match.group(1).strip("().,")


def parse_repository_list(output: str) -> list[Repository]:
    """Parse the tab separated output of ``gh repo list``."""
    repos = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = line.split("\t")
        repos.append(
            Repository(
                name=fields[0].strip(),
                description=fields[1].strip() if len(fields) > 1 else "",
                visibility=fields[2].strip() if len(fields) > 2 else "",
            )
        )
    return repos


def format_repository_list(repos: list[Repository]) -> str:
    lines = []
    for repo in repos:
        line = f"• [{repo.name}](https://github.com/{repo.name})"
        if repo.description:
            line += f" - {repo.description}"
        lines.append(line)
    return "\n".join(lines)


def analyze_clone_failure(output: str) -> str:
    lowered = output.lower()
    if "not found" in lowered:
        return "Repository not found. Please check the repository name and your access permissions."
    if "permission denied" in lowered or "authentication" in lowered:
        return (
            "Permission denied. Please ensure you're authenticated with GitHub "
            "and have access to this repository."
        )
    if "already exists" in lowered:
        return "Directory already exists. Remove it or clone into a different directory."
    if "network" in lowered or "connection" in lowered:
        return "Network error. Please check connectivity and try again."
    if not output.strip():
        return "Clone failed with no error message. The repository may not exist or you may not have access."
    return f"Clone failed: {output.strip()}"


def validate_repository(repository: str) -> None:
    """Accept ``owner/repo`` or ``repo``.

    Raises:
        InvalidName: If the reference could be read as an option or a path
    """
    if (
        not repository
        or len(repository) > 200
        or ".." in repository
        or repository.startswith(("-", "."))
        or not _REPO_PATTERN.match(repository)
    ):
        raise InvalidName(f"Invalid repository: {repository!r}")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GithubClient:
    """Runs ``gh`` commands in a user's session container."""

    def __init__(
        self,
        containers: ContainerManager,
        ref: ContainerRef,
        working_dir: str = WORKSPACE_DIR,
        timeout: float = 60.0,
    ):
        self.containers = containers
        self.ref = ref
        self.working_dir = working_dir
        self.timeout = timeout

    async def check_auth_status(self) -> GithubAuthResult:
        result = await self.containers.exec_command(
            self.ref,
            ["gh", "auth", "status"],
            timeout=self.timeout,
            allow_failure=True,
            workdir=self.working_dir,
        )
        if result.exit_code != 0:
            return GithubAuthResult(authenticated=False, message="Not authenticated with GitHub")
        return GithubAuthResult(
            authenticated=True,
            username=extract_username(result.stdout + result.stderr),
            message="Authenticated with GitHub",
        )

    async def start_login(self) -> tuple[GithubAuthResult, Optional[BackgroundExec]]:
        """Begin the device flow and return as soon as the code is printed.

        The returned handle keeps running until the user completes the flow
        in a browser. It is None when the user was already authenticated.
        """
        status = await self.check_auth_status()
        if status.authenticated:
            return status, None

        handle = await self.containers.start_background_exec(
            self.ref,
            ["gh", "auth", "login", "--hostname", "github.com", "--git-protocol", "https", "--web"],
        )

        def _has_credentials(text: str) -> bool:
            url, code = parse_oauth_response(text)
            return url is not None and code is not None

        output = await handle.wait_for_output(_has_credentials, DEVICE_CODE_TIMEOUT)
        if output is None:
            await handle.terminate()
            logger.warning("github_device_code_not_found", output=handle.output[-500:])
            return (
                GithubAuthResult(
                    authenticated=False,
                    message="Timed out waiting for the GitHub device code",
                ),
                None,
            )

        url, code = parse_oauth_response(output)
        logger.info("github_device_flow_started", container=self.ref.name)
        return (
            GithubAuthResult(
                authenticated=False,
                message=f"Please visit {url} and enter code: {code}",
                oauth_url=url,
                device_code=code,
            ),
            handle,
        )

    async def repo_list(self) -> list[Repository]:
        result = await self.containers.exec_command(
            self.ref,
            ["gh", "repo", "list", "--limit", str(REPO_LIST_LIMIT)],
            timeout=self.timeout,
            workdir=self.working_dir,
        )
        return parse_repository_list(result.stdout)

    async def repo_clone(
        self, repository: str, target_dir: Optional[str] = None
    ) -> GithubCloneResult:
        validate_repository(repository)
        target = target_dir or repository.rstrip("/").split("/")[-1]
        validate_repository(target)

        result = await self.containers.exec_command(
            self.ref,
            ["gh", "repo", "clone", repository, target],
            timeout=max(self.timeout, 300.0),
            allow_failure=True,
            workdir=self.working_dir,
        )
        target_directory = posixpath.join(self.working_dir, target)
        if result.exit_code != 0:
            message = analyze_clone_failure(result.output)
            logger.warning("github_clone_failed", repository=repository, message=message)
            return GithubCloneResult(False, repository, target_directory, message)

        logger.info("github_clone_complete", repository=repository, target=target_directory)
        return GithubCloneResult(
            True, repository, target_directory, f"Successfully cloned {repository}"
        )


def device_flow_provider(client: GithubClient, handle: BackgroundExec) -> AuthProvider:
    """Wait for the running ``gh auth login`` to finish or be cancelled."""

    async def provider(codes: CodeChannel, cancel: CancelSignal) -> AuthOutcome:
        finished = asyncio.ensure_future(handle.wait())
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {finished, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if finished not in done:
                return AuthOutcome(AuthResult.CANCELLED, "GitHub login cancelled")

            result = finished.result()
            status = await client.check_auth_status()
            if status.authenticated:
                return AuthOutcome(AuthResult.SUCCESS, status.username or "")
            return AuthOutcome(
                AuthResult.FAILED, result.output or "gh auth login did not complete"
            )
        except SessionError as e:
            return AuthOutcome(AuthResult.FAILED, str(e))
        finally:
            for fut in (finished, cancelled):
                if not fut.done():
                    fut.cancel()
            await handle.terminate()

    return provider
