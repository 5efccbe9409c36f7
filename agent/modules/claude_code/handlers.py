"""Command handlers shared by every chat front-end.

Each handler takes the process ``BotState`` and the user's id and returns a
``HandlerResult`` with markdown text. Handlers that start an authentication
handshake also take a ``notify`` coroutine used to report the outcome once
the background handshake finishes.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from modules.claude_code.auth_sessions import (
    AuthOutcome,
    AuthProvider,
    AuthResult,
    AuthSession,
)
from modules.claude_code.claude_cli import ClaudeCli
from modules.claude_code.claude_sessions import ClaudeSession, SessionStatus
from modules.claude_code.errors import (
    CommandFailed,
    CommandTimedOut,
    ContainerExited,
    EngineError,
    EngineUnavailable,
    InvalidName,
    InvalidTransition,
    NoActiveSession,
    NotFound,
    SessionBusy,
    SessionError,
    SessionTimeout,
)
from modules.claude_code.github import (
    GithubClient,
    device_flow_provider,
    format_repository_list,
)
from modules.claude_code.lifecycle import (
    ContainerRef,
    generate_container_name,
    session_container_config,
)
from modules.claude_code.oauth import ClaudeOAuthFlow, parse_credentials_json, token_expiry
from modules.claude_code.stream import ClaudeEvent, format_event, format_summary
from modules.claude_code.state import BotState
from shared.schemas.messages import HandlerResult

logger = structlog.get_logger()

NotifyFn = Callable[[str], Awaitable[None]]

NO_SESSION_TEXT = "❌ No active coding session found. Start one with /start."


def is_authentication_code(text: str) -> bool:
    """Heuristically decide whether ``text`` is a pasted authorization code.

    Accepts 6-128 characters of ``[A-Za-z0-9-_.#]`` with at least six
    alphanumerics. A ``code#state`` value must have two parts of at least
    20 characters each.
    """
    text = text.strip()
    if not 6 <= len(text) <= 128:
        return False
    if not all(c.isascii() and (c.isalnum() or c in "-_.#") for c in text):
        return False
    if sum(c.isalnum() for c in text) < 6:
        return False
    if "#" in text:
        parts = text.split("#")
        return len(parts) == 2 and all(len(p) >= 20 for p in parts)
    return True


def describe_error(error: SessionError) -> str:
    """Render a core error for the user."""
    if isinstance(error, InvalidName):
        return "The session name is invalid."
    if isinstance(error, SessionBusy):
        return "A session is already starting. Please wait for it to finish."
    if isinstance(error, EngineUnavailable):
        return "The container engine is unavailable. Please try again later."
    if isinstance(error, EngineError):
        return f"Container engine error: {error}"
    if isinstance(error, (NotFound, ContainerExited)):
        return "No active coding session found. Start one with /start."
    if isinstance(error, CommandFailed):
        return f"Command failed: {error.result.output or error}"
    if isinstance(error, SessionTimeout):
        return f"Timed out: {error}"
    if isinstance(error, NoActiveSession):
        return "No authentication is in progress."
    return str(error)


async def _session_ref(state: BotState, user_id: int) -> ContainerRef:
    name = generate_container_name(user_id, state.settings.container_prefix)
    return await state.containers.get_container(name)


def _claude_cli(state: BotState, ref: ContainerRef) -> ClaudeCli:
    return ClaudeCli(state.containers, ref, timeout=state.settings.exec_timeout)


def _github(state: BotState, ref: ContainerRef) -> GithubClient:
    return GithubClient(state.containers, ref, timeout=state.settings.exec_timeout)


async def _discard_container(state: BotState, name: str) -> None:
    try:
        await state.containers.clear_coding_session(name)
    except SessionError as e:
        logger.warning("session_container_discard_failed", container=name, error=str(e))


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


async def handle_start(state: BotState, user_id: int) -> HandlerResult:
    """Start (or restart) the user's coding session container."""
    settings = state.settings
    try:
        async with state.claude_sessions.start_guard(user_id):
            # A pending handshake belongs to the container being replaced
            try:
                await state.auth_sessions.cancel(user_id)
            except NoActiveSession:
                pass

            await state.claude_sessions.get_or_create(user_id)
            await state.claude_sessions.set_status(user_id, SessionStatus.STARTING)

            config = session_container_config(
                user_id,
                image=settings.session_image,
                prefix=settings.container_prefix,
                gh_token=settings.gh_token,
                cpu_limit=settings.session_cpu_limit,
                memory_limit=settings.session_memory_limit,
            )
            try:
                ref = await state.containers.start_coding_session(config)
                await state.containers.wait_for_container_ready(
                    ref,
                    timeout=settings.ready_timeout,
                    interval=settings.ready_poll_interval,
                    probe=config.readiness_probe,
                )
                await state.containers.prepare_coding_environment(ref, persistent=True)
            except SessionError:
                await _discard_container(state, config.name)
                try:
                    await state.claude_sessions.set_status(user_id, SessionStatus.FAILED)
                except InvalidTransition:
                    # Cleared while starting
                    pass
                raise

            await state.claude_sessions.set_status(
                user_id,
                SessionStatus.READY,
                container_id=ref.id,
                working_directory=None,
                conversation_id=None,
            )
    except SessionError as e:
        logger.error("start_session_failed", user_id=user_id, error=str(e))
        return HandlerResult(
            text=f"❌ Failed to start coding session: {describe_error(e)}", ok=False
        )

    logger.info("coding_session_ready", user_id=user_id, container=ref.name)
    return HandlerResult(
        text=(
            "🚀 **Coding session started!**\n\n"
            f"Container `{ref.name}` is ready.\n\n"
            "Next steps:\n"
            "• /authenticateclaude to log in to Claude\n"
            "• /githubauth to log in to GitHub\n"
            "• /githubrepolist to see your repositories"
        )
    )


async def handle_clear_session(state: BotState, user_id: int) -> HandlerResult:
    """Cancel any pending login, remove the container and forget the session."""
    try:
        await state.auth_sessions.cancel(user_id)
    except NoActiveSession:
        pass

    name = generate_container_name(user_id, state.settings.container_prefix)
    try:
        removed = await state.containers.clear_coding_session(name)
    except SessionError as e:
        logger.error("clear_session_failed", user_id=user_id, error=str(e))
        return HandlerResult(text=f"❌ Failed to clear session: {describe_error(e)}", ok=False)

    session = await state.claude_sessions.get(user_id)
    if session is not None and session.status is not SessionStatus.CLEARED:
        await state.claude_sessions.set_status(
            user_id, SessionStatus.CLEARED, container_id=None, conversation_id=None
        )
    if not removed:
        return HandlerResult(text="ℹ️ No active session to clear.")
    return HandlerResult(
        text="🧹 Session cleared. Your login data is kept for the next /start."
    )


async def handle_claude_status(state: BotState, user_id: int) -> HandlerResult:
    try:
        ref = await _session_ref(state, user_id)
        cli = _claude_cli(state, ref)
        version = await cli.check_availability()
        authenticated = await cli.has_credentials()
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    auth_line = "✅ Logged in" if authenticated else "❌ Not logged in, use /authenticateclaude"
    return HandlerResult(
        text=f"**Claude Code Status**\n\nVersion: `{version}`\nAuthentication: {auth_line}"
    )


async def handle_update_claude(state: BotState, user_id: int) -> HandlerResult:
    try:
        ref = await _session_ref(state, user_id)
        result = await _claude_cli(state, ref).update()
    except (NotFound, ContainerExited):
        return HandlerResult(text=NO_SESSION_TEXT, ok=False)
    except SessionError as e:
        logger.error("claude_update_failed", user_id=user_id, error=str(e))
        return HandlerResult(text=f"❌ Failed to update Claude CLI: {describe_error(e)}", ok=False)

    lines = result.stdout.strip().splitlines()
    version = lines[-1] if lines else "unknown"
    return HandlerResult(text=f"✅ Claude CLI updated.\n\nVersion: `{version}`")


async def handle_debug_claude_login(state: BotState, user_id: int) -> HandlerResult:
    """Summarize the stored Claude credentials without revealing any token."""
    try:
        ref = await _session_ref(state, user_id)
        raw = await _claude_cli(state, ref).read_credentials()
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    pending = await state.auth_sessions.has_session(user_id)
    pending_line = f"Login in progress: {'yes' if pending else 'no'}"
    if raw is None:
        return HandlerResult(
            text=(
                "🔍 **Claude login diagnostics**\n\n"
                "No credentials file found. Use /authenticateclaude to log in.\n"
                f"{pending_line}"
            )
        )

    oauth = parse_credentials_json(raw)
    if oauth is None:
        return HandlerResult(
            text=(
                "🔍 **Claude login diagnostics**\n\n"
                "⚠️ The credentials file is not valid. Run /authenticateclaude again.\n"
                f"{pending_line}"
            ),
            ok=False,
        )

    expires_at, expired = token_expiry(oauth)
    expiry = expires_at.strftime("%Y-%m-%d %H:%M UTC") if expires_at else "unknown"
    lines = [
        "🔍 **Claude login diagnostics**",
        "",
        f"Access token: {'❌ expired' if expired else '✅ valid'} (expires {expiry})",
        f"Refresh token: {'present' if oauth.get('refreshToken') else 'missing'}",
        f"Scopes: {', '.join(oauth.get('scopes') or []) or 'none'}",
    ]
    if oauth.get("subscriptionType"):
        lines.append(f"Subscription: {oauth['subscriptionType']}")
    lines.append(pending_line)
    return HandlerResult(text="\n".join(lines))


# ---------------------------------------------------------------------------
# Claude conversation
# ---------------------------------------------------------------------------


async def handle_new_conversation(state: BotState, user_id: int) -> HandlerResult:
    """Forget the Claude conversation so the next message starts a fresh one."""
    try:
        await _session_ref(state, user_id)
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    if await state.claude_sessions.update(user_id, conversation_id=None) is None:
        return HandlerResult(text=NO_SESSION_TEXT, ok=False)
    return HandlerResult(
        text=(
            "🤖 **Starting a new Claude conversation!**\n\n"
            "Send me any message (without a command) and I'll forward it to Claude."
        )
    )


async def handle_claude_prompt(
    state: BotState, user_id: int, text: str, notify: NotifyFn
) -> Optional[HandlerResult]:
    """Run ``text`` as a Claude prompt in the user's container.

    Progress (assistant text, tool calls, tool results) is sent through
    ``notify`` while Claude works; the returned result carries the final
    answer. Returns None when the user has no ready session, so the
    front-end can treat the text as an ordinary message.
    """
    session = await state.claude_sessions.get(user_id)
    if session is None or session.status is not SessionStatus.READY:
        return None

    conversation_id = session.conversation_id

    async def relay(event: ClaudeEvent) -> None:
        nonlocal conversation_id
        if event.conversation_id and event.conversation_id != conversation_id:
            conversation_id = event.conversation_id
            await state.claude_sessions.update(user_id, conversation_id=conversation_id)
        message = format_event(event)
        if message is None:
            return
        try:
            await notify(message)
        except Exception as e:
            logger.error("claude_progress_notify_failed", user_id=user_id, error=str(e))

    try:
        async with state.claude_sessions.prompt_guard(user_id):
            ref = await _session_ref(state, user_id)
            outcome = await _claude_cli(state, ref).run_prompt(
                text,
                relay,
                conversation_id=session.conversation_id,
                timeout=state.settings.prompt_timeout,
                workdir=session.working_directory,
            )
    except SessionBusy:
        return HandlerResult(
            text="⏳ Claude is still working on your previous message.", ok=False
        )
    except CommandTimedOut:
        return HandlerResult(
            text=f"⏱️ Claude did not finish within {state.settings.prompt_timeout:g}s.",
            ok=False,
        )
    except CommandFailed as e:
        detail = e.result.stderr.strip() or e.result.stdout.strip() or "no output"
        return HandlerResult(text=f"❌ Claude command failed: {detail[-1000:]}", ok=False)
    except SessionError as e:
        return HandlerResult(text=f"❌ Claude command failed: {describe_error(e)}", ok=False)

    if outcome.result is None:
        return HandlerResult(text="✅ Claude finished without a final message.")
    summary = format_summary(outcome.result)
    if outcome.failed:
        return HandlerResult(
            text=f"❌ **Claude reported an error** ({summary})\n\n{outcome.result.text}",
            ok=False,
        )
    return HandlerResult(text=f"{outcome.result.text}\n\n✅ {summary}")


# ---------------------------------------------------------------------------
# Authentication handshakes
# ---------------------------------------------------------------------------


def _outcome_text(label: str, outcome: AuthOutcome) -> str:
    if outcome.result is AuthResult.SUCCESS:
        who = f" as {outcome.reason}" if outcome.reason else ""
        return f"✅ {label} authentication complete{who}."
    if outcome.result is AuthResult.CANCELLED:
        return f"⚠️ {label} authentication cancelled."
    return f"❌ {label} authentication failed: {outcome.reason}"


async def _run_handshake(
    state: BotState,
    user_id: int,
    auth: AuthSession,
    provider: AuthProvider,
    notify: NotifyFn,
    label: str,
) -> AuthOutcome:
    try:
        outcome = await asyncio.wait_for(
            provider(auth.codes, auth.cancel), state.settings.auth_timeout
        )
    except asyncio.TimeoutError:
        auth.cancel.fire()
        outcome = AuthOutcome(AuthResult.FAILED, "timed out waiting for login")
    except SessionError as e:
        outcome = AuthOutcome(AuthResult.FAILED, str(e))
    finally:
        await state.auth_sessions.discard(user_id, auth)

    logger.info(
        "auth_handshake_finished",
        user_id=user_id,
        provider=label,
        result=outcome.result.value,
        abandoned=auth.abandoned,
    )
    # Whoever abandoned the handshake now owns the session status
    if auth.abandoned:
        return outcome

    await state.claude_sessions.finish_authentication(
        user_id, outcome.succeeded, is_current=lambda: not auth.abandoned
    )
    if auth.abandoned:
        return outcome
    try:
        await notify(_outcome_text(label, outcome))
    except Exception as e:
        logger.error("auth_notify_failed", user_id=user_id, error=str(e))
    return outcome


async def _begin_handshake(
    state: BotState,
    user_id: int,
    ref: ContainerRef,
    provider: AuthProvider,
    notify: NotifyFn,
    label: str,
) -> AuthSession:
    session = await state.claude_sessions.get(user_id)
    if session is None:
        # Container outlived the registry entry (e.g. cleanup disabled on restart)
        session = ClaudeSession(
            user_id=user_id,
            container_name=ref.name,
            volume_name=state.containers.volumes.volume_name(user_id),
            status=SessionStatus.READY,
            container_id=ref.id,
        )
        await state.claude_sessions.upsert(session)
    elif session.status is SessionStatus.STARTING:
        raise SessionBusy(f"Session for user {user_id} is still starting")

    # Register first so the previous handshake is abandoned before the status
    # is claimed for the new one
    auth = await state.auth_sessions.register(user_id, ref.name)
    try:
        await state.claude_sessions.set_status(user_id, SessionStatus.AUTHENTICATING)
    except SessionError:
        await state.auth_sessions.discard(user_id, auth)
        auth.abandon()
        raise
    state.spawn(
        _run_handshake(state, user_id, auth, provider, notify, label),
        name=f"auth-{label.lower()}-{user_id}",
    )
    return auth


async def handle_authenticate(state: BotState, user_id: int, notify: NotifyFn) -> HandlerResult:
    """Start the Claude OAuth login; the user pastes the code back as text."""
    try:
        ref = await _session_ref(state, user_id)
        flow = ClaudeOAuthFlow(state.containers, ref)
        await _begin_handshake(state, user_id, ref, flow, notify, "Claude")
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    return HandlerResult(
        text=(
            "🔐 **Claude Account Authentication**\n\n"
            f"1. Open [this link]({flow.authorize_url}) and approve access\n"
            "2. Copy the code shown after login\n"
            "3. Paste it here as a message\n\n"
            f"The link expires in {int(state.settings.auth_timeout // 60)} minutes."
        )
    )


async def handle_auth_code_text(
    state: BotState, user_id: int, text: str
) -> Optional[HandlerResult]:
    """Route plain text to a pending handshake.

    Returns None when no handshake is pending, so the front-end can treat the
    text as an ordinary message.
    """
    if not await state.auth_sessions.has_session(user_id):
        return None

    if not is_authentication_code(text):
        return HandlerResult(
            text=(
                "🔐 Authentication in progress. Paste the code shown after login, "
                "or use /clearsession to cancel."
            ),
            ok=False,
        )

    try:
        await state.auth_sessions.deliver_code(user_id, text.strip())
    except NoActiveSession as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)
    return HandlerResult(text="🔑 Code received, completing authentication...")


async def handle_github_auth(state: BotState, user_id: int, notify: NotifyFn) -> HandlerResult:
    """Start the GitHub device flow inside the session container."""
    try:
        ref = await _session_ref(state, user_id)
        client = _github(state, ref)
        result, handle = await client.start_login()
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    if handle is None:
        if result.authenticated:
            who = f" as **{result.username}**" if result.username else ""
            return HandlerResult(text=f"✅ Already authenticated with GitHub{who}.")
        return HandlerResult(text=f"❌ GitHub login failed: {result.message}", ok=False)

    try:
        await _begin_handshake(
            state, user_id, ref, device_flow_provider(client, handle), notify, "GitHub"
        )
    except SessionError as e:
        await handle.terminate()
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    return HandlerResult(
        text=(
            "🔗 **GitHub Authentication**\n\n"
            f"1. Open {result.oauth_url}\n"
            f"2. Enter the code `{result.device_code}`\n\n"
            "I'll let you know when the login completes."
        )
    )


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


async def handle_github_status(state: BotState, user_id: int) -> HandlerResult:
    try:
        ref = await _session_ref(state, user_id)
        result = await _github(state, ref).check_auth_status()
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    if not result.authenticated:
        return HandlerResult(text="❌ Not authenticated with GitHub. Use /githubauth to log in.")
    who = f" as **{result.username}**" if result.username else ""
    return HandlerResult(text=f"✅ Authenticated with GitHub{who}.")


async def handle_repo_list(state: BotState, user_id: int) -> HandlerResult:
    try:
        ref = await _session_ref(state, user_id)
        repos = await _github(state, ref).repo_list()
    except SessionError as e:
        return HandlerResult(text=f"❌ Failed to list repositories: {describe_error(e)}", ok=False)

    if not repos:
        return HandlerResult(text="📂 No repositories found.")
    return HandlerResult(
        text=f"📂 **Your repositories**\n\n{format_repository_list(repos)}"
    )


async def handle_clone(state: BotState, user_id: int, repository: str) -> HandlerResult:
    repository = repository.strip()
    if not repository:
        return HandlerResult(text="Usage: /githubclone owner/repository", ok=False)

    try:
        ref = await _session_ref(state, user_id)
        result = await _github(state, ref).repo_clone(repository)
    except InvalidName:
        return HandlerResult(text=f"❌ Invalid repository name: `{repository}`", ok=False)
    except SessionError as e:
        return HandlerResult(text=f"❌ {describe_error(e)}", ok=False)

    if not result.success:
        return HandlerResult(text=f"❌ {result.message}", ok=False)

    await state.claude_sessions.update(user_id, working_directory=result.target_directory)
    return HandlerResult(
        text=f"✅ Cloned **{repository}** into `{result.target_directory}`."
    )
