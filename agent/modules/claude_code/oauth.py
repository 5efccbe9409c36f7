"""Claude account login via OAuth (PKCE) with a pasted authorization code.

The user opens the authorize URL, approves access, and pastes the code shown
on the callback page back into the chat. The code arrives through the auth
session's ``CodeChannel``; the resulting credentials are written into the
session container where the Claude CLI looks for them.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
import structlog

from modules.claude_code.auth_sessions import (
    AuthOutcome,
    AuthResult,
    CancelSignal,
    CodeChannel,
)
from modules.claude_code.errors import SessionError
from modules.claude_code.lifecycle import ContainerManager, ContainerRef
from modules.claude_code.volume import VOLUME_MOUNT_TARGET

logger = structlog.get_logger()

# Public client ID of the Claude Code CLI
CLAUDE_CODE_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"

AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
SCOPES = ("user:inference", "user:profile", "user:sessions:claude_code")
TOKEN_TIMEOUT = 15.0
DEFAULT_TOKEN_LIFETIME = 8 * 3600

# /root/.claude is a symlink into the user volume, write to the real path
CREDENTIALS_PATH = f"{VOLUME_MOUNT_TARGET}/claude/.credentials.json"

# Optional token response fields copied into the credentials file
_OPTIONAL_FIELDS = {
    "subscriptionType": ("subscriptionType", "subscription_type"),
    "rateLimitTier": ("rateLimitTier", "rate_limit_tier"),
}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """Return a fresh ``(verifier, challenge)`` pair using the S256 method."""
    verifier = secrets.token_urlsafe(64)
    return verifier, _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def build_authorize_url(challenge: str, state: str) -> str:
    query = urlencode(
        [
            ("code", "true"),
            ("client_id", CLAUDE_CODE_CLIENT_ID),
            ("response_type", "code"),
            ("redirect_uri", REDIRECT_URI),
            ("scope", " ".join(SCOPES)),
            ("code_challenge", challenge),
            ("code_challenge_method", "S256"),
            ("state", state),
        ]
    )
    return AUTHORIZE_URL + "?" + query


async def exchange_code(code: str, verifier: str, state: str = "") -> dict:
    """Trade an authorization code for tokens.

    Raises:
        ValueError: The token endpoint did not accept the code
    """
    body = dict(
        grant_type="authorization_code",
        code=code,
        client_id=CLAUDE_CODE_CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        code_verifier=verifier,
    )
    if state:
        body["state"] = state

    async with httpx.AsyncClient(timeout=TOKEN_TIMEOUT) as http:
        response = await http.post(TOKEN_URL, json=body)

    if response.status_code != 200:
        detail = response.text[:200]
        logger.warning("token_exchange_rejected", status=response.status_code, detail=detail)
        raise ValueError(f"Token exchange failed ({response.status_code}): {detail}")
    return response.json()


def build_credentials_json(token_data: dict) -> str:
    """Serialize tokens as the ``.credentials.json`` the Claude CLI reads."""
    lifetime = token_data.get("expires_in", DEFAULT_TOKEN_LIFETIME)
    oauth = {
        "accessToken": token_data["access_token"],
        "refreshToken": token_data.get("refresh_token", ""),
        "expiresAt": int((time.time() + lifetime) * 1000),
        "scopes": token_data["scope"].split() if "scope" in token_data else list(SCOPES),
    }
    for target, aliases in _OPTIONAL_FIELDS.items():
        for alias in aliases:
            if alias in token_data:
                oauth[target] = token_data[alias]
    return json.dumps({"claudeAiOauth": oauth})


def parse_credentials_json(raw: str) -> Optional[dict]:
    """The ``claudeAiOauth`` section of a credentials file, None if unreadable."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
    return oauth or None


def token_expiry(oauth: dict, now: Optional[float] = None) -> tuple[Optional[datetime], bool]:
    """Return ``(expires_at, is_expired)``; a missing expiry counts as expired."""
    expires_ms = oauth.get("expiresAt") or 0
    if not expires_ms:
        return None, True
    now = time.time() if now is None else now
    return datetime.fromtimestamp(expires_ms / 1000, tz=timezone.utc), expires_ms <= now * 1000


def split_code(pasted: str) -> tuple[str, str]:
    """Split a pasted ``code#state`` value. Returns (code, state)."""
    code, _, state = pasted.strip().partition("#")
    return code, state


async def receive_code(codes: CodeChannel, cancel: CancelSignal) -> Optional[str]:
    """Wait for a pasted code; None if ``cancel`` fires first."""
    received = asyncio.ensure_future(codes.receive())
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {received, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for fut in (received, cancelled):
            if not fut.done():
                fut.cancel()
    if received in done:
        return received.result()
    return None


class ClaudeOAuthFlow:
    """One login attempt; call the instance as the handshake provider."""

    def __init__(self, containers: ContainerManager, ref: ContainerRef):
        self.containers = containers
        self.ref = ref
        self.verifier, challenge = generate_pkce()
        self.state = secrets.token_urlsafe(32)
        self.authorize_url = build_authorize_url(challenge, self.state)

    async def __call__(self, codes: CodeChannel, cancel: CancelSignal) -> AuthOutcome:
        pasted = await receive_code(codes, cancel)
        if pasted is None:
            return AuthOutcome(AuthResult.CANCELLED, "Authentication cancelled")

        code, state = split_code(pasted)
        if state and state != self.state:
            logger.warning("claude_oauth_state_mismatch", container=self.ref.name)
            return AuthOutcome(AuthResult.FAILED, "The code belongs to a different login attempt")

        try:
            token_data = await exchange_code(code, self.verifier, state)
        except (ValueError, httpx.HTTPError) as e:
            return AuthOutcome(AuthResult.FAILED, str(e))

        try:
            await self.containers.exec_command(
                self.ref, ["mkdir", "-p", f"{VOLUME_MOUNT_TARGET}/claude"]
            )
            await self.containers.put_file(
                self.ref, CREDENTIALS_PATH, build_credentials_json(token_data), mode=0o600
            )
        except SessionError as e:
            logger.error("claude_credentials_write_failed", container=self.ref.name, error=str(e))
            return AuthOutcome(AuthResult.FAILED, f"Could not store credentials: {e}")

        logger.info("claude_oauth_complete", container=self.ref.name)
        return AuthOutcome(AuthResult.SUCCESS)
