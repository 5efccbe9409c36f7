"""Telegram message normalizer."""

from __future__ import annotations

import re
from typing import Callable, Iterator, Optional

from telegram import Update

from shared.schemas.messages import HandlerResult

# Telegram message limit
MAX_MESSAGE_LENGTH = 4096
_TRUNCATED = "\n\\.\\.\\."


class TelegramNormalizer:
    """Map Telegram updates to user ids and handler results to MarkdownV2."""

    def user_id(self, update: Update) -> Optional[int]:
        """Return the id sessions are keyed by.

        Sessions belong to the chat, so a group shares one container.
        """
        chat = update.effective_chat
        return chat.id if chat else None

    def command_argument(self, update: Update) -> str:
        message = update.effective_message
        text = (message.text or "") if message else ""
        _, _, rest = text.partition(" ")
        return rest.strip()

    def format_result(self, result: HandlerResult) -> str:
        return self.format_text(result.text)

    def format_text(self, text: str) -> str:
        return to_telegram_markdown_v2(text, limit=MAX_MESSAGE_LENGTH)


# Characters MarkdownV2 reserves outside code entities
_RESERVED = frozenset("_*[]()~`>#+-=|{}.!\\")

# Markdown constructs handlers emit; the first alternative that matches wins
_TOKEN_RE = re.compile(
    r"```(?P<fence>[\s\S]*?)```"
    r"|`(?P<code>[^`\n]+)`"
    r"|\*\*(?P<bold>(?!\s)(?:(?!\*\*).)+?)\*\*"
    r"|\[(?P<label>[^\]]+)\]\((?P<url>[^)]+)\)"
)


def _escape_char(c: str) -> str:
    return "\\" + c if c in _RESERVED else c


def _escape_code_char(c: str) -> str:
    return "\\" + c if c in "`\\" else c


def _escape_url_char(c: str) -> str:
    return "\\" + c if c in ")\\" else c


def _escape(text: str, escape_char: Callable[[str], str] = _escape_char) -> str:
    return "".join(escape_char(c) for c in text)


def _tokenize(text: str) -> Iterator[tuple[str, str, str]]:
    """Yield ``(kind, body, url)`` for each run of plain text or markup."""
    pos = 0
    for m in _TOKEN_RE.finditer(text):
        if m.start() > pos:
            yield "plain", text[pos:m.start()], ""
        if m.group("label") is not None:
            yield "link", m.group("label"), m.group("url")
        else:
            yield m.lastgroup, m.group(m.lastgroup), ""
        pos = m.end()
    if pos < len(text):
        yield "plain", text[pos:], ""


def _render(kind: str, body: str, url: str) -> str:
    if kind == "fence":
        return f"```{_escape(body, _escape_code_char)}```"
    if kind == "code":
        return f"`{_escape(body, _escape_code_char)}`"
    if kind == "bold":
        return f"*{_escape(body)}*"
    if kind == "link":
        return f"[{_escape(body)}]({_escape(url, _escape_url_char)})"
    return _escape(body)


def _fit(body: str, room: int, escape_char: Callable[[str], str]) -> str:
    # Longest escaped prefix of body within room; never splits an escape
    out = []
    for c in body:
        escaped = escape_char(c)
        if len(escaped) > room:
            break
        out.append(escaped)
        room -= len(escaped)
    return "".join(out)


def _render_prefix(kind: str, body: str, room: int) -> str:
    """Render as much of a token as fits in ``room``, keeping entities closed.

    Inline code and links are all or nothing.
    """
    if kind == "plain":
        return _fit(body, room, _escape_char)
    if kind == "fence" and room > 7:
        return "```" + _fit(body, room - 7, _escape_code_char) + "\n```"
    if kind == "bold" and room > 2:
        inner = _fit(body, room - 2, _escape_char)
        return f"*{inner}*" if inner else ""
    return ""


def to_telegram_markdown_v2(text: str, limit: Optional[int] = None) -> str:
    """Convert handler markdown to Telegram MarkdownV2.

    Bold, inline code, fenced blocks and links are kept; everything else is
    escaped so Telegram renders it literally. With ``limit``, output longer
    than that is cut at a token boundary (or inside plain text, bold or a
    fenced block, which are then closed) and ends with an escaped ellipsis.
    """
    rendered = [_render(*token) for token in _tokenize(text)]
    content = "".join(rendered)
    if limit is None or len(content) <= limit:
        return content

    room = limit - len(_TRUNCATED)
    parts = []
    for (kind, body, _), piece in zip(_tokenize(text), rendered):
        if len(piece) > room:
            parts.append(_render_prefix(kind, body, room))
            break
        parts.append(piece)
        room -= len(piece)
    return "".join(parts) + _TRUNCATED
