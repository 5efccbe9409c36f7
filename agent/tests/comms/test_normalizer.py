"""Tests for Telegram update mapping and MarkdownV2 formatting."""

from __future__ import annotations

from unittest.mock import MagicMock

from comms.telegram_bot.normalizer import (
    MAX_MESSAGE_LENGTH,
    TelegramNormalizer,
    to_telegram_markdown_v2,
)
from shared.schemas.messages import HandlerResult


def _update(text="/start", chat_id=42):
    update = MagicMock()
    update.effective_message.text = text
    update.effective_chat.id = chat_id
    return update


class TestMarkdown:
    def test_plain_text_is_escaped(self):
        assert to_telegram_markdown_v2("Done. Container (id-1) ready!") == (
            "Done\\. Container \\(id\\-1\\) ready\\!"
        )

    def test_bold(self):
        assert to_telegram_markdown_v2("**Status:** ok.") == "*Status:* ok\\."

    def test_inline_code_keeps_specials(self):
        assert to_telegram_markdown_v2("Run `gh_auth.login`") == "Run `gh_auth.login`"

    def test_fenced_block(self):
        assert to_telegram_markdown_v2("```\nx`y\n```") == "```\nx\\`y\n```"

    def test_link(self):
        text = "• [octo/hello](https://github.com/octo/hello) - a repo"
        assert to_telegram_markdown_v2(text) == (
            "• [octo/hello](https://github.com/octo/hello) \\- a repo"
        )


class TestNormalizer:
    def test_user_id_is_chat_id(self):
        assert TelegramNormalizer().user_id(_update(chat_id=-100)) == -100

    def test_user_id_without_chat(self):
        update = _update()
        update.effective_chat = None
        assert TelegramNormalizer().user_id(update) is None

    def test_command_argument(self):
        normalizer = TelegramNormalizer()
        assert normalizer.command_argument(_update("/githubclone  octo/hello ")) == "octo/hello"
        assert normalizer.command_argument(_update("/githubclone")) == ""

    def test_long_results_are_truncated(self):
        formatted = TelegramNormalizer().format_result(HandlerResult(text="a" * 5000))

        assert len(formatted) == MAX_MESSAGE_LENGTH
        assert formatted.endswith("\\.\\.\\.")

    def test_truncation_keeps_escapes_whole(self):
        formatted = TelegramNormalizer().format_text("." * 3000)

        body = formatted[: -len("\n\\.\\.\\.")]
        assert len(formatted) <= MAX_MESSAGE_LENGTH
        assert body == "\\." * (len(body) // 2)

    def test_truncation_closes_a_cut_fence(self):
        text = "**Tool result:**\n```\n" + "line\n" * 2000 + "```\ndone"

        formatted = TelegramNormalizer().format_text(text)

        assert len(formatted) <= MAX_MESSAGE_LENGTH
        assert formatted.startswith("*Tool result:*\n```\nline\n")
        assert formatted.count("```") == 2
        assert formatted.endswith("\n```\n\\.\\.\\.")
        assert "done" not in formatted

    def test_truncation_drops_inline_code_at_the_edge(self):
        text = "a" * 4080 + " `some_long_identifier`"

        formatted = TelegramNormalizer().format_text(text)

        assert "`" not in formatted
        assert formatted == "a" * 4080 + " " + "\n\\.\\.\\."

    def test_short_text_is_not_truncated(self):
        assert TelegramNormalizer().format_text("ok.") == "ok\\."
