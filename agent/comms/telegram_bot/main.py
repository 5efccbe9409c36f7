"""Telegram bot entry point."""

from __future__ import annotations

import os
import sys

import structlog

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()


def main():
    from shared.config import get_settings

    settings = get_settings()

    if not settings.telegram_token:
        logger.error("telegram_token_not_set", msg="Set TELEGRAM_TOKEN to run the bot.")
        sys.exit(1)

    from comms.telegram_bot.bot import ClaudeCodeTelegramBot

    bot = ClaudeCodeTelegramBot(settings)
    bot.run()


if __name__ == "__main__":
    main()
