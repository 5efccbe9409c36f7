"""Telegram bot implementation."""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog
from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from comms.telegram_bot.normalizer import TelegramNormalizer
from modules.claude_code import handlers
from modules.claude_code.handlers import NotifyFn
from modules.claude_code.state import BotState
from shared.config import Settings
from shared.schemas.messages import HandlerResult

logger = structlog.get_logger()

HELP_TEXT = (
    "**Claude Code bot**\n\n"
    "/start - start a fresh coding session\n"
    "/clearsession - stop and remove your session\n"
    "/claudestatus - Claude CLI version and login state\n"
    "/authenticateclaude - log in to your Claude account\n"
    "/updateclaude - update the Claude CLI\n"
    "/claude - start a new Claude conversation\n"
    "/debugclaudelogin - inspect the stored Claude login\n"
    "/githubauth - log in to GitHub\n"
    "/githubstatus - GitHub login state\n"
    "/githubrepolist - list your repositories\n"
    "/githubclone owner/repo - clone a repository into /workspace\n\n"
    "Any other message is sent to Claude in your session."
)


class ClaudeCodeTelegramBot:
    """Telegram bot that drives per-chat coding session containers."""

    def __init__(self, settings: Settings, state: BotState | None = None):
        self.settings = settings
        self.normalizer = TelegramNormalizer()
        self.state = state if state is not None else BotState.create(settings)
        self.app = (
            Application.builder()
            .token(settings.telegram_token)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            # Codes and /clearsession must get through while a prompt runs
            .concurrent_updates(True)
            .build()
        )
        self._setup_handlers()

    def _setup_handlers(self):
        """Register command and message handlers."""
        commands = {
            "start": self._handle_start,
            "help": self._handle_help,
            "clearsession": self._handle_clear_session,
            "claudestatus": self._handle_claude_status,
            "authenticateclaude": self._handle_authenticate,
            "updateclaude": self._handle_update_claude,
            "claude": self._handle_new_conversation,
            "debugclaudelogin": self._handle_debug_claude_login,
            "githubauth": self._handle_github_auth,
            "githubstatus": self._handle_github_status,
            "githubrepolist": self._handle_repo_list,
            "githubclone": self._handle_clone,
        }
        for name, callback in commands.items():
            self.app.add_handler(CommandHandler(name, callback))
        # Plain text is a pasted authentication code or a Claude prompt
        self.app.add_handler(
            MessageHandler(
                filters.TEXT & ~filters.COMMAND,
                self._handle_message,
            )
        )

    async def _post_init(self, app: Application) -> None:
        await self.state.startup()

    async def _post_shutdown(self, app: Application) -> None:
        await self.state.shutdown()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _notifier(self, context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> NotifyFn:
        async def notify(text: str) -> None:
            await context.bot.send_message(
                chat_id=chat_id,
                text=self.normalizer.format_text(text),
                parse_mode="MarkdownV2",
            )

        return notify

    async def _reply(self, update: Update, result: HandlerResult) -> None:
        await update.effective_message.reply_text(
            self.normalizer.format_result(result),
            parse_mode="MarkdownV2",
            disable_web_page_preview=True,
        )

    async def _dispatch(
        self,
        update: Update,
        handler: Callable[..., Awaitable[HandlerResult]],
        *args,
    ) -> None:
        user_id = self.normalizer.user_id(update)
        if user_id is None or not update.effective_message:
            return

        try:
            result = await handler(self.state, user_id, *args)
        except Exception as e:
            logger.error(
                "telegram_handler_error",
                handler=handler.__name__,
                user_id=user_id,
                error=str(e),
            )
            result = HandlerResult(
                text="Sorry, something went wrong. Please try again.", ok=False
            )
        await self._reply(update, result)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle the /start command."""
        if update.effective_message:
            await update.effective_message.reply_text("⏳ Starting a new coding session...")
        await self._dispatch(update, handlers.handle_start)

    async def _handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_message:
            await self._reply(update, HandlerResult(text=HELP_TEXT))

    async def _handle_clear_session(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_clear_session)

    async def _handle_claude_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_claude_status)

    async def _handle_authenticate(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        notify = self._notifier(context, update.effective_chat.id)
        await self._dispatch(update, handlers.handle_authenticate, notify)

    async def _handle_update_claude(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_message:
            await update.effective_message.reply_text("🔄 Updating Claude CLI...")
        await self._dispatch(update, handlers.handle_update_claude)

    async def _handle_new_conversation(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_new_conversation)

    async def _handle_debug_claude_login(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_debug_claude_login)

    async def _handle_github_auth(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        notify = self._notifier(context, update.effective_chat.id)
        await self._dispatch(update, handlers.handle_github_auth, notify)

    async def _handle_github_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_github_status)

    async def _handle_repo_list(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, handlers.handle_repo_list)

    async def _handle_clone(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(
            update, handlers.handle_clone, self.normalizer.command_argument(update)
        )

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route plain text to a pending authentication, else to Claude."""
        message = update.effective_message
        user_id = self.normalizer.user_id(update)
        if not message or not message.text or user_id is None:
            return

        result = await handlers.handle_auth_code_text(self.state, user_id, message.text)
        if result is None:
            chat_id = update.effective_chat.id
            await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
            try:
                result = await handlers.handle_claude_prompt(
                    self.state, user_id, message.text, self._notifier(context, chat_id)
                )
            except Exception as e:
                logger.error("telegram_prompt_error", user_id=user_id, error=str(e))
                result = HandlerResult(
                    text="Sorry, something went wrong. Please try again.", ok=False
                )
        if result is None:
            result = HandlerResult(
                text="Send /help to see what I can do.", ok=False
            )
        await self._reply(update, result)

    def run(self):
        """Start the bot with polling."""
        logger.info("starting_telegram_bot")
        self.app.run_polling(drop_pending_updates=True)
