"""Telegram bot for paper-trading notifications and remote control."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)

from papertrader.services.notifier import format_holdings, format_performance

logger = logging.getLogger(__name__)


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop.

    Reads go straight to the ledger (thread-safe). Scheduler control is handed
    back to the application loop, which owns the scheduler.
    """

    def __init__(self, token: str, chat_ids: list[int], app_context=None):
        self.token = token
        self.chat_ids = set(chat_ids)
        self.app_context = app_context
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._main_loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    def status_text(self) -> str:
        ctx = self.app_context
        status = ctx.scheduler.status()
        scheduler_str = "running" if status["running"] else "stopped"
        lines = [
            f"Scheduler: {scheduler_str}",
            f"Database: {'connected' if ctx.state.db_connected else 'unavailable'}",
            f"Open positions: {len(ctx.ledger.held_instruments())}",
        ]
        for task in status["tasks"]:
            next_run = task["next_run_at"].strftime("%H:%M UTC") if task["next_run_at"] else "-"
            lines.append(f"  {task['id']}: {task['state']} (runs {task['run_count']}, next {next_run})")
        return "\n".join(lines)

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        await update.message.reply_text(self.status_text())

    async def _cmd_holdings(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        ctx = self.app_context
        summary = ctx.ledger.holdings_summary(ctx.price_book)
        await update.message.reply_text(format_holdings(summary))

    async def _cmd_performance(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        await update.message.reply_text(format_performance(self.app_context.ledger.strategy_performance()))

    async def _cmd_pause(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        keyboard = InlineKeyboardMarkup([
            [
                InlineKeyboardButton("Yes, pause", callback_data="confirm_pause"),
                InlineKeyboardButton("Cancel", callback_data="cancel"),
            ]
        ])
        await update.message.reply_text(
            "Stop the scheduler? Running tasks finish, no new ones start.",
            reply_markup=keyboard,
        )

    async def _cmd_resume(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        self._on_main_loop(self.app_context.start_scheduler)
        await update.message.reply_text("Scheduler starting.")

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
        elif query.data == "confirm_pause":
            self._on_main_loop(self.app_context.stop_scheduler)
            await query.edit_message_text("Scheduler stopped.")

    def _on_main_loop(self, callback):
        if self._main_loop is None:
            logger.warning("Telegram bot has no application loop; ignoring scheduler command")
            return
        self._main_loop.call_soon_threadsafe(callback)

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("holdings", self._cmd_holdings))
        self._app.add_handler(CommandHandler("performance", self._cmd_performance))
        self._app.add_handler(CommandHandler("pause", self._cmd_pause))
        self._app.add_handler(CommandHandler("resume", self._cmd_resume))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self, main_loop: asyncio.AbstractEventLoop | None = None):
        self._main_loop = main_loop
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)
