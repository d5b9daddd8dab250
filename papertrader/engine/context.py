"""Application context: owns the ledger, price book, notifier and scheduler.

Built once at startup and handed to the API (``app.state.context``), the CLI
and the Telegram bot. System-wide flags live on ``SystemState`` here rather
than in module globals.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy import text

from papertrader.config import Settings, settings
from papertrader.engine.ledger import PositionLedger
from papertrader.engine.scheduler import ScheduledTask, TaskScheduler
from papertrader.services.market_data import PriceBook
from papertrader.services.notifier import (
    EVENT_BUY,
    EVENT_REPORT,
    EVENT_SELL,
    EVENT_TASK_ERROR,
    CompositeNotifier,
    LedgerEvent,
    LogNotifier,
    TelegramNotifier,
)

logger = logging.getLogger(__name__)


@dataclass
class SystemState:
    db_connected: bool = False
    scheduler_running: bool = False
    telegram_enabled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    open_positions: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class AppContext:
    def __init__(
        self,
        ledger: PositionLedger,
        price_book: PriceBook,
        notifier: CompositeNotifier,
        scheduler: TaskScheduler,
        db_engine=None,
        cfg: Settings = settings,
    ):
        self.ledger = ledger
        self.price_book = price_book
        self.notifier = notifier
        self.scheduler = scheduler
        self.db_engine = db_engine
        self.settings = cfg
        self.state = SystemState()
        self.bot = None

    # -- database -----------------------------------------------------------

    def check_database(self) -> bool:
        if self.db_engine is None:
            self.state.db_connected = False
            return False
        try:
            with self.db_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.state.db_connected = True
        except Exception as e:
            logger.error(f"Database check failed: {e}")
            self.state.db_connected = False
            self.state.last_error = str(e)
        return self.state.db_connected

    def load(self) -> int:
        """Rebuild the ledger from the store."""
        count = self.ledger.load()
        self.check_database()
        self.refresh_state()
        return count

    def refresh_state(self) -> SystemState:
        self.state.scheduler_running = self.scheduler.running
        self.state.open_positions = len(self.ledger.held_instruments())
        return self.state

    # -- scheduler ----------------------------------------------------------

    def start_scheduler(self):
        self.scheduler.start()
        self.state.scheduler_running = True

    def stop_scheduler(self):
        self.scheduler.stop()
        self.state.scheduler_running = False

    async def shutdown(self):
        await self.scheduler.shutdown(timeout=30)
        self.state.scheduler_running = False
        if self.bot is not None:
            self.bot.stop()
            self.state.telegram_enabled = False

    def _on_task_skipped(self, task: ScheduledTask):
        from papertrader.engine.jobs import log_run

        log_run(self, task.id, "skipped", message="Skipped because previous run is still in progress")

    def _on_task_error(self, task: ScheduledTask, error: Exception):
        from papertrader.engine.jobs import log_run

        self.state.last_error = f"[{task.id}] {error}"
        self.notify(EVENT_TASK_ERROR, f"[{task.name}] ERROR: {error}", task_id=task.id)
        log_run(self, task.id, "error", message=str(error), duration=task.last_duration_seconds)

    # -- notifications ------------------------------------------------------

    def notify(self, kind: str, message: str, **payload):
        self.notifier.publish(LedgerEvent(kind=kind, message=message, payload=payload))

    def enable_telegram(self, main_loop: asyncio.AbstractEventLoop | None = None) -> bool:
        cfg = self.settings
        if not cfg.telegram_bot_token or not cfg.telegram_chat_ids:
            logger.info("Telegram not configured, notifications go to the log only")
            return False

        from papertrader.services.telegram_bot import TelegramBot

        self.bot = TelegramBot(cfg.telegram_bot_token, cfg.telegram_chat_ids, app_context=self)
        self.bot.start(main_loop)
        self.notifier.add(TelegramNotifier(self.bot, kinds={EVENT_BUY, EVENT_SELL, EVENT_REPORT, EVENT_TASK_ERROR}))
        self.state.telegram_enabled = True
        return True


def build_context(cfg: Settings = settings, db_engine=None, register_tasks: bool = True) -> AppContext:
    """Wire the default components together."""
    if db_engine is None:
        from papertrader.database import engine as db_engine

    ctx = AppContext(
        ledger=PositionLedger(engine=db_engine),
        price_book=PriceBook(max_age_seconds=cfg.price_max_age_seconds),
        notifier=CompositeNotifier([LogNotifier()]),
        scheduler=TaskScheduler(tz=cfg.scheduler_timezone),
        db_engine=db_engine,
        cfg=cfg,
    )
    ctx.scheduler.on_skip = ctx._on_task_skipped
    ctx.scheduler.on_error = ctx._on_task_error

    if register_tasks:
        from papertrader.engine.jobs import register_default_tasks

        register_default_tasks(ctx)
    return ctx
