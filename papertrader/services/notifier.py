"""Ledger event notifications and report formatting.

Publishing is fire-and-forget: a failing sink is logged and never propagates
back into the ledger call or task that produced the event.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

EVENT_BUY = "buy"
EVENT_SELL = "sell"
EVENT_STRATEGY_FIRED = "strategy_fired"
EVENT_TASK_ERROR = "task_error"
EVENT_REPORT = "report"


@dataclass
class LedgerEvent:
    kind: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)


class LogNotifier:
    """Writes every event to the application log."""

    def publish(self, event: LedgerEvent):
        level = logging.WARNING if event.kind == EVENT_TASK_ERROR else logging.INFO
        logger.log(level, f"[{event.kind}] {event.message}")


class TelegramNotifier:
    """Forwards events to the Telegram bot's own event loop."""

    def __init__(self, bot, kinds: set[str] | None = None):
        self.bot = bot
        self.kinds = kinds

    def publish(self, event: LedgerEvent):
        if self.kinds is not None and event.kind not in self.kinds:
            return
        loop = self.bot.loop
        if loop is None or not loop.is_running():
            return
        asyncio.run_coroutine_threadsafe(self.bot.send_notification(event.message), loop)


class CompositeNotifier:
    def __init__(self, sinks: list | None = None):
        self.sinks = list(sinks or [])

    def add(self, sink):
        self.sinks.append(sink)

    def publish(self, event: LedgerEvent):
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception as e:
                logger.warning(f"Notifier {type(sink).__name__} failed on {event.kind}: {e}")


# ---------------------------------------------------------------------------
# Report formatting (shared by scheduled reports and bot commands)
# ---------------------------------------------------------------------------

def _fmt_optional(value: float | None, spec: str, suffix: str = "") -> str:
    return "n/a" if value is None else f"{value:{spec}}{suffix}"


def format_holdings(summary) -> str:
    if not summary.positions:
        return "No open positions."

    lines = ["Holdings:"]
    for p in summary.positions:
        lines.append(
            f"{p.instrument[:8]}: qty={p.holding:,.2f} | avg={p.average_cost:.10f} | "
            f"price={_fmt_optional(p.current_price, '.10f')} | "
            f"PnL={_fmt_optional(p.pnl_percent, '+.2f', '%')}"
        )
    lines.append(
        f"Total cost {summary.total_cost:.4f} SOL | value {summary.total_value:.4f} SOL | "
        f"PnL {summary.total_pnl:+.4f} ({summary.total_pnl_percent:+.2f}%)"
    )
    if summary.unpriced:
        lines.append(f"Unpriced: {len(summary.unpriced)}")
    return "\n".join(lines)


def format_performance(performance: list) -> str:
    if not performance:
        return "No closed trades yet."

    lines = ["Strategy performance:"]
    for perf in performance:
        lines.append(
            f"{perf.strategy_name}: {perf.total_trades} trades | win {perf.win_rate:.1f}% | "
            f"PnL {perf.total_pnl:+.4f} | avg {perf.avg_pnl_percent:+.2f}% | "
            f"best {perf.max_profit_percent:+.2f}% | worst {perf.max_loss_percent:+.2f}%"
        )
    return "\n".join(lines)


def format_trade(record) -> str:
    label = record.instrument[:8]
    text = f"{record.side.upper()} {label} qty={record.quantity:,.2f} @ {record.unit_price:.10f}"
    if not record.is_buy:
        text += f" | PnL {record.realized_pnl:+.6f} ({record.realized_pnl_percent:+.2f}%)"
    if record.strategy_name:
        text += f" [{record.strategy_name}]"
    return text
