"""Scheduled task bodies.

Each body refreshes the data it needs, runs its strategies against the ledger,
submits the resulting intents and writes a TaskRun row. Exceptions that escape
a body are caught and recorded by the scheduler.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from papertrader.engine.errors import LedgerError, StrategyExecutionError
from papertrader.models.task_run import TaskRun
from papertrader.models.token import Token
from papertrader.services import market_data, scoring
from papertrader.services.notifier import (
    EVENT_BUY,
    EVENT_REPORT,
    EVENT_SELL,
    EVENT_STRATEGY_FIRED,
    EVENT_TASK_ERROR,
    format_holdings,
    format_performance,
    format_trade,
)
from papertrader.services.strategies import (
    Intent,
    build_entry_strategies,
    build_exit_strategies,
)
from papertrader.utils.constants import (
    TASK_BUY,
    TASK_HOLDINGS,
    TASK_NAMES,
    TASK_PERFORMANCE,
    TASK_SELL,
    TASK_TOKEN_REFRESH,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def register_default_tasks(ctx):
    cfg = ctx.settings
    schedule = {
        TASK_BUY: (cfg.buy_cron, run_buy_cycle),
        TASK_SELL: (cfg.sell_cron, run_sell_cycle),
        TASK_HOLDINGS: (cfg.holdings_cron, run_holdings_report),
        TASK_PERFORMANCE: (cfg.performance_cron, run_performance_report),
        TASK_TOKEN_REFRESH: (cfg.token_refresh_cron, run_token_refresh),
    }
    for task_id, (cron_spec, body) in schedule.items():
        ctx.scheduler.register(task_id, TASK_NAMES[task_id], cron_spec, _bind(body, ctx))


def _bind(body, ctx):
    async def run():
        return await body(ctx)
    run.__name__ = body.__name__
    return run


# ---------------------------------------------------------------------------
# Intent submission
# ---------------------------------------------------------------------------

def submit_intent(ctx, intent: Intent):
    """Submit one intent to the ledger and publish the result.

    Ledger errors propagate to the caller. The notification is fire-and-forget.
    """
    if intent.side == "buy":
        record = ctx.ledger.record_buy(
            intent.instrument,
            intent.quantity,
            intent.unit_price,
            reason=intent.reason,
            score=intent.score,
            strategy_name=intent.strategy_name,
            quote_unit_price=intent.quote_unit_price,
        )
    else:
        record = ctx.ledger.record_sell(
            intent.instrument,
            intent.quantity,
            intent.unit_price,
            reason=intent.reason,
            strategy_name=intent.strategy_name,
            quote_unit_price=intent.quote_unit_price,
        )

    ctx.notify(
        EVENT_BUY if record.is_buy else EVENT_SELL,
        format_trade(record),
        trade_id=record.id,
        instrument=record.instrument,
    )
    return record


def submit_intents(ctx, intents: list[Intent]) -> tuple[int, int]:
    """Returns (submitted, failed)."""
    submitted = failed = 0
    for intent in intents:
        try:
            submit_intent(ctx, intent)
            submitted += 1
        except LedgerError as e:
            failed += 1
            logger.warning(f"[{intent.strategy_name}] Rejected {intent.side} {intent.instrument}: {e}")
    return submitted, failed


def run_strategies(ctx, task_id: str, strategies, candidates, now: datetime) -> dict:
    """Evaluate and submit each strategy in turn.

    Intents from one strategy are on the ledger before the next evaluates, so
    entry strategies see positions opened earlier in the same run.
    """
    result = {"submitted": 0, "failed": 0, "errors": [], "fired": {}}
    for strategy in strategies:
        try:
            intents = strategy.evaluate(candidates, ctx.ledger, ctx.price_book, now=now)
        except Exception as e:
            err = StrategyExecutionError(strategy.name, e)
            logger.error(f"[{task_id}] {err}", exc_info=True)
            ctx.notify(EVENT_TASK_ERROR, f"[{task_id}] {err}", strategy=strategy.name)
            result["errors"].append(str(err))
            continue

        if intents:
            ctx.notify(
                EVENT_STRATEGY_FIRED,
                f"[{strategy.name}] {len(intents)} intent(s)",
                strategy=strategy.name,
                instruments=[i.instrument for i in intents],
            )
        submitted, failed = submit_intents(ctx, intents)
        result["submitted"] += submitted
        result["failed"] += failed
        result["fired"][strategy.name] = submitted
    return result


# ---------------------------------------------------------------------------
# Task bodies
# ---------------------------------------------------------------------------

async def run_buy_cycle(ctx, now: datetime | None = None):
    """Entry strategies over recently created and flagged-for-growth tokens."""
    start = time.monotonic()
    now = now or datetime.now(timezone.utc)
    cfg = ctx.settings
    entry_strategies = build_entry_strategies(cfg)

    candidates = load_candidates(ctx, now)
    selected = {c.instrument: c for s in entry_strategies for c in s.select(candidates, now)}
    logger.info(f"[{TASK_BUY}] {len(candidates)} candidates, {len(selected)} selected")

    if selected:
        instruments = list(selected)
        await ctx.price_book.refresh(instruments)
        stats = await asyncio.gather(*(market_data.fetch_market_stats(i) for i in instruments))
        for instrument, s in zip(instruments, stats):
            selected[instrument].stats = s

    result = run_strategies(ctx, TASK_BUY, entry_strategies, candidates, now)
    log_run(
        ctx, TASK_BUY, _status(result),
        message=f"{len(selected)} candidates evaluated",
        intents_submitted=result["submitted"],
        intents_failed=result["failed"],
        duration=time.monotonic() - start,
        details={"fired": result["fired"], "errors": result["errors"]},
    )
    return result


async def run_sell_cycle(ctx, now: datetime | None = None):
    """Take-profit and stop-loss over every open position."""
    start = time.monotonic()
    now = now or datetime.now(timezone.utc)
    held = ctx.ledger.held_instruments()
    if held:
        await ctx.price_book.refresh(held)

    result = run_strategies(ctx, TASK_SELL, build_exit_strategies(ctx.settings), [], now)
    log_run(
        ctx, TASK_SELL, _status(result),
        message=f"{len(held)} open positions checked",
        intents_submitted=result["submitted"],
        intents_failed=result["failed"],
        duration=time.monotonic() - start,
        details={"fired": result["fired"], "errors": result["errors"]},
    )
    return result


async def run_holdings_report(ctx):
    start = time.monotonic()
    held = ctx.ledger.held_instruments()
    if held:
        await ctx.price_book.refresh(held)

    summary = ctx.ledger.holdings_summary(ctx.price_book)
    ctx.notify(EVENT_REPORT, format_holdings(summary), report=TASK_HOLDINGS)
    ctx.refresh_state()
    log_run(
        ctx, TASK_HOLDINGS, "success",
        message=f"{len(summary.positions)} open positions",
        duration=time.monotonic() - start,
        details={
            "total_cost": summary.total_cost,
            "total_value": summary.total_value,
            "total_pnl": summary.total_pnl,
            "unpriced": summary.unpriced,
        },
    )
    return summary


async def run_performance_report(ctx):
    start = time.monotonic()
    performance = ctx.ledger.strategy_performance()
    ctx.notify(EVENT_REPORT, format_performance(performance), report=TASK_PERFORMANCE)
    log_run(
        ctx, TASK_PERFORMANCE, "success",
        message=f"{len(performance)} strategies",
        duration=time.monotonic() - start,
        details={p.strategy_name: {"trades": p.total_trades, "win_rate": p.win_rate} for p in performance},
    )
    return performance


async def run_token_refresh(ctx, now: datetime | None = None):
    """Pull newly created tokens, then refresh market data and scores for recent ones."""
    start = time.monotonic()
    now = now or datetime.now(timezone.utc)
    cfg = ctx.settings
    since = now - timedelta(hours=cfg.entry_max_age_hours)

    discovered = await market_data.fetch_recent_tokens(since=since, limit=50)
    added = upsert_tokens(ctx, discovered)

    recent = _recent_mints(ctx, since, cfg.recent_token_limit)
    prices, stats = await asyncio.gather(
        asyncio.gather(*(market_data.fetch_token_price(m) for m in recent)),
        asyncio.gather(*(market_data.fetch_market_stats(m) for m in recent)),
    )
    thresholds = scoring.ScoreThresholds(buy=cfg.score_buy_threshold, sell=cfg.score_sell_threshold)
    updated = 0
    for mint, quote, s in zip(recent, prices, stats):
        if quote is not None:
            ctx.price_book.update(mint, quote)
        if quote is None and s is None:
            continue
        apply_market_data(ctx, mint, quote, s, thresholds, now)
        updated += 1

    log_run(
        ctx, TASK_TOKEN_REFRESH, "success",
        message=f"{added} new tokens, {updated}/{len(recent)} refreshed",
        duration=time.monotonic() - start,
    )
    return {"added": added, "updated": updated}


# ---------------------------------------------------------------------------
# Token table helpers
# ---------------------------------------------------------------------------

def load_candidates(ctx, now: datetime) -> list[scoring.Candidate]:
    """Unflagged tokens that are recent or marked as potential buys."""
    if ctx.db_engine is None:
        return []
    since = now - timedelta(hours=ctx.settings.entry_max_age_hours)
    with Session(ctx.db_engine) as session:
        tokens = session.exec(
            select(Token).where(
                Token.flagged == False,  # noqa: E712
                (Token.creation_time >= since) | (Token.is_potential_buy == True),  # noqa: E712
            )
        ).all()
    return [
        scoring.Candidate(
            instrument=t.mint_address,
            name=t.name,
            symbol=t.symbol,
            created_at=t.creation_time,
            trade_volume=t.trade_volume,
            buy_count=t.buy_count,
            sell_count=t.sell_count,
            holder_count=t.holder_count,
            flagged=t.flagged,
            is_potential_buy=t.is_potential_buy,
        )
        for t in tokens
    ]


def upsert_tokens(ctx, discovered: list[dict]) -> int:
    """Insert tokens not seen before. Returns how many were added."""
    if ctx.db_engine is None or not discovered:
        return 0
    added = 0
    with Session(ctx.db_engine) as session:
        for data in discovered:
            if session.get(Token, data["mint_address"]) is not None:
                continue
            session.add(Token(**data))
            added += 1
        session.commit()
    if added:
        logger.info(f"[{TASK_TOKEN_REFRESH}] Added {added} new tokens")
    return added


def _recent_mints(ctx, since: datetime, limit: int) -> list[str]:
    if ctx.db_engine is None:
        return []
    with Session(ctx.db_engine) as session:
        mints = session.exec(
            select(Token.mint_address)
            .where(Token.flagged == False, Token.creation_time >= since)  # noqa: E712
            .order_by(Token.creation_time.desc())
            .limit(limit)
        ).all()
    # Held positions are always refreshed so exits see current prices
    return list(dict.fromkeys([*mints, *ctx.ledger.held_instruments()]))


def apply_market_data(ctx, mint: str, quote, stats, thresholds, now: datetime):
    with Session(ctx.db_engine) as session:
        token = session.get(Token, mint)
        if token is None:
            return
        if quote is not None:
            token.last_price = quote.price
            token.last_price_usd = quote.quote_price
            token.price_updated_at = quote.as_of or now
        if stats is not None:
            token.buy_count = stats.buy_count or 0
            token.sell_count = stats.sell_count or 0
            token.buy_volume = stats.buy_volume or 0.0
            token.sell_volume = stats.sell_volume or 0.0
            token.trade_volume = token.buy_volume + token.sell_volume
            # distinct buyers is a lower bound on holders
            token.holder_count = max(token.holder_count, stats.distinct_buyers or 0)
            score = scoring.score_instrument(stats).total
            token.last_score = score
            token.is_potential_buy = scoring.classify(score, thresholds) is scoring.Classification.BUY_CANDIDATE
        token.updated_at = now
        session.add(token)
        session.commit()


# ---------------------------------------------------------------------------
# Run log
# ---------------------------------------------------------------------------

def _status(result: dict) -> str:
    if not result["errors"]:
        return "success"
    return "partial" if result["fired"] else "error"


def log_run(
    ctx,
    task_id: str,
    status: str,
    message: str | None = None,
    intents_submitted: int = 0,
    intents_failed: int = 0,
    duration: float | None = None,
    details: dict | None = None,
):
    """Write a TaskRun entry."""
    if ctx.db_engine is None:
        return
    with Session(ctx.db_engine) as session:
        session.add(TaskRun(
            task_id=task_id,
            status=status,
            message=message,
            intents_submitted=intents_submitted,
            intents_failed=intents_failed,
            duration_seconds=duration,
            details=details,
        ))
        session.commit()
