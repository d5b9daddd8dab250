"""Command-line entry point.

Usage:
    python -m papertrader.cli init-db
    python -m papertrader.cli run-task buy
    python -m papertrader.cli holdings
    python -m papertrader.cli performance
"""

import argparse
import asyncio
import sys

from papertrader.database import create_db_and_tables
from papertrader.services.notifier import format_holdings, format_performance
from papertrader.utils.constants import TASK_NAMES
from papertrader.utils.logging import setup_logging


def _context():
    from papertrader.engine.context import build_context

    create_db_and_tables()
    ctx = build_context()
    ctx.load()
    return ctx


def cmd_init_db(args):
    create_db_and_tables()
    print("Database ready.")
    return 0


def cmd_run_task(args):
    ctx = _context()

    async def run():
        await ctx.scheduler.trigger(args.task_id)
        return ctx.scheduler.get(args.task_id)

    task = asyncio.run(run())
    if task.last_error:
        print(f"{task.name} failed: {task.last_error}")
        return 1
    print(f"{task.name} completed in {task.last_duration_seconds:.2f}s")
    return 0


def cmd_holdings(args):
    ctx = _context()
    if args.refresh:
        asyncio.run(ctx.price_book.refresh(ctx.ledger.held_instruments()))
    print(format_holdings(ctx.ledger.holdings_summary(ctx.price_book)))
    return 0


def cmd_performance(args):
    ctx = _context()
    print(format_performance(ctx.ledger.strategy_performance()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="papertrader",
        description="Paper-trading ledger and strategy scheduler",
    )
    parser.add_argument("--log-level", default=None, help="Override PT_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    run_parser = subparsers.add_parser("run-task", help="Run one scheduled task now")
    run_parser.add_argument("task_id", choices=sorted(TASK_NAMES))
    run_parser.set_defaults(func=cmd_run_task)

    holdings_parser = subparsers.add_parser("holdings", help="Print open positions")
    holdings_parser.add_argument(
        "--refresh", "-r", action="store_true",
        help="Fetch current prices before printing"
    )
    holdings_parser.set_defaults(func=cmd_holdings)

    perf_parser = subparsers.add_parser("performance", help="Print per-strategy performance")
    perf_parser.set_defaults(func=cmd_performance)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    setup_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
