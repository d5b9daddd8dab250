"""Database models."""

from papertrader.models.trade import TradeRecord
from papertrader.models.token import Token
from papertrader.models.task_run import TaskRun

__all__ = [
    "TradeRecord",
    "Token",
    "TaskRun",
]
