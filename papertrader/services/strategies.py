"""Paper-trading strategies.

Strategies hold configuration only. ``evaluate`` reads candidates, the ledger
and the price book and returns trade intents; submitting them to the ledger is
the caller's job.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from papertrader.services.market_data import PriceQuote
from papertrader.services.scoring import Candidate, rank_candidates
from papertrader.utils.constants import (
    STRATEGY_EARLY_ENTRY,
    STRATEGY_GROWTH_ENTRY,
    STRATEGY_STOP_LOSS,
    STRATEGY_TAKE_PROFIT,
)

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    def get_price(self, instrument: str) -> PriceQuote | None: ...


class LedgerView(Protocol):
    """Read-only slice of PositionLedger used by strategies."""

    def current_holding(self, instrument: str) -> float: ...

    def all_open_positions(self, price_oracle=None) -> list: ...


@dataclass
class Intent:
    instrument: str
    side: str  # "buy" or "sell"
    quantity: float
    unit_price: float
    strategy_name: str
    reason: str
    score: float | None = None
    quote_unit_price: float | None = None


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Entry strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntryStrategy:
    """Buy recently created tokens that score above the entry threshold.

    Position size scales with the score: ``score/100 * allocation_budget``
    worth of the token at the current price.
    """
    name: str = STRATEGY_EARLY_ENTRY
    entry_threshold: float = 60.0
    allocation_budget: float = 10000.0
    max_age_hours: float = 24.0
    max_candidates: int = 10

    def select(self, candidates: list[Candidate], now: datetime) -> list[Candidate]:
        cutoff = now - timedelta(hours=self.max_age_hours)
        eligible = [
            c for c in candidates
            if c.created_at is not None
            and _as_utc(c.created_at) >= cutoff
            and not c.flagged
            and c.trade_volume > 0
        ]
        eligible.sort(key=lambda c: _as_utc(c.created_at), reverse=True)
        return eligible[:self.max_candidates]

    def evaluate(
        self,
        candidates: list[Candidate],
        ledger_view: LedgerView,
        price_oracle: PriceOracle,
        now: datetime | None = None,
    ) -> list[Intent]:
        now = now or datetime.now(timezone.utc)
        intents = []
        for candidate, score in rank_candidates(self.select(candidates, now)):
            if score < self.entry_threshold:
                break
            if ledger_view.current_holding(candidate.instrument) > 0:
                continue
            quote = price_oracle.get_price(candidate.instrument)
            if quote is None:
                logger.debug(f"[{self.name}] {candidate.instrument}: no fresh price, skipping")
                continue

            quantity = (score / 100) * self.allocation_budget / quote.price
            label = candidate.symbol or candidate.instrument
            intents.append(Intent(
                instrument=candidate.instrument,
                side="buy",
                quantity=quantity,
                unit_price=quote.price,
                quote_unit_price=quote.quote_price,
                strategy_name=self.name,
                reason=f"{label} scored {score:.1f} (threshold {self.entry_threshold:.0f})",
                score=score,
            ))
        return intents


@dataclass(frozen=True)
class GrowthStrategy(EntryStrategy):
    """Buy tokens already marked as potential buys by the analysis pass."""
    name: str = STRATEGY_GROWTH_ENTRY
    entry_threshold: float = 70.0
    allocation_budget: float = 15000.0
    max_candidates: int = 5

    def select(self, candidates: list[Candidate], now: datetime) -> list[Candidate]:
        eligible = [c for c in candidates if c.is_potential_buy and not c.flagged]
        eligible.sort(key=lambda c: c.trade_volume, reverse=True)
        return eligible[:self.max_candidates]


# ---------------------------------------------------------------------------
# Exit strategies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExitStrategy(ABC):
    """Full-position exit when `triggered` holds for the unrealized PnL percent."""
    name: str

    @abstractmethod
    def triggered(self, pnl_percent: float) -> bool:
        ...

    def evaluate(
        self,
        candidates: list[Candidate],
        ledger_view: LedgerView,
        price_oracle: PriceOracle,
        now: datetime | None = None,
    ) -> list[Intent]:
        intents = []
        for position in ledger_view.all_open_positions(price_oracle):
            # Unknown price never triggers an exit
            if position.pnl_percent is None or not self.triggered(position.pnl_percent):
                continue
            quote = price_oracle.get_price(position.instrument)
            intents.append(Intent(
                instrument=position.instrument,
                side="sell",
                quantity=position.holding,
                unit_price=position.current_price,
                quote_unit_price=quote.quote_price if quote else None,
                strategy_name=self.name,
                reason=f"{self.name}: PnL {position.pnl_percent:.2f}%",
            ))
        return intents


@dataclass(frozen=True)
class TakeProfitStrategy(ExitStrategy):
    """Sell the whole position once unrealized PnL reaches the target."""
    name: str = STRATEGY_TAKE_PROFIT
    profit_threshold: float = 30.0

    def triggered(self, pnl_percent: float) -> bool:
        return pnl_percent >= self.profit_threshold


@dataclass(frozen=True)
class StopLossStrategy(ExitStrategy):
    """Sell the whole position once unrealized loss reaches the limit."""
    name: str = STRATEGY_STOP_LOSS
    loss_threshold: float = 15.0

    def triggered(self, pnl_percent: float) -> bool:
        return pnl_percent <= -self.loss_threshold


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_entry_strategies(cfg) -> list[EntryStrategy]:
    return [
        EntryStrategy(
            entry_threshold=cfg.entry_threshold,
            allocation_budget=cfg.entry_budget,
            max_age_hours=cfg.entry_max_age_hours,
            max_candidates=cfg.recent_token_limit,
        ),
        GrowthStrategy(
            entry_threshold=cfg.growth_threshold,
            allocation_budget=cfg.growth_budget,
        ),
    ]


def build_exit_strategies(cfg) -> list[ExitStrategy]:
    return [
        TakeProfitStrategy(profit_threshold=cfg.take_profit_pct),
        StopLossStrategy(loss_threshold=cfg.stop_loss_pct),
    ]
