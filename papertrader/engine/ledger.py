"""Simulated position ledger with FIFO cost-basis accounting.

The ``simulated_trade`` table is the system of record. On top of it the ledger
keeps one deque of open lots per instrument (oldest on the left), which is
rebuilt by replaying the records on startup. Every mutation runs inside a single
lock: check holding, plan consumption, persist the record, then pop/shrink lots.
A failure before the last step leaves the lots untouched.
"""

import logging
import math
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlmodel import Session, select

from papertrader.engine.errors import (
    InsufficientHolding,
    InstrumentUnknown,
    InvalidPrice,
    InvalidQuantity,
    PriceUnavailable,
)
from papertrader.models.trade import TradeRecord
from papertrader.services.market_data import PriceQuote
from papertrader.utils.constants import STRATEGY_MANUAL

logger = logging.getLogger(__name__)

# A sell within this fraction of the holding closes the whole position
DUST_TOLERANCE = 1e-9


class PriceOracle(Protocol):
    def get_price(self, instrument: str) -> PriceQuote | None: ...


# ---------------------------------------------------------------------------
# Ledger views
# ---------------------------------------------------------------------------

@dataclass
class Lot:
    """An open buy, reduced by later sells in FIFO order."""
    instrument: str
    quantity: float  # remaining
    unit_cost: float
    quote_unit_cost: float | None
    opened_at: datetime
    trade_id: int | None = None

    @property
    def cost(self) -> float:
        return self.quantity * self.unit_cost


@dataclass
class Position:
    """Per-instrument aggregate. Price fields are None when no fresh price exists."""
    instrument: str
    total_bought: float = 0.0
    total_sold: float = 0.0
    holding: float = 0.0
    cost_basis: float = 0.0
    average_cost: float = 0.0
    realized_pnl: float = 0.0
    current_price: float | None = None
    price_as_of: datetime | None = None
    current_value: float | None = None
    unrealized_pnl: float | None = None
    total_pnl: float | None = None
    pnl_percent: float | None = None

    @property
    def is_priced(self) -> bool:
        return self.current_price is not None


@dataclass
class StrategyPerformance:
    strategy_name: str
    total_trades: int = 0
    profitable_trades: int = 0
    loss_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl_percent: float = 0.0
    max_profit_percent: float = 0.0
    max_loss_percent: float = 0.0


@dataclass
class HoldingsSummary:
    positions: list[Position]
    total_cost: float = 0.0
    total_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    unpriced: list[str] = field(default_factory=list)


@dataclass
class _Totals:
    total_bought: float = 0.0
    total_sold: float = 0.0
    realized_pnl: float = 0.0


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def _positive(value, error_cls) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise error_cls(value) from None
    if isinstance(value, bool) or not math.isfinite(number) or number <= 0:
        raise error_cls(value)
    return number


def _optional_price(value) -> float | None:
    if value is None:
        return None
    return _positive(value, InvalidPrice)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class PositionLedger:
    """Owns all lots and trade records; the only writer of ``simulated_trade``.

    Args:
        engine: SQLAlchemy engine for the durable store. ``None`` keeps the
            ledger purely in memory.
        clock: Returns the timestamp stamped on new records.
    """

    def __init__(self, engine=None, clock: Callable[[], datetime] = _utcnow):
        self._engine = engine
        self._clock = clock
        self._lock = threading.RLock()
        self._lots: dict[str, deque[Lot]] = {}
        self._totals: dict[str, _Totals] = defaultdict(_Totals)
        self._records: list[TradeRecord] = []
        self._next_id = 1

    # -- loading ------------------------------------------------------------

    def load(self) -> int:
        """Rebuild lots and totals by replaying the store. Returns records loaded."""
        if self._engine is None:
            return 0

        with Session(self._engine) as session:
            records = session.exec(
                select(TradeRecord).order_by(TradeRecord.created_at, TradeRecord.id)
            ).all()

        with self._lock:
            self._lots.clear()
            self._totals.clear()
            self._records = []
            for record in records:
                self._replay(record)
            self._next_id = max((r.id or 0 for r in records), default=0) + 1

        logger.info(
            f"Ledger loaded {len(records)} trade records, "
            f"{sum(len(lots) for lots in self._lots.values())} open lots"
        )
        return len(records)

    def _replay(self, record: TradeRecord):
        if record.is_buy:
            self._lots.setdefault(record.instrument, deque()).append(self._lot_from(record))
        else:
            lots = self._lots.get(record.instrument)
            holding = self._holding(lots)
            tolerance = DUST_TOLERANCE * max(record.quantity, holding)
            if record.quantity > holding + tolerance:
                logger.warning(
                    f"Replay: sell {record.id} for {record.instrument} exceeds holding "
                    f"({record.quantity} > {holding}); consuming what is left"
                )
            closing = record.quantity >= holding - tolerance
            plan, _, _ = self._plan(lots, holding if closing else record.quantity, closing)
            self._consume(record.instrument, plan)
        self._records.append(record)
        self._add_totals(record)

    # -- mutations ----------------------------------------------------------

    def record_buy(
        self,
        instrument: str,
        quantity: float,
        unit_price: float,
        reason: str | None = None,
        score: float | None = None,
        strategy_name: str | None = None,
        quote_unit_price: float | None = None,
    ) -> TradeRecord:
        """Append a buy record and open a new lot at the back of the FIFO queue."""
        quantity = _positive(quantity, InvalidQuantity)
        unit_price = _positive(unit_price, InvalidPrice)
        quote_unit_price = _optional_price(quote_unit_price)

        with self._lock:
            record = TradeRecord(
                instrument=instrument,
                side="buy",
                quantity=quantity,
                unit_price=unit_price,
                quote_unit_price=quote_unit_price,
                total_value=quantity * unit_price,
                quote_total_value=quantity * quote_unit_price if quote_unit_price is not None else None,
                reason=reason,
                strategy_name=strategy_name,
                score=score,
                created_at=self._clock(),
            )
            record = self._append(record)
            self._lots.setdefault(instrument, deque()).append(self._lot_from(record))
            self._add_totals(record)

        logger.info(
            f"[ledger] BUY {instrument} qty={quantity:.6f} @ {unit_price:.10f} "
            f"({strategy_name or STRATEGY_MANUAL})"
        )
        return record

    def record_sell(
        self,
        instrument: str,
        quantity: float,
        unit_price: float,
        reason: str | None = None,
        strategy_name: str | None = None,
        quote_unit_price: float | None = None,
    ) -> TradeRecord:
        """Sell against open lots oldest-first and record the realized PnL.

        Raises:
            InsufficientHolding: quantity exceeds the current holding. Nothing
                is consumed.
        """
        quantity = _positive(quantity, InvalidQuantity)
        unit_price = _positive(unit_price, InvalidPrice)
        quote_unit_price = _optional_price(quote_unit_price)

        with self._lock:
            lots = self._lots.get(instrument)
            holding = self._holding(lots)
            tolerance = DUST_TOLERANCE * max(quantity, holding)
            if holding <= 0 or quantity > holding + tolerance:
                raise InsufficientHolding(instrument, quantity, holding)
            closing = abs(quantity - holding) <= tolerance
            if closing:
                quantity = holding

            plan, cost, quote_cost = self._plan(lots, quantity, closing)
            pnl = quantity * unit_price - cost
            pnl_pct = pnl / cost * 100 if cost > 0 else 0.0
            quote_pnl = None
            if quote_unit_price is not None and quote_cost is not None:
                quote_pnl = quantity * quote_unit_price - quote_cost

            record = TradeRecord(
                instrument=instrument,
                side="sell",
                quantity=quantity,
                unit_price=unit_price,
                quote_unit_price=quote_unit_price,
                total_value=quantity * unit_price,
                quote_total_value=quantity * quote_unit_price if quote_unit_price is not None else None,
                reason=reason,
                strategy_name=strategy_name,
                created_at=self._clock(),
                realized_pnl=pnl,
                realized_pnl_percent=pnl_pct,
                realized_pnl_quote=quote_pnl,
            )
            record = self._append(record)
            self._consume(instrument, plan)
            self._add_totals(record)

        logger.info(
            f"[ledger] SELL {instrument} qty={quantity:.6f} @ {unit_price:.10f} "
            f"pnl={pnl:.6f} ({pnl_pct:.2f}%) ({strategy_name or STRATEGY_MANUAL})"
        )
        return record

    # -- reads --------------------------------------------------------------

    def current_holding(self, instrument: str) -> float:
        with self._lock:
            return self._holding(self._lots.get(instrument))

    def open_lots(self, instrument: str) -> list[Lot]:
        """Copies of the open lots for an instrument, oldest first."""
        with self._lock:
            return [replace(lot) for lot in self._lots.get(instrument, ())]

    def instruments(self) -> list[str]:
        """Every instrument with trade history."""
        with self._lock:
            return list(self._totals)

    def held_instruments(self) -> list[str]:
        with self._lock:
            return [i for i, lots in self._lots.items() if self._holding(lots) > 0]

    def instrument_trades(self, instrument: str) -> list[TradeRecord]:
        with self._lock:
            trades = [r for r in self._records if r.instrument == instrument]
        if not trades:
            raise InstrumentUnknown(instrument)
        return trades

    def trade_history(
        self, limit: int = 100, offset: int = 0, instrument: str | None = None
    ) -> list[TradeRecord]:
        """Trade records, newest first."""
        with self._lock:
            records = [
                r for r in reversed(self._records)
                if instrument is None or r.instrument == instrument
            ]
        return records[offset:offset + limit]

    def position_snapshot(
        self, instrument: str, current_price: PriceQuote | float | None = None
    ) -> Position:
        """Combine ledger state for one instrument with an externally supplied price."""
        with self._lock:
            lots = list(self._lots.get(instrument, ()))
            totals = self._totals.get(instrument) or _Totals()
            holding = self._holding(lots)
            cost_basis = sum(lot.cost for lot in lots)

        position = Position(
            instrument=instrument,
            total_bought=totals.total_bought,
            total_sold=totals.total_sold,
            holding=holding,
            cost_basis=cost_basis,
            average_cost=cost_basis / holding if holding > 0 else 0.0,
            realized_pnl=totals.realized_pnl,
        )

        quote = current_price
        if isinstance(quote, (int, float)):
            quote = PriceQuote(price=float(quote))
        if quote is None:
            return position

        position.current_price = quote.price
        position.price_as_of = quote.as_of
        position.current_value = holding * quote.price
        position.unrealized_pnl = holding * (quote.price - position.average_cost)
        position.total_pnl = position.unrealized_pnl + position.realized_pnl
        position.pnl_percent = (
            position.unrealized_pnl / cost_basis * 100 if cost_basis > 0 else 0.0
        )
        return position

    def all_open_positions(self, price_oracle: PriceOracle | None = None) -> list[Position]:
        """One Position per instrument with a positive holding.

        A missing or stale price degrades that entry (price fields None)
        instead of failing the batch.
        """
        positions = []
        for instrument in self.held_instruments():
            quote = None
            if price_oracle is not None:
                try:
                    quote = price_oracle.get_price(instrument)
                except PriceUnavailable as e:
                    logger.debug(f"[ledger] {e}")
            positions.append(self.position_snapshot(instrument, quote))
        return positions

    def holdings_summary(self, price_oracle: PriceOracle | None = None) -> HoldingsSummary:
        positions = self.all_open_positions(price_oracle)
        summary = HoldingsSummary(positions=positions)
        priced_cost = 0.0
        for p in positions:
            summary.total_cost += p.cost_basis
            if p.is_priced:
                priced_cost += p.cost_basis
                summary.total_value += p.current_value
            else:
                summary.unpriced.append(p.instrument)
        summary.total_pnl = summary.total_value - priced_cost
        summary.total_pnl_percent = summary.total_pnl / priced_cost * 100 if priced_cost > 0 else 0.0
        return summary

    def strategy_performance(self) -> list[StrategyPerformance]:
        """Roll up closed sells per strategy."""
        with self._lock:
            sells = [r for r in self._records if not r.is_buy]

        by_strategy: dict[str, StrategyPerformance] = {}
        pct_sums: dict[str, float] = defaultdict(float)
        for trade in sells:
            name = trade.strategy_name or STRATEGY_MANUAL
            perf = by_strategy.setdefault(name, StrategyPerformance(strategy_name=name))
            pnl = trade.realized_pnl or 0.0
            pnl_pct = trade.realized_pnl_percent or 0.0

            perf.total_trades += 1
            perf.total_pnl += pnl
            pct_sums[name] += pnl_pct
            if pnl > 0:
                perf.profitable_trades += 1
                perf.max_profit_percent = max(perf.max_profit_percent, pnl_pct)
            else:
                perf.loss_trades += 1
                perf.max_loss_percent = min(perf.max_loss_percent, pnl_pct)

        for name, perf in by_strategy.items():
            perf.win_rate = perf.profitable_trades / perf.total_trades * 100
            perf.avg_pnl_percent = pct_sums[name] / perf.total_trades
        return list(by_strategy.values())

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _holding(lots) -> float:
        return sum(lot.quantity for lot in lots) if lots else 0.0

    @staticmethod
    def _lot_from(record: TradeRecord) -> Lot:
        return Lot(
            instrument=record.instrument,
            quantity=record.quantity,
            unit_cost=record.unit_price,
            quote_unit_cost=record.quote_unit_price,
            opened_at=record.created_at,
            trade_id=record.id,
        )

    @staticmethod
    def _plan(lots, quantity: float, closing: bool = False):
        """Walk lots oldest-first without mutating them.

        Returns ([(lot, take), ...], cost_consumed, quote_cost_consumed). The
        quote cost is None if any consumed lot has no quote price. A closing
        plan takes every lot whole so no rounding residue is left behind.
        """
        plan: list[tuple[Lot, float]] = []
        cost = 0.0
        quote_cost: float | None = 0.0
        remaining = quantity
        for lot in lots or ():
            if remaining <= 0 and not closing:
                break
            take = lot.quantity if closing else min(lot.quantity, remaining)
            plan.append((lot, take))
            cost += take * lot.unit_cost
            if quote_cost is not None and lot.quote_unit_cost is not None:
                quote_cost += take * lot.quote_unit_cost
            else:
                quote_cost = None
            remaining -= take
        return plan, cost, quote_cost

    def _consume(self, instrument: str, plan: list[tuple[Lot, float]]):
        lots = self._lots.get(instrument)
        for lot, take in plan:
            lot.quantity -= take
        while lots and lots[0].quantity <= 0:
            lots.popleft()
        if lots is not None and not lots:
            del self._lots[instrument]

    def _add_totals(self, record: TradeRecord):
        totals = self._totals[record.instrument]
        if record.is_buy:
            totals.total_bought += record.quantity
        else:
            totals.total_sold += record.quantity
            totals.realized_pnl += record.realized_pnl or 0.0

    def _append(self, record: TradeRecord) -> TradeRecord:
        """Persist a new record, then add it to the in-memory history."""
        if self._engine is None:
            record.id = self._next_id
            self._next_id += 1
        else:
            with Session(self._engine) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        self._records.append(record)
        return record
