"""Simulation API: manual trades, holdings, history and strategy performance.

Ledger errors are turned into HTTP responses by the handlers registered in
``papertrader.main``.
"""

from fastapi import APIRouter, Depends

from papertrader.api.deps import get_context
from papertrader.engine.context import AppContext
from papertrader.engine.jobs import submit_intent
from papertrader.schemas.simulation import (
    BuyRequest,
    HoldingsRead,
    PositionRead,
    SellRequest,
    StrategyPerformanceRead,
    TradeRead,
)
from papertrader.services.strategies import Intent
from papertrader.utils.constants import STRATEGY_MANUAL

router = APIRouter(prefix="/api/simulation", tags=["simulation"])


@router.post("/buy", response_model=TradeRead, status_code=201)
def simulate_buy(data: BuyRequest, ctx: AppContext = Depends(get_context)):
    intent = Intent(
        instrument=data.instrument,
        side="buy",
        quantity=data.quantity,
        unit_price=data.unit_price,
        quote_unit_price=data.quote_unit_price,
        strategy_name=data.strategy_name or STRATEGY_MANUAL,
        reason=data.reason or "manual buy",
        score=data.score,
    )
    return submit_intent(ctx, intent)


@router.post("/sell", response_model=TradeRead, status_code=201)
def simulate_sell(data: SellRequest, ctx: AppContext = Depends(get_context)):
    intent = Intent(
        instrument=data.instrument,
        side="sell",
        quantity=data.quantity,
        unit_price=data.unit_price,
        quote_unit_price=data.quote_unit_price,
        strategy_name=data.strategy_name or STRATEGY_MANUAL,
        reason=data.reason or "manual sell",
    )
    return submit_intent(ctx, intent)


@router.get("/holdings", response_model=HoldingsRead)
def holdings(ctx: AppContext = Depends(get_context)):
    return ctx.ledger.holdings_summary(ctx.price_book)


@router.get("/positions/{instrument}", response_model=PositionRead)
def position(instrument: str, ctx: AppContext = Depends(get_context)):
    ctx.ledger.instrument_trades(instrument)  # 404 when never traded
    return ctx.ledger.position_snapshot(instrument, ctx.price_book.get_price(instrument))


@router.get("/history", response_model=list[TradeRead])
def trade_history(
    instrument: str | None = None,
    limit: int = 100,
    offset: int = 0,
    ctx: AppContext = Depends(get_context),
):
    return ctx.ledger.trade_history(limit=min(limit, 1000), offset=offset, instrument=instrument)


@router.get("/performance", response_model=list[StrategyPerformanceRead])
def strategy_performance(ctx: AppContext = Depends(get_context)):
    return ctx.ledger.strategy_performance()
