"""Tracked tokens and on-demand analysis."""

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from papertrader.api.deps import get_context, get_db
from papertrader.engine.context import AppContext
from papertrader.models.token import Token
from papertrader.schemas.simulation import TokenAnalysisRead
from papertrader.services import scoring
from papertrader.services.market_data import fetch_market_stats

router = APIRouter(prefix="/api/tokens", tags=["tokens"])


@router.get("")
def list_tokens(
    potential_buy: bool | None = None,
    include_flagged: bool = False,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_db),
):
    stmt = select(Token).order_by(Token.creation_time.desc())
    if potential_buy is not None:
        stmt = stmt.where(Token.is_potential_buy == potential_buy)
    if not include_flagged:
        stmt = stmt.where(Token.flagged == False)  # noqa: E712
    stmt = stmt.offset(offset).limit(min(limit, 500))
    return session.exec(stmt).all()


@router.get("/{mint}/analysis", response_model=TokenAnalysisRead)
async def analyze_token(mint: str, ctx: AppContext = Depends(get_context)):
    """Fetch fresh market stats and score them."""
    stats = await fetch_market_stats(mint)
    breakdown = scoring.score_instrument(stats)
    thresholds = scoring.ScoreThresholds(
        buy=ctx.settings.score_buy_threshold,
        sell=ctx.settings.score_sell_threshold,
    )
    return TokenAnalysisRead(
        mint_address=mint,
        stats_available=stats is not None,
        activity=breakdown.activity,
        momentum=breakdown.momentum,
        holders=breakdown.holders,
        liquidity=breakdown.liquidity,
        total=breakdown.total,
        classification=scoring.classify(breakdown.total, thresholds).value,
    )
