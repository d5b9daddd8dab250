"""Heuristic scoring of pump.fun tokens.

All functions are pure computation: no I/O, no database access. Market data
arrives as a MarketStats snapshot; any field left as None is an absent signal
and its sub-score is skipped rather than counted as zero.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime

import numpy as np

WEIGHT_ACTIVITY = 0.35
WEIGHT_MOMENTUM = 0.30
WEIGHT_HOLDERS = 0.20
WEIGHT_LIQUIDITY = 0.15


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass
class MarketStats:
    """Recent trading statistics for one instrument."""
    buy_count: int | None = None
    sell_count: int | None = None
    distinct_buyers: int | None = None
    distinct_sellers: int | None = None
    buy_volume: float | None = None
    sell_volume: float | None = None
    top_holder_concentration: float | None = None  # percent held by the top holders
    recent_prices: list[float] = field(default_factory=list)  # oldest first
    pool_balance: float | None = None  # bonding curve balance in SOL


@dataclass
class Candidate:
    """A token considered by the entry strategies."""
    instrument: str
    name: str | None = None
    symbol: str | None = None
    created_at: datetime | None = None
    trade_volume: float = 0.0
    buy_count: int = 0
    sell_count: int = 0
    holder_count: int = 0
    flagged: bool = False
    is_potential_buy: bool = False
    stats: MarketStats | None = None


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class Classification(str, enum.Enum):
    BUY_CANDIDATE = "buy_candidate"
    SELL_CANDIDATE = "sell_candidate"
    NEUTRAL = "neutral"


@dataclass
class ScoreBreakdown:
    """Sub-scores in [0, 100], or None when the underlying signal was absent."""
    activity: float | None = None
    momentum: float | None = None
    holders: float | None = None
    liquidity: float | None = None
    total: float = 0.0

    @property
    def signals_present(self) -> int:
        return sum(s is not None for s in (self.activity, self.momentum, self.holders, self.liquidity))


@dataclass(frozen=True)
class ScoreThresholds:
    buy: float = 70.0
    sell: float = 30.0

    def __post_init__(self):
        if not (0 <= self.sell < self.buy <= 100):
            raise ValueError(
                f"Thresholds must satisfy 0 <= sell < buy <= 100, got sell={self.sell} buy={self.buy}"
            )


# ---------------------------------------------------------------------------
# Sub-scores
# ---------------------------------------------------------------------------

def _clamp(value: float) -> float:
    return float(np.clip(value, 0.0, 100.0))


def activity_score(stats: MarketStats) -> float | None:
    """Trade count, distinct traders and buy pressure."""
    if stats.buy_count is None and stats.sell_count is None:
        return None
    buys = stats.buy_count or 0
    sells = stats.sell_count or 0
    trades = buys + sells
    traders = (stats.distinct_buyers or 0) + (stats.distinct_sellers or 0)

    score = min(50.0, trades / 1000 * 50) + min(30.0, traders / 500 * 30)
    if trades > 0:
        buy_ratio = buys / trades
        score += 20.0 if buy_ratio > 0.6 else buy_ratio / 0.6 * 20
    return _clamp(score)


def momentum_score(prices: list[float]) -> float | None:
    """Blend of overall and recent relative price changes, mapped from +/-30% to [0, 100]."""
    values = np.asarray(prices, dtype=float)
    values = values[np.isfinite(values) & (values > 0)]
    if len(values) < 2:
        return None

    changes = np.diff(values) / values[:-1]
    momentum = 0.4 * float(np.mean(changes)) + 0.6 * float(np.mean(changes[-3:]))
    return _clamp((momentum + 0.3) / 0.6 * 100)


def holder_score(concentration: float | None) -> float | None:
    """Lower top-holder concentration scores higher; 40% or less is full marks."""
    if concentration is None:
        return None
    return _clamp((80.0 - concentration) / 40 * 100)


def liquidity_score(pool_balance: float | None) -> float | None:
    if pool_balance is None:
        return None
    return _clamp(pool_balance / 500 * 100)


# ---------------------------------------------------------------------------
# Main scoring functions
# ---------------------------------------------------------------------------

def score_instrument(stats: MarketStats | None) -> ScoreBreakdown:
    """Weighted composite score. A missing stats snapshot scores zero."""
    if stats is None:
        return ScoreBreakdown()

    breakdown = ScoreBreakdown(
        activity=activity_score(stats),
        momentum=momentum_score(stats.recent_prices),
        holders=holder_score(stats.top_holder_concentration),
        liquidity=liquidity_score(stats.pool_balance),
    )
    weighted = [
        (breakdown.activity, WEIGHT_ACTIVITY),
        (breakdown.momentum, WEIGHT_MOMENTUM),
        (breakdown.holders, WEIGHT_HOLDERS),
        (breakdown.liquidity, WEIGHT_LIQUIDITY),
    ]
    breakdown.total = _clamp(sum(score * weight for score, weight in weighted if score is not None))
    return breakdown


def classify(score: float, thresholds: ScoreThresholds | None = None) -> Classification:
    thresholds = thresholds or ScoreThresholds()
    if score >= thresholds.buy:
        return Classification.BUY_CANDIDATE
    if score <= thresholds.sell:
        return Classification.SELL_CANDIDATE
    return Classification.NEUTRAL


def early_token_score(candidate: Candidate) -> float:
    """Additive score for freshly created tokens with little market history.

    Basic metadata 20, volume up to 30, buy/sell balance up to 25 and holder
    count up to 25, capped at 100.
    """
    score = 0.0
    if candidate.name and candidate.symbol:
        score += 20

    if candidate.trade_volume > 0:
        score += min(30.0, candidate.trade_volume / 1000 * 10)

    if candidate.sell_count > 0:
        ratio = candidate.buy_count / candidate.sell_count
        if ratio > 1.5:
            score += 20
        elif ratio > 1:
            score += 10
    elif candidate.buy_count > 0:
        score += 25  # only buys so far

    if candidate.holder_count > 10:
        score += min(25.0, candidate.holder_count / 10)

    return min(100.0, score)


def candidate_score(candidate: Candidate) -> float:
    """Full breakdown total when market stats are attached, early score otherwise."""
    if candidate.stats is not None:
        return score_instrument(candidate.stats).total
    return early_token_score(candidate)


def rank_candidates(candidates: list[Candidate]) -> list[tuple[Candidate, float]]:
    """Score candidates and sort by score, highest first."""
    scored = [(c, candidate_score(c)) for c in candidates]
    return sorted(scored, key=lambda pair: pair[1], reverse=True)
