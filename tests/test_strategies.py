"""Tests for entry and exit strategies."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import quote
from papertrader.config import Settings
from papertrader.services.scoring import Candidate, MarketStats
from papertrader.services.strategies import (
    EntryStrategy,
    ExitStrategy,
    GrowthStrategy,
    StopLossStrategy,
    TakeProfitStrategy,
    build_entry_strategies,
    build_exit_strategies,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _candidate(instrument: str, age_hours: float = 1, **overrides) -> Candidate:
    """A fresh token scoring 90 on the early score."""
    data = dict(
        instrument=instrument,
        name=f"Token {instrument}",
        symbol=instrument.upper(),
        created_at=NOW - timedelta(hours=age_hours),
        trade_volume=5000,
        buy_count=50,
        sell_count=10,
        holder_count=200,
    )
    data.update(overrides)
    return Candidate(**data)


# ---------------------------------------------------------------------------
# 1. Early entry
# ---------------------------------------------------------------------------

def test_entry_sizes_position_by_score(ledger, price_book):
    price_book.update("a", quote(0.002, 0.3))

    [intent] = EntryStrategy().evaluate([_candidate("a")], ledger, price_book, now=NOW)

    assert intent.side == "buy"
    assert intent.score == pytest.approx(90)
    assert intent.quantity == pytest.approx(0.9 * 10000 / 0.002)
    assert intent.unit_price == 0.002
    assert intent.quote_unit_price == 0.3
    assert intent.strategy_name == "early-entry"


def test_entry_filters_ineligible_candidates(ledger, price_book):
    for mint in ("old", "flagged", "novolume", "held", "noprice", "weak"):
        if mint != "noprice":
            price_book.update(mint, quote(1.0))
    ledger.record_buy("held", 1, 1.0)
    candidates = [
        _candidate("old", age_hours=25),
        _candidate("flagged", flagged=True),
        _candidate("novolume", trade_volume=0),
        _candidate("held"),
        _candidate("noprice"),
        _candidate("weak", name=None, buy_count=0, sell_count=0, holder_count=0),
    ]

    assert EntryStrategy().evaluate(candidates, ledger, price_book, now=NOW) == []


def test_entry_prefers_market_stats_score(ledger, price_book):
    price_book.update("a", quote(1.0))
    weak_stats = MarketStats(pool_balance=100)  # total 3
    candidate = _candidate("a", stats=weak_stats)

    assert EntryStrategy().evaluate([candidate], ledger, price_book, now=NOW) == []


def test_entry_caps_candidates_newest_first(ledger, price_book):
    candidates = [_candidate(f"t{i}", age_hours=i + 1) for i in range(5)]
    for c in candidates:
        price_book.update(c.instrument, quote(1.0))

    intents = EntryStrategy(max_candidates=2).evaluate(candidates, ledger, price_book, now=NOW)

    assert [i.instrument for i in intents] == ["t0", "t1"]


def test_entry_does_not_touch_ledger(price_book):
    ledger_view = MagicMock()
    ledger_view.current_holding.return_value = 0
    price_book.update("a", quote(1.0))

    EntryStrategy().evaluate([_candidate("a")], ledger_view, price_book, now=NOW)

    ledger_view.record_buy.assert_not_called()
    ledger_view.record_sell.assert_not_called()


# ---------------------------------------------------------------------------
# 2. Growth entry
# ---------------------------------------------------------------------------

def test_growth_only_takes_potential_buys(ledger, price_book):
    price_book.update("a", quote(1.0))
    price_book.update("b", quote(1.0))
    candidates = [
        _candidate("a", age_hours=100, is_potential_buy=True),
        _candidate("b"),
    ]

    [intent] = GrowthStrategy().evaluate(candidates, ledger, price_book, now=NOW)

    assert intent.instrument == "a"
    assert intent.strategy_name == "growth-entry"
    assert intent.quantity == pytest.approx(0.9 * 15000)


def test_growth_threshold_is_higher(ledger, price_book):
    price_book.update("a", quote(1.0))
    # 20 info + 30 volume + 10 ratio + 5 holders = 65
    candidate = _candidate("a", is_potential_buy=True, buy_count=12, sell_count=10, holder_count=50)

    assert GrowthStrategy().evaluate([candidate], ledger, price_book, now=NOW) == []
    assert len(EntryStrategy().evaluate([candidate], ledger, price_book, now=NOW)) == 1


# ---------------------------------------------------------------------------
# 3. Exits
# ---------------------------------------------------------------------------

def test_take_profit_exits_full_position(ledger, price_book):
    ledger.record_buy("a", 60, 1.0)
    ledger.record_buy("a", 40, 1.0)
    price_book.update("a", quote(1.31, 190.0))

    [intent] = TakeProfitStrategy().evaluate([], ledger, price_book)

    assert intent.side == "sell"
    assert intent.quantity == pytest.approx(100)
    assert intent.unit_price == 1.31
    assert intent.quote_unit_price == 190.0
    assert intent.strategy_name == "take-profit"


def test_take_profit_below_target(ledger, price_book):
    ledger.record_buy("a", 100, 1.0)
    price_book.update("a", quote(1.29))
    assert TakeProfitStrategy().evaluate([], ledger, price_book) == []


def test_stop_loss_triggers_at_limit(ledger, price_book):
    ledger.record_buy("a", 100, 1.0)
    ledger.record_buy("b", 100, 1.0)
    price_book.update("a", quote(0.84))
    price_book.update("b", quote(0.9))

    intents = StopLossStrategy().evaluate([], ledger, price_book)

    assert [i.instrument for i in intents] == ["a"]
    assert intents[0].strategy_name == "stop-loss"


def test_unknown_price_never_exits(ledger, price_book):
    ledger.record_buy("a", 100, 1.0)
    assert TakeProfitStrategy().evaluate([], ledger, price_book) == []
    assert StopLossStrategy().evaluate([], ledger, price_book) == []


def test_exit_evaluation_leaves_ledger_unchanged(ledger, price_book):
    ledger.record_buy("a", 100, 1.0)
    price_book.update("a", quote(2.0))

    TakeProfitStrategy().evaluate([], ledger, price_book)

    assert ledger.current_holding("a") == 100
    assert len(ledger.trade_history()) == 1


# ---------------------------------------------------------------------------
# 4. Builders
# ---------------------------------------------------------------------------

def test_builders_apply_settings():
    cfg = Settings(_env_file=None, entry_threshold=55, growth_budget=500, take_profit_pct=50, stop_loss_pct=5)

    entry, growth = build_entry_strategies(cfg)
    take_profit, stop_loss = build_exit_strategies(cfg)

    assert entry.entry_threshold == 55
    assert growth.allocation_budget == 500
    assert take_profit.profit_threshold == 50
    assert stop_loss.loss_threshold == 5


def test_strategies_are_immutable():
    with pytest.raises(AttributeError):
        EntryStrategy().entry_threshold = 10


def test_exit_base_requires_trigger():
    with pytest.raises(TypeError):
        ExitStrategy(name="exit")
