"""Tests for market data parsing and the price book."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pandas as pd
import pytest

from papertrader.engine.errors import PriceUnavailable
from papertrader.services import market_data
from papertrader.services.market_data import PriceBook, PriceQuote

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# Price book
# ---------------------------------------------------------------------------

def test_price_book_returns_fresh_quote():
    book = PriceBook(max_age_seconds=900, clock=FixedClock())
    book.update("a", PriceQuote(price=1.5, as_of=NOW - timedelta(seconds=60)))
    assert book.get_price("a").price == 1.5


def test_price_book_stamps_missing_time():
    book = PriceBook(max_age_seconds=900, clock=FixedClock())
    book.update("a", PriceQuote(price=1.5))
    assert book.get_price("a").as_of == NOW


def test_stale_quote_is_unavailable():
    clock = FixedClock()
    book = PriceBook(max_age_seconds=900, clock=clock)
    book.update("a", PriceQuote(price=1.5))
    clock.now = NOW + timedelta(seconds=901)

    assert book.get_price("a") is None
    with pytest.raises(PriceUnavailable, match="stale"):
        book.require_price("a")


def test_missing_quote_is_unavailable():
    book = PriceBook(max_age_seconds=900, clock=FixedClock())
    assert book.get_price("x") is None
    with pytest.raises(PriceUnavailable, match="unavailable"):
        book.require_price("x")


def test_naive_timestamps_are_treated_as_utc():
    book = PriceBook(max_age_seconds=900, clock=FixedClock())
    book.update("a", PriceQuote(price=1.0, as_of=NOW.replace(tzinfo=None)))
    assert book.get_price("a") is not None


@pytest.mark.asyncio
async def test_refresh_keeps_previous_quote_on_failure():
    book = PriceBook(max_age_seconds=900, clock=FixedClock())
    book.update("a", PriceQuote(price=1.0))
    fresh = PriceQuote(price=2.0, as_of=NOW)

    async def fetch(mint):
        return fresh if mint == "b" else None

    with patch("papertrader.services.market_data.fetch_token_price", side_effect=fetch):
        updated = await book.refresh(["a", "b", "b"])

    assert updated == 1
    assert book.get_price("a").price == 1.0
    assert book.get_price("b") is fresh


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def test_parse_price():
    data = {"Solana": {"DEXTrades": [{
        "Block": {"Time": "2025-03-01T11:59:00Z"},
        "Trade": {"Buy": {"Price": 2.9e-08, "PriceInUSD": 4.1e-06}},
    }]}}
    result = market_data._parse_price(data)
    assert result.price == pytest.approx(2.9e-08)
    assert result.quote_price == pytest.approx(4.1e-06)
    assert result.as_of == datetime(2025, 3, 1, 11, 59, tzinfo=timezone.utc)


@pytest.mark.parametrize("data", [
    None,
    {"Solana": {"DEXTrades": []}},
    {"Solana": {"DEXTrades": [{"Trade": {"Buy": {"Price": 0}}}]}},
    {"Solana": {"DEXTrades": [{"Trade": {"Buy": {"Price": "nan"}}}]}},
])
def test_parse_price_absent(data):
    assert market_data._parse_price(data) is None


def test_parse_stats():
    data = {"Solana": {"DEXTradeByTokens": [{
        "buys": "120", "sells": "80", "buyers": "60", "sellers": "45",
        "buy_volume": "12.5", "sell_volume": "7.5",
    }]}}
    stats = market_data._parse_stats(data)
    assert stats.buy_count == 120
    assert stats.sell_count == 80
    assert stats.distinct_buyers == 60
    assert stats.distinct_sellers == 45
    assert stats.buy_volume == 12.5
    assert stats.sell_volume == 7.5


def test_parse_stats_empty():
    assert market_data._parse_stats({"Solana": {"DEXTradeByTokens": []}}) is None


def test_parse_price_series_resamples_to_closes():
    trades = [
        ("2025-03-01T11:00:30Z", 1.0),
        ("2025-03-01T11:03:00Z", 1.2),
        ("2025-03-01T11:06:00Z", 1.5),
        ("2025-03-01T11:12:00Z", 0),
    ]
    data = {"Solana": {"DEXTrades": [
        {"Block": {"Time": t}, "Trade": {"Buy": {"Price": p}}} for t, p in trades
    ]}}

    series = market_data._parse_price_series(data)

    assert series.tolist() == [1.2, 1.5]
    assert series.index[0] == pd.Timestamp("2025-03-01T11:00:00Z")


def test_parse_price_series_empty():
    assert market_data._parse_price_series(None).empty


def test_parse_pool_balance():
    data = {"Solana": {"BalanceUpdates": [
        {"BalanceUpdate": {"PostBalance": "100.5"}},
        {"BalanceUpdate": {"PostBalance": "20"}},
        {"BalanceUpdate": {}},
    ]}}
    assert market_data._parse_pool_balance(data) == pytest.approx(120.5)
    assert market_data._parse_pool_balance({}) is None


def test_parse_concentration():
    data = {"Solana": {"BalanceUpdates": [
        {"BalanceUpdate": {"Holding": 200_000_000}},
        {"BalanceUpdate": {"Holding": 100_000_000}},
    ]}}
    assert market_data._parse_concentration(data) == pytest.approx(30)
    assert market_data._parse_concentration(data, supply=100_000_000) == 100


def test_parse_new_tokens():
    data = {"Solana": {"TokenSupplyUpdates": [
        {
            "Block": {"Time": "2025-03-01T11:30:00Z"},
            "Transaction": {"Signer": "creator1"},
            "TokenSupplyUpdate": {"Currency": {
                "Name": "Dog", "Symbol": "DOG", "MintAddress": "mint1", "Decimals": 6, "Uri": "",
            }},
        },
        {"TokenSupplyUpdate": {"Currency": {"Name": "No mint"}}},
    ]}}

    [token] = market_data._parse_new_tokens(data)

    assert token["mint_address"] == "mint1"
    assert token["symbol"] == "DOG"
    assert token["uri"] is None
    assert token["creator_address"] == "creator1"
    assert token["creation_time"] == datetime(2025, 3, 1, 11, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fetchers degrade instead of raising
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fetch_price_network_error_returns_none():
    with patch.object(market_data, "_graphql", AsyncMock(side_effect=httpx.ConnectError("down"))):
        assert await market_data.fetch_token_price("mint") is None


@pytest.mark.asyncio
async def test_fetch_recent_tokens_error_returns_empty():
    with patch.object(market_data, "_graphql", AsyncMock(side_effect=RuntimeError("GraphQL errors"))):
        assert await market_data.fetch_recent_tokens(since=NOW) == []


@pytest.mark.asyncio
async def test_fetch_market_stats_combines_signals():
    stats_data = {"Solana": {"DEXTradeByTokens": [{"buys": 10, "sells": 5}]}}
    series = pd.Series([1.0, 1.1])

    with patch.object(market_data, "_graphql", AsyncMock(return_value=stats_data)), \
            patch.object(market_data, "fetch_price_series", AsyncMock(return_value=series)), \
            patch.object(market_data, "fetch_pool_balance", AsyncMock(return_value=None)), \
            patch.object(market_data, "fetch_holder_concentration", AsyncMock(return_value=25.0)):
        stats = await market_data.fetch_market_stats("mint")

    assert stats.buy_count == 10
    assert stats.recent_prices == [1.0, 1.1]
    assert stats.pool_balance is None
    assert stats.top_holder_concentration == 25.0
