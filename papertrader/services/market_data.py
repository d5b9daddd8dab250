"""Market data fetching.

Prices, trade statistics and new token listings come from the Bitquery
GraphQL API (Solana, pump.fun protocol). Fetchers never raise: on any error
they log and return None or an empty result, and the caller treats the signal
as absent.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
import numpy as np
import pandas as pd

from papertrader.config import settings
from papertrader.engine.errors import PriceUnavailable
from papertrader.services.scoring import MarketStats
from papertrader.utils.constants import (
    PUMP_LIQUIDITY_OWNERS,
    PUMP_PROGRAM_ADDRESS,
    PUMP_PROTOCOL_NAME,
    PUMP_TOKEN_SUPPLY,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

@dataclass
class PriceQuote:
    """Latest price of an instrument in SOL, with the USD price when known."""
    price: float
    quote_price: float | None = None
    as_of: datetime | None = None


class PriceBook:
    """Snapshot of the latest quotes, filled asynchronously before strategies run.

    Lookups are synchronous so the ledger and strategies never await. A quote
    older than ``max_age_seconds`` counts as unavailable.
    """

    def __init__(self, max_age_seconds: int | None = None, clock=None):
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.price_max_age_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._quotes: dict[str, PriceQuote] = {}

    def update(self, instrument: str, quote: PriceQuote):
        if quote.as_of is None:
            quote.as_of = self._clock()
        self._quotes[instrument] = quote

    def get_price(self, instrument: str) -> PriceQuote | None:
        quote = self._quotes.get(instrument)
        if quote is None:
            return None
        age = (self._clock() - _as_utc(quote.as_of)).total_seconds()
        if age > self.max_age_seconds:
            logger.debug(f"Price for {instrument} is stale ({age:.0f}s old)")
            return None
        return quote

    def require_price(self, instrument: str) -> PriceQuote:
        quote = self.get_price(instrument)
        if quote is None:
            reason = "stale" if instrument in self._quotes else "unavailable"
            raise PriceUnavailable(instrument, reason)
        return quote

    async def refresh(self, instruments: list[str]) -> int:
        """Fetch fresh quotes for the given instruments. Returns how many were updated."""
        unique = list(dict.fromkeys(instruments))
        if not unique:
            return 0
        quotes = await asyncio.gather(*(fetch_token_price(i) for i in unique))
        updated = 0
        for instrument, quote in zip(unique, quotes):
            if quote is not None:
                self.update(instrument, quote)
                updated += 1
        logger.info(f"Price book refreshed: {updated}/{len(unique)} instruments")
        return updated


def _as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# GraphQL queries
# ---------------------------------------------------------------------------

TOKEN_PRICE_QUERY = """
query ($token: String!, $protocol: String!) {
  Solana {
    DEXTrades(
      limit: {count: 1}
      orderBy: {descending: Block_Time}
      where: {Transaction: {Result: {Success: true}},
              Trade: {Dex: {ProtocolName: {is: $protocol}},
                      Buy: {Currency: {MintAddress: {is: $token}}}}}
    ) {
      Block { Time }
      Trade { Buy { Price PriceInUSD } }
    }
  }
}
"""

TOKEN_STATS_QUERY = """
query ($token: String!, $protocol: String!) {
  Solana {
    DEXTradeByTokens(
      where: {Transaction: {Result: {Success: true}},
              Trade: {Currency: {MintAddress: {is: $token}},
                      Dex: {ProtocolName: {is: $protocol}}}}
    ) {
      buys: count(if: {Trade: {Side: {Type: {is: buy}}}})
      sells: count(if: {Trade: {Side: {Type: {is: sell}}}})
      buyers: uniq(of: Trade_Account_Owner, if: {Trade: {Side: {Type: {is: buy}}}})
      sellers: uniq(of: Trade_Account_Owner, if: {Trade: {Side: {Type: {is: sell}}}})
      buy_volume: sum(of: Trade_Side_AmountInUSD, if: {Trade: {Side: {Type: {is: buy}}}})
      sell_volume: sum(of: Trade_Side_AmountInUSD, if: {Trade: {Side: {Type: {is: sell}}}})
    }
  }
}
"""

PRICE_SERIES_QUERY = """
query ($token: String!, $protocol: String!, $since: DateTime!) {
  Solana {
    DEXTrades(
      orderBy: {ascending: Block_Time}
      where: {Transaction: {Result: {Success: true}},
              Block: {Time: {since: $since}},
              Trade: {Dex: {ProtocolName: {is: $protocol}},
                      Buy: {Currency: {MintAddress: {is: $token}}}}}
    ) {
      Block { Time }
      Trade { Buy { Price } }
    }
  }
}
"""

LIQUIDITY_QUERY = """
query ($token: String!, $owners: [String!]) {
  Solana {
    BalanceUpdates(
      where: {BalanceUpdate: {Account: {Token: {Owner: {in: $owners}}},
                              Currency: {MintAddress: {is: $token}}}}
    ) {
      BalanceUpdate { PostBalance(maximum: Block_Slot) }
    }
  }
}
"""

TOP_HOLDERS_QUERY = """
query ($token: String!) {
  Solana {
    BalanceUpdates(
      limit: {count: 10}
      orderBy: {descendingByField: "BalanceUpdate_Holding_maximum"}
      where: {BalanceUpdate: {Currency: {MintAddress: {is: $token}}},
              Transaction: {Result: {Success: true}}}
    ) {
      BalanceUpdate {
        Account { Owner }
        Holding: PostBalance(maximum: Block_Slot, selectWhere: {gt: "0"})
      }
    }
  }
}
"""

NEW_TOKENS_QUERY = """
query ($program: String!, $since: DateTime!, $limit: Int!) {
  Solana {
    TokenSupplyUpdates(
      limit: {count: $limit}
      orderBy: {descending: Block_Time}
      where: {Block: {Time: {since: $since}},
              Instruction: {Program: {Address: {is: $program}, Method: {is: "create"}}}}
    ) {
      Block { Time }
      Transaction { Signer }
      TokenSupplyUpdate {
        Currency { Name Symbol MintAddress Decimals Uri }
      }
    }
  }
}
"""


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------

async def _graphql(query: str, variables: dict) -> dict | None:
    """POST a query to Bitquery and return the ``data`` object."""
    headers = {"Content-Type": "application/json"}
    if settings.bitquery_api_key:
        headers["Authorization"] = f"Bearer {settings.bitquery_api_key}"

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.post(
            settings.bitquery_api_url,
            json={"query": query, "variables": variables},
            headers=headers,
        )
        response.raise_for_status()
        payload = response.json()

    if payload.get("errors"):
        raise RuntimeError(f"GraphQL errors: {payload['errors']}")
    return payload.get("data")


async def fetch_token_price(mint: str) -> PriceQuote | None:
    """Latest trade price of a token, or None if it has never traded."""
    try:
        data = await _graphql(TOKEN_PRICE_QUERY, {"token": mint, "protocol": PUMP_PROTOCOL_NAME})
        return _parse_price(data)
    except Exception as e:
        logger.error(f"Error fetching price for {mint}: {e}")
        return None


async def fetch_price_series(mint: str, lookback: timedelta = timedelta(hours=6)) -> pd.Series:
    since = datetime.now(timezone.utc) - lookback
    try:
        data = await _graphql(
            PRICE_SERIES_QUERY,
            {"token": mint, "protocol": PUMP_PROTOCOL_NAME, "since": since.isoformat()},
        )
        return _parse_price_series(data)
    except Exception as e:
        logger.error(f"Error fetching price series for {mint}: {e}")
        return pd.Series(dtype=float)


async def fetch_pool_balance(mint: str) -> float | None:
    """Bonding curve balance held by the pump.fun pool accounts."""
    try:
        data = await _graphql(LIQUIDITY_QUERY, {"token": mint, "owners": PUMP_LIQUIDITY_OWNERS})
        return _parse_pool_balance(data)
    except Exception as e:
        logger.error(f"Error fetching liquidity for {mint}: {e}")
        return None


async def fetch_holder_concentration(mint: str) -> float | None:
    """Percent of supply held by the top 10 holders."""
    try:
        data = await _graphql(TOP_HOLDERS_QUERY, {"token": mint})
        return _parse_concentration(data)
    except Exception as e:
        logger.error(f"Error fetching holders for {mint}: {e}")
        return None


async def fetch_market_stats(mint: str) -> MarketStats | None:
    """Gather every scoring input for a token.

    Returns None only when the core trade statistics are unavailable; the
    other inputs individually degrade to absent.
    """
    try:
        data = await _graphql(TOKEN_STATS_QUERY, {"token": mint, "protocol": PUMP_PROTOCOL_NAME})
        stats = _parse_stats(data)
    except Exception as e:
        logger.error(f"Error fetching market stats for {mint}: {e}")
        return None
    if stats is None:
        return None

    prices, pool_balance, concentration = await asyncio.gather(
        fetch_price_series(mint),
        fetch_pool_balance(mint),
        fetch_holder_concentration(mint),
    )
    stats.recent_prices = prices.tolist()
    stats.pool_balance = pool_balance
    stats.top_holder_concentration = concentration
    return stats


async def fetch_recent_tokens(since: datetime, limit: int = 50) -> list[dict]:
    """Tokens created on pump.fun since the given time, newest first."""
    try:
        data = await _graphql(
            NEW_TOKENS_QUERY,
            {"program": PUMP_PROGRAM_ADDRESS, "since": since.isoformat(), "limit": limit},
        )
        return _parse_new_tokens(data)
    except Exception as e:
        logger.error(f"Error fetching new tokens: {e}")
        return []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_float(value) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if np.isfinite(number) else None


def _parse_time(value) -> datetime | None:
    if not value:
        return None
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.to_pydatetime()


def _solana(data: dict | None) -> dict:
    return (data or {}).get("Solana") or {}


def _parse_price(data: dict | None) -> PriceQuote | None:
    """Parse the latest-trade response.

    Shape: {"Solana": {"DEXTrades": [{"Block": {"Time": "..."},
            "Trade": {"Buy": {"Price": 2.9e-08, "PriceInUSD": 4.1e-06}}}]}}
    """
    trades = _solana(data).get("DEXTrades") or []
    if not trades:
        return None
    buy = trades[0].get("Trade", {}).get("Buy", {})
    price = _to_float(buy.get("Price"))
    if not price or price <= 0:
        return None
    usd = _to_float(buy.get("PriceInUSD"))
    return PriceQuote(
        price=price,
        quote_price=usd if usd and usd > 0 else None,
        as_of=_parse_time(trades[0].get("Block", {}).get("Time")),
    )


def _parse_stats(data: dict | None) -> MarketStats | None:
    rows = _solana(data).get("DEXTradeByTokens") or []
    if not rows:
        return None
    row = rows[0]

    def count(key):
        value = _to_float(row.get(key))
        return int(value) if value is not None else None

    return MarketStats(
        buy_count=count("buys"),
        sell_count=count("sells"),
        distinct_buyers=count("buyers"),
        distinct_sellers=count("sellers"),
        buy_volume=_to_float(row.get("buy_volume")),
        sell_volume=_to_float(row.get("sell_volume")),
    )


def _parse_price_series(data: dict | None, resample: str = "5min") -> pd.Series:
    """Trade prices resampled to closing prices per bucket, oldest first."""
    try:
        trades = _solana(data).get("DEXTrades") or []
        records = [
            {"t": t["Block"]["Time"], "price": t["Trade"]["Buy"]["Price"]}
            for t in trades
            if t.get("Block", {}).get("Time") and t.get("Trade", {}).get("Buy", {}).get("Price") is not None
        ]
        df = pd.DataFrame(records)
        if df.empty:
            return pd.Series(dtype=float)

        df["t"] = pd.to_datetime(df["t"], utc=True)
        df["price"] = pd.to_numeric(df["price"], errors="coerce")
        df = df.set_index("t").sort_index()
        series = df["price"].resample(resample).last().dropna()
        return series[series > 0]
    except Exception as e:
        logger.error(f"Failed to parse price series: {e}")
        return pd.Series(dtype=float)


def _parse_pool_balance(data: dict | None) -> float | None:
    updates = _solana(data).get("BalanceUpdates") or []
    balances = [
        _to_float(u.get("BalanceUpdate", {}).get("PostBalance"))
        for u in updates
    ]
    balances = [b for b in balances if b is not None]
    if not balances:
        return None
    return float(np.sum(balances))


def _parse_concentration(data: dict | None, supply: float = PUMP_TOKEN_SUPPLY) -> float | None:
    updates = _solana(data).get("BalanceUpdates") or []
    holdings = [
        _to_float(u.get("BalanceUpdate", {}).get("Holding"))
        for u in updates
    ]
    holdings = [h for h in holdings if h is not None and h > 0]
    if not holdings or supply <= 0:
        return None
    return float(min(100.0, np.sum(holdings) / supply * 100))


def _parse_new_tokens(data: dict | None) -> list[dict]:
    """Flatten TokenSupplyUpdates into Token column dicts."""
    tokens = []
    for update in _solana(data).get("TokenSupplyUpdates") or []:
        currency = update.get("TokenSupplyUpdate", {}).get("Currency") or {}
        mint = currency.get("MintAddress")
        if not mint:
            continue
        tokens.append({
            "mint_address": mint,
            "name": currency.get("Name") or None,
            "symbol": currency.get("Symbol") or None,
            "decimals": currency.get("Decimals"),
            "uri": currency.get("Uri") or None,
            "creator_address": update.get("Transaction", {}).get("Signer"),
            "creation_time": _parse_time(update.get("Block", {}).get("Time")),
        })
    return tokens
