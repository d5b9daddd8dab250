"""Token model: a tracked pump.fun token and its latest market data."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Token(SQLModel, table=True):
    __tablename__ = "token"

    mint_address: str = Field(primary_key=True)
    name: str | None = None
    symbol: str | None = None
    decimals: int | None = None
    creator_address: str | None = None
    creation_time: datetime | None = Field(default=None, index=True)
    uri: str | None = None

    # Market data, refreshed by the token_refresh task
    last_price: float | None = None  # in SOL
    last_price_usd: float | None = None
    price_updated_at: datetime | None = None
    trade_volume: float = 0.0
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    buy_count: int = 0
    sell_count: int = 0
    holder_count: int = 0
    last_score: float | None = None

    flagged: bool = False  # excluded from all entry strategies
    is_potential_buy: bool = Field(default=False, index=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
