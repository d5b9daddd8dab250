"""TradeRecord model: append-only record of every simulated buy or sell."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class TradeRecord(SQLModel, table=True):
    __tablename__ = "simulated_trade"

    id: int | None = Field(default=None, primary_key=True)
    instrument: str = Field(index=True)  # token mint address
    side: str = Field(index=True)  # "buy" or "sell"
    quantity: float
    unit_price: float  # in the base currency (SOL)
    quote_unit_price: float | None = None  # in the quote currency (USD)
    total_value: float
    quote_total_value: float | None = None
    reason: str | None = None
    strategy_name: str | None = Field(default=None, index=True)
    score: float | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    # Set once, on sells only
    realized_pnl: float | None = None
    realized_pnl_percent: float | None = None
    realized_pnl_quote: float | None = None

    @property
    def is_buy(self) -> bool:
        return self.side == "buy"
