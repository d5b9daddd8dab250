"""Pydantic schemas for the simulation and scheduler APIs."""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator


class _TradeRequest(BaseModel):
    instrument: str = Field(min_length=1, max_length=64)
    quantity: float = Field(gt=0, allow_inf_nan=False)
    unit_price: float = Field(gt=0, allow_inf_nan=False)
    quote_unit_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    reason: str | None = Field(default=None, max_length=500)
    strategy_name: str | None = Field(default=None, max_length=64)

    @field_validator("instrument")
    @classmethod
    def _trim_instrument(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text


class BuyRequest(_TradeRequest):
    score: float | None = Field(default=None, ge=0, le=100)


class SellRequest(_TradeRequest):
    pass


class TradeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    instrument: str
    side: str
    quantity: float
    unit_price: float
    quote_unit_price: float | None
    total_value: float
    quote_total_value: float | None
    reason: str | None
    strategy_name: str | None
    score: float | None
    created_at: datetime
    realized_pnl: float | None
    realized_pnl_percent: float | None
    realized_pnl_quote: float | None


class PositionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    instrument: str
    total_bought: float
    total_sold: float
    holding: float
    cost_basis: float
    average_cost: float
    realized_pnl: float
    current_price: float | None
    price_as_of: datetime | None
    current_value: float | None
    unrealized_pnl: float | None
    total_pnl: float | None
    pnl_percent: float | None


class HoldingsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    positions: list[PositionRead]
    total_cost: float
    total_value: float
    total_pnl: float
    total_pnl_percent: float
    unpriced: list[str]


class StrategyPerformanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    strategy_name: str
    total_trades: int
    profitable_trades: int
    loss_trades: int
    win_rate: float
    total_pnl: float
    avg_pnl_percent: float
    max_profit_percent: float
    max_loss_percent: float


class TaskRead(BaseModel):
    id: str
    name: str
    cron_spec: str
    state: str
    last_run_at: datetime | None
    next_run_at: datetime | None
    run_count: int
    skipped_count: int
    last_error: str | None
    last_duration_seconds: float | None


class SchedulerStatusRead(BaseModel):
    running: bool
    started_at: datetime | None
    task_count: int
    tasks: list[TaskRead]


class TokenAnalysisRead(BaseModel):
    mint_address: str
    stats_available: bool
    activity: float | None
    momentum: float | None
    holders: float | None
    liquidity: float | None
    total: float
    classification: str
