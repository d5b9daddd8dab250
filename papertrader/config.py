"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'data' / 'papertrader.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Bitquery (market data + prices)
    bitquery_api_url: str = "https://streaming.bitquery.io/eap"
    bitquery_api_key: str = ""
    http_timeout_seconds: float = 15.0
    price_max_age_seconds: int = 900  # quotes older than this count as unavailable

    # Scheduler
    auto_start_scheduler: bool = False
    scheduler_timezone: str = "UTC"
    buy_cron: str = "0 9 * * *"
    sell_cron: str = "0 15 * * *"
    holdings_cron: str = "0 * * * *"
    performance_cron: str = "0 20 * * *"
    token_refresh_cron: str = "*/10 * * * *"

    # Strategies
    entry_threshold: float = 60.0
    entry_budget: float = 10000.0
    entry_max_age_hours: float = 24.0
    growth_threshold: float = 70.0
    growth_budget: float = 15000.0
    take_profit_pct: float = 30.0
    stop_loss_pct: float = 15.0
    score_buy_threshold: float = 70.0
    score_sell_threshold: float = 30.0
    recent_token_limit: int = 10

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "PT_", "env_file": ".env"}


settings = Settings()
