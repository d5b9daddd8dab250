"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

import papertrader.models  # noqa: F401  (registers tables)
from papertrader.config import Settings
from papertrader.engine.context import build_context
from papertrader.engine.ledger import PositionLedger
from papertrader.services.market_data import PriceBook, PriceQuote

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TickingClock:
    """Advances one second per call so records get distinct, ordered timestamps."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite test database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="ledger")
def ledger_fixture():
    """In-memory ledger, no store."""
    return PositionLedger(clock=TickingClock())


@pytest.fixture(name="db_ledger")
def db_ledger_fixture(engine):
    return PositionLedger(engine=engine, clock=TickingClock())


@pytest.fixture(name="price_book")
def price_book_fixture():
    return PriceBook(max_age_seconds=900)


@pytest.fixture(name="test_settings")
def test_settings_fixture():
    return Settings(_env_file=None, telegram_bot_token="", bitquery_api_key="")


@pytest.fixture(name="ctx")
def ctx_fixture(engine, test_settings):
    return build_context(cfg=test_settings, db_engine=engine)


def quote(price: float, quote_price: float | None = None) -> PriceQuote:
    return PriceQuote(price=price, quote_price=quote_price, as_of=datetime.now(timezone.utc))
