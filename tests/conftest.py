"""Shared fixtures: an in-memory database, a connected paper gateway and an engine."""

import os

# Must be set before voltex.database / main are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EXECUTION_MODE"] = "paper"
os.environ["LOSS_MONITOR_ENABLED"] = "false"

import pytest
from sqlalchemy.orm import sessionmaker

from voltex.config import Settings
from voltex.database import create_db_engine
from voltex.models.database import Base
from voltex.services.execution import ExchangeCredentials, ExchangeId, PaperExchangeAdapter
from voltex.services.martingale_engine import MartingaleEngine
from voltex.services.trade_journal import TradeJournal

BTC = "BTC/USDT"
ETH = "ETH/USDT"


@pytest.fixture
def credentials() -> ExchangeCredentials:
    return ExchangeCredentials(exchange=ExchangeId.BYBIT, api_key="key", api_secret="secret")


@pytest.fixture
def settings() -> Settings:
    return Settings(execution_mode="paper", loss_monitor_enabled=False, stop_all_workers=4)


@pytest.fixture
def session_factory():
    db_engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=db_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    yield factory
    db_engine.dispose()


@pytest.fixture
def journal(session_factory) -> TradeJournal:
    return TradeJournal(session_factory)


@pytest.fixture
def paper(credentials) -> PaperExchangeAdapter:
    adapter = PaperExchangeAdapter(balance=10_000.0, prices={BTC: 100.0, ETH: 100.0})
    adapter.connect(credentials)
    return adapter


@pytest.fixture
def engine(paper, journal, settings, credentials) -> MartingaleEngine:
    eng = MartingaleEngine("acct-1", journal=journal, settings=settings)
    eng.connect_gateway(paper, credentials)
    return eng
