"""
Database models for the trading service.
Accounts (exchange session settings) and the trade journal.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Index
from sqlalchemy.orm import declarative_base
from datetime import datetime

Base = declarative_base()


class TradingAccount(Base):
    """Persisted exchange session for one account.

    Only used to rehydrate a gateway session; ladder state is never
    restored from here.
    """
    __tablename__ = "trading_accounts"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, unique=True, index=True)
    exchange = Column(String, nullable=True)       # bybit, binance, bitget, okx
    api_key = Column(String, nullable=True)
    api_secret = Column(String, nullable=True)
    passphrase = Column(String, nullable=True)      # okx / bitget
    connected = Column(Boolean, default=False)
    is_active = Column(Boolean, default=False)      # trading flag
    trading_pair = Column(String, default="BTC/USDT")
    strategy = Column(String, default="steady_climb")
    last_connected = Column(DateTime, nullable=True)
    last_trade_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Trade(Base):
    """Trade journal: one row per order the engine submitted."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String, index=True)
    symbol = Column(String)
    side = Column(String)               # buy, sell, close
    trade_type = Column(String)         # open, close
    quantity = Column(Float)
    price = Column(Float, default=0.0)
    order_id = Column(String, nullable=True)
    exchange = Column(String)
    strategy = Column(String, nullable=True)
    martingale_level = Column(Integer, nullable=True)
    status = Column(String, default="filled")   # filled, failed, closed
    leverage = Column(Integer, default=25)
    margin = Column(Float, default=0.0)
    pnl = Column(Float, default=0.0)
    fees = Column(Float, default=0.0)
    error = Column(String, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_trades_account_time", "account_id", "timestamp"),
        Index("ix_trades_strategy_level", "strategy", "martingale_level"),
    )
