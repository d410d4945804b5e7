"""Execution Package — Exchange adapters and the adapter factory."""
from __future__ import annotations

__all__ = [
    "ExchangeAdapter", "ExchangeId", "ExchangeCredentials", "ConnectedAccount",
    "OrderResult", "PositionInfo", "BalanceInfo",
    "PaperExchangeAdapter", "CCXTExchangeAdapter",
    "BybitAdapter", "BinanceAdapter", "BitgetAdapter", "OkxAdapter",
    "build_exchange_adapter",
]

from voltex.services.execution.exchange_adapter import (
    ExchangeAdapter,
    ExchangeId,
    ExchangeCredentials,
    ConnectedAccount,
    OrderResult,
    PositionInfo,
    BalanceInfo,
)
from voltex.services.execution.paper_adapter import PaperExchangeAdapter
from voltex.services.execution.ccxt_adapter import (
    CCXTExchangeAdapter,
    BybitAdapter,
    BinanceAdapter,
    BitgetAdapter,
    OkxAdapter,
)
from voltex.services.execution.factory import build_exchange_adapter
