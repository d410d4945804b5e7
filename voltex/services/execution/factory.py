"""
Adapter factory — picks the concrete ExchangeAdapter for a session.

The execution mode comes from configuration; the exchange comes from the
account's credentials.  Selection happens once, when the session is built.
"""
import logging
from typing import Dict, Type

from voltex.config import Settings
from voltex.services.execution.ccxt_adapter import (
    BinanceAdapter,
    BitgetAdapter,
    BybitAdapter,
    CCXTExchangeAdapter,
    OkxAdapter,
)
from voltex.services.execution.exchange_adapter import ExchangeAdapter, ExchangeId
from voltex.services.execution.paper_adapter import PaperExchangeAdapter

logger = logging.getLogger(__name__)


ADAPTERS: Dict[ExchangeId, Type[CCXTExchangeAdapter]] = {
    ExchangeId.BYBIT: BybitAdapter,
    ExchangeId.BINANCE: BinanceAdapter,
    ExchangeId.BITGET: BitgetAdapter,
    ExchangeId.OKX: OkxAdapter,
}


def build_exchange_adapter(exchange: ExchangeId, settings: Settings) -> ExchangeAdapter:
    """Create an unconnected adapter for ``exchange`` in the configured mode.

    Values of ``settings.execution_mode``: 'paper' | 'testnet' | 'live'
    """
    if settings.execution_mode == "paper":
        logger.info(f"Execution mode: PAPER (simulated {exchange.value})")
        return PaperExchangeAdapter(balance=settings.paper_balance, exchange=exchange.value)

    adapter_cls = ADAPTERS[exchange]
    if settings.testnet:
        logger.info(f"Execution mode: TESTNET ({exchange.value})")
    else:
        logger.info(f"⚠️  Execution mode: LIVE on {exchange.value} — REAL MONEY ⚠️")
    return adapter_cls(testnet=settings.testnet, timeout_ms=settings.exchange_timeout_ms)
