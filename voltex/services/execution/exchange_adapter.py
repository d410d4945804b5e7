"""
ExchangeAdapter — Abstract interface for exchange access.
=========================================================
The MartingaleEngine delegates every exchange interaction to an adapter.
Concrete implementations:

  • PaperExchangeAdapter  — in-memory simulated exchange
  • CCXTExchangeAdapter   — real futures orders via CCXT (one subclass per exchange)

The engine computes sizing and ladder state; the adapter only talks to
the exchange.  One adapter instance serves exactly one account session.

Error contract:
  - Execution calls (place / close) never raise for exchange rejections;
    they return ``OrderResult(success=False, error=...)``.
  - Query calls (balance / positions / min size) raise ``GatewayError``.
  - ``connect`` raises ``AuthError`` with a structured reason.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence


class ExchangeId(str, Enum):
    """Exchanges with a concrete adapter."""
    BYBIT = "bybit"
    BINANCE = "binance"
    BITGET = "bitget"
    OKX = "okx"

    @property
    def requires_passphrase(self) -> bool:
        return self in (ExchangeId.BITGET, ExchangeId.OKX)


# ── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExchangeCredentials:
    exchange: ExchangeId
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None

    def __repr__(self) -> str:
        return f"ExchangeCredentials(exchange={self.exchange.value!r}, api_key='***')"


@dataclass(frozen=True)
class ConnectedAccount:
    """Returned by a successful ``connect``."""
    exchange: str
    mode: str
    balance: float
    connected_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class OrderResult:
    """Standardised result returned by every adapter after execution."""
    success: bool
    order_id: Optional[str] = None
    fill_price: float = 0.0
    filled_qty: float = 0.0
    commission: float = 0.0
    pnl: float = 0.0                # unrealized PnL at close time
    noop: bool = False              # close found no position
    error: Optional[str] = None
    raw_response: Optional[Dict] = None


@dataclass
class PositionInfo:
    """Exchange-agnostic representation of an open position."""
    symbol: str                     # BASE/QUOTE
    side: str                       # "long" | "short"
    size: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    leverage: int
    margin: float
    liquidation_price: float = 0.0


@dataclass
class BalanceInfo:
    """Exchange-agnostic account balance snapshot (USDT)."""
    total: float
    available: float
    margin_used: float
    unrealized_pnl: float
    # Per-asset breakdown: {"USDT": {"total": ..., "free": ..., "used": ...}, ...}
    assets: Dict[str, Dict[str, float]] = field(default_factory=dict)


# ── Abstract Base Class ─────────────────────────────────────────────────────


class ExchangeAdapter(ABC):
    """Interface every exchange adapter must implement.

    All methods are **synchronous**: the engine runs them from FastAPI's
    worker threads and its own close fan-out pool.  CCXT adapters bridge
    to async internally.
    """

    # ── Session ─────────────────────────────────────────────────────────

    @abstractmethod
    def connect(self, credentials: ExchangeCredentials) -> ConnectedAccount:
        """Verify credentials (balance round-trip) and mark connected."""
        ...

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    # ── Core execution ──────────────────────────────────────────────────

    @abstractmethod
    def place_market_order(
        self,
        symbol: str,
        side: str,
        size: float,
        *,
        leverage: int,
        margin_mode: str = "isolated",
        time_in_force: str = "IOC",
    ) -> OrderResult:
        """Submit a market order for ``size`` base units."""
        ...

    @abstractmethod
    def close_position(self, symbol: str) -> OrderResult:
        """Close the open position on ``symbol`` with a reduce-only market order.

        No open position is a successful no-op (``noop=True``).
        """
        ...

    # ── Queries ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_balance(self) -> BalanceInfo:
        ...

    @abstractmethod
    def get_positions(self, symbols: Optional[Sequence[str]] = None) -> List[PositionInfo]:
        """Return open (non-zero) positions, optionally scoped to ``symbols``."""
        ...

    @abstractmethod
    def get_min_order_size(self, symbol: str) -> float:
        ...

    # ── Configuration ───────────────────────────────────────────────────

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> bool:
        """Configure leverage for a symbol.  False means it was not applied."""
        ...

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def mode(self) -> str:
        """Return ``'paper'``, ``'testnet'``, or ``'live'``."""
        ...

    @property
    @abstractmethod
    def exchange_name(self) -> str:
        ...
