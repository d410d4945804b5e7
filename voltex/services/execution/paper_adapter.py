"""
PaperExchangeAdapter — Simulated futures exchange held in memory.
=================================================================
Netted one-way positions per symbol, fills at the current mark price,
PnL realized into the wallet balance on close.  Mark prices are moved
explicitly with ``set_price`` (no market feed).

Failures can be injected per symbol for place / close / leverage and
globally for balance queries, which is how the engine's partial-failure
paths are exercised without a real exchange.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from voltex.services.errors import AuthError, AuthReason, GatewayError
from voltex.services.execution.exchange_adapter import (
    BalanceInfo,
    ConnectedAccount,
    ExchangeAdapter,
    ExchangeCredentials,
    OrderResult,
    PositionInfo,
)

logger = logging.getLogger(__name__)


@dataclass
class _PaperPosition:
    qty: float            # signed: > 0 long, < 0 short
    entry_price: float
    leverage: int


class PaperExchangeAdapter(ExchangeAdapter):
    """In-memory paper trading, no real exchange interaction."""

    DEFAULT_PRICE = 1.0

    def __init__(
        self,
        balance: float = 10_000.0,
        *,
        prices: Optional[Dict[str, float]] = None,
        min_order_sizes: Optional[Dict[str, float]] = None,
        default_min_order_size: float = 0.001,
        exchange: str = "paper",
    ):
        self._balance = balance
        self._prices: Dict[str, float] = dict(prices or {})
        self._min_sizes: Dict[str, float] = dict(min_order_sizes or {})
        self._default_min = default_min_order_size
        self._exchange = exchange
        self._positions: Dict[str, _PaperPosition] = {}
        self._leverage: Dict[str, int] = {}
        self._order_ids = itertools.count(1)
        self._connected = False
        self._lock = threading.Lock()

        # Injected failures: symbol → error message
        self._fail_orders: Dict[str, str] = {}
        self._fail_closes: Dict[str, str] = {}
        self._fail_leverage: Dict[str, str] = {}
        self._fail_balance: Optional[str] = None

        self.orders: List[Dict] = []   # every submitted order, for inspection

    # ── Session ─────────────────────────────────────────────────────────

    def connect(self, credentials: ExchangeCredentials) -> ConnectedAccount:
        if not credentials.api_key or not credentials.api_secret:
            raise AuthError(AuthReason.INVALID_CREDENTIALS, "empty api key or secret")
        if credentials.exchange.requires_passphrase and not credentials.passphrase:
            raise AuthError(AuthReason.MISSING_PASSPHRASE)

        self._exchange = credentials.exchange.value
        self._connected = True
        balance = self.get_balance().total
        logger.info(f"✅ Paper session connected ({self._exchange}) — USDT balance {balance:.2f}")
        return ConnectedAccount(exchange=self._exchange, mode=self.mode, balance=balance)

    @property
    def connected(self) -> bool:
        return self._connected

    # ── Simulation controls ─────────────────────────────────────────────

    def set_price(self, symbol: str, price: float) -> None:
        with self._lock:
            self._prices[symbol] = price

    def set_min_order_size(self, symbol: str, size: float) -> None:
        with self._lock:
            self._min_sizes[symbol] = size

    def fail_next_orders(self, symbol: str, message: str = "Insufficient margin") -> None:
        self._fail_orders[symbol] = message

    def fail_closes(self, symbol: str, message: str = "Exchange unavailable") -> None:
        self._fail_closes[symbol] = message

    def fail_leverage(self, symbol: str, message: str = "leverage not modified") -> None:
        self._fail_leverage[symbol] = message

    def fail_balance(self, message: Optional[str] = "Request timed out") -> None:
        self._fail_balance = message

    def clear_failures(self) -> None:
        self._fail_orders.clear()
        self._fail_closes.clear()
        self._fail_leverage.clear()
        self._fail_balance = None

    # ── Core execution ──────────────────────────────────────────────────

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
        error = self._fail_orders.get(symbol)
        if error:
            return OrderResult(success=False, error=error)
        if size <= 0:
            return OrderResult(success=False, error=f"Invalid amount {size}")

        with self._lock:
            price = self._prices.get(symbol, self.DEFAULT_PRICE)
            signed = size if side == "buy" else -size
            pos = self._positions.get(symbol)
            if pos is None:
                self._positions[symbol] = _PaperPosition(signed, price, leverage)
            elif (pos.qty > 0) == (signed > 0):
                # Same direction: average in
                new_qty = pos.qty + signed
                pos.entry_price = (pos.entry_price * abs(pos.qty) + price * size) / abs(new_qty)
                pos.qty = new_qty
                pos.leverage = leverage
            else:
                self._reduce(symbol, pos, signed, price)

            order_id = f"paper-{next(self._order_ids)}"
            self.orders.append({
                "id": order_id, "symbol": symbol, "side": side, "amount": size,
                "price": price, "leverage": leverage, "marginMode": margin_mode,
                "timeInForce": time_in_force, "reduceOnly": False,
            })

        return OrderResult(success=True, order_id=order_id, fill_price=price, filled_qty=size)

    def close_position(self, symbol: str) -> OrderResult:
        error = self._fail_closes.get(symbol)
        if error:
            return OrderResult(success=False, error=error)

        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                logger.info(f"ℹ️ No open position for {symbol}")
                return OrderResult(success=True, noop=True)

            price = self._prices.get(symbol, self.DEFAULT_PRICE)
            pnl = pos.qty * (price - pos.entry_price)
            size = abs(pos.qty)
            side = "sell" if pos.qty > 0 else "buy"
            self._balance += pnl
            del self._positions[symbol]

            order_id = f"paper-{next(self._order_ids)}"
            self.orders.append({
                "id": order_id, "symbol": symbol, "side": side, "amount": size,
                "price": price, "reduceOnly": True,
            })

        return OrderResult(
            success=True, order_id=order_id, fill_price=price, filled_qty=size, pnl=pnl,
        )

    def _reduce(self, symbol: str, pos: _PaperPosition, signed: float, price: float) -> None:
        """Apply an opposite-direction fill.  Caller holds the lock."""
        closing = min(abs(signed), abs(pos.qty))
        direction = 1 if pos.qty > 0 else -1
        self._balance += direction * closing * (price - pos.entry_price)
        remaining = pos.qty + signed
        if abs(remaining) < 1e-12:
            del self._positions[symbol]
        elif (remaining > 0) == (pos.qty > 0):
            pos.qty = remaining
        else:
            # Flipped through zero: the excess opens a new position at this price
            self._positions[symbol] = _PaperPosition(remaining, price, pos.leverage)

    # ── Queries ─────────────────────────────────────────────────────────

    def get_balance(self) -> BalanceInfo:
        if self._fail_balance:
            raise GatewayError(f"Failed to fetch account balance: {self._fail_balance}")
        with self._lock:
            unrealized = sum(self._upnl(s, p) for s, p in self._positions.items())
            margin_used = sum(self._margin(p) for p in self._positions.values())
            total = self._balance + unrealized
            return BalanceInfo(
                total=total,
                available=total - margin_used,
                margin_used=margin_used,
                unrealized_pnl=unrealized,
                assets={"USDT": {"total": total, "free": total - margin_used, "used": margin_used}},
            )

    def get_positions(self, symbols: Optional[Sequence[str]] = None) -> List[PositionInfo]:
        with self._lock:
            return [
                PositionInfo(
                    symbol=symbol,
                    side="long" if p.qty > 0 else "short",
                    size=abs(p.qty),
                    entry_price=p.entry_price,
                    mark_price=self._prices.get(symbol, self.DEFAULT_PRICE),
                    unrealized_pnl=self._upnl(symbol, p),
                    leverage=p.leverage,
                    margin=self._margin(p),
                )
                for symbol, p in self._positions.items()
                if symbols is None or symbol in symbols
            ]

    def get_min_order_size(self, symbol: str) -> float:
        return self._min_sizes.get(symbol, self._default_min)

    def _upnl(self, symbol: str, pos: _PaperPosition) -> float:
        return pos.qty * (self._prices.get(symbol, self.DEFAULT_PRICE) - pos.entry_price)

    @staticmethod
    def _margin(pos: _PaperPosition) -> float:
        return abs(pos.qty) * pos.entry_price / max(pos.leverage, 1)

    # ── Config ──────────────────────────────────────────────────────────

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        error = self._fail_leverage.get(symbol)
        if error:
            logger.error(f"Paper set_leverage error ({symbol}, {leverage}x): {error}")
            return False
        self._leverage[symbol] = leverage
        return True

    def leverage_for(self, symbol: str) -> Optional[int]:
        return self._leverage.get(symbol)

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "paper"

    @property
    def exchange_name(self) -> str:
        return self._exchange
