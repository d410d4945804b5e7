"""
CCXTExchangeAdapter — Real futures execution via CCXT.
======================================================
Implements the ExchangeAdapter interface against USDT-margined perpetual
futures on Bybit, Binance, Bitget and OKX.  Each exchange gets its own
subclass; the only thing that differs between them is how the ccxt
client is configured.

Supports:
  • Credential verification with structured auth-failure reasons
  • Market orders (open) with leverage / isolated margin / IOC params
  • Reduce-only market close of the current position
  • Leverage configuration per symbol (cached)
  • Minimum order size lookup from market limits
  • Testnet toggle via constructor flag

Architecture decisions:
  - CCXT async exchange is used internally with a sync bridge, because
    the engine runs in FastAPI worker threads and its own close pool.
  - A fresh exchange instance is created per call and always closed, so
    concurrent calls from different threads never share an aiohttp session.
  - Every request is bounded by ccxt's ``timeout``; every composite call
    is additionally bounded by ``asyncio.wait_for``.
  - Execution errors are returned as OrderResult(success=False);
    query errors are raised as GatewayError.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

import ccxt
import ccxt.async_support as ccxt_async

from voltex.services.errors import (
    AuthError,
    AuthReason,
    GatewayError,
    classify_auth_failure,
)
from voltex.services.execution.exchange_adapter import (
    BalanceInfo,
    ConnectedAccount,
    ExchangeAdapter,
    ExchangeCredentials,
    OrderResult,
    PositionInfo,
)

logger = logging.getLogger(__name__)


# ── Symbol mapping (BASE/QUOTE ↔ CCXT unified linear perpetual) ────────────

def to_ccxt_symbol(symbol: str) -> str:
    """``BTC/USDT`` → ``BTC/USDT:USDT``.  Already-unified symbols pass through."""
    if ":" in symbol or "/" not in symbol:
        return symbol
    quote = symbol.split("/", 1)[1]
    return f"{symbol}:{quote}"


def from_ccxt_symbol(symbol: str) -> str:
    """``BTC/USDT:USDT`` → ``BTC/USDT``."""
    return symbol.split(":", 1)[0]


# ── Async-to-sync bridge ────────────────────────────────────────────────────

def _run_sync(coro):
    """Run an async coroutine from a sync context (worker thread).

    Creates a dedicated event loop per call to avoid conflicts with
    any existing running loop (FastAPI's loop lives in the main thread,
    worker threads have none).
    """
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _commission(order: Dict) -> float:
    commission = 0.0
    if order.get("trades"):
        for t in order["trades"]:
            fee = t.get("fee") or {}
            commission += float(fee.get("cost") or 0)
    elif order.get("fee"):
        commission = float(order["fee"].get("cost") or 0)
    return commission


def _fill_price(order: Dict) -> float:
    return float(order.get("average") or order.get("price") or 0)


# ── Adapter ─────────────────────────────────────────────────────────────────


class CCXTExchangeAdapter(ExchangeAdapter):
    """Futures execution via CCXT.  Subclasses pick the exchange.

    Parameters
    ----------
    testnet : bool
        If True, ccxt sandbox mode is enabled.
    timeout_ms : int
        Per-request timeout handed to ccxt.
    """

    EXCHANGE_CLASS: str = ""
    DEFAULT_TYPE: str = "swap"

    def __init__(self, *, testnet: bool = True, timeout_ms: int = 10_000):
        self._testnet = testnet
        self._timeout_ms = timeout_ms
        # Whole-call bound: a call may issue several requests (markets + order)
        self._call_timeout_s = timeout_ms / 1000.0 * 3
        self._credentials: Optional[ExchangeCredentials] = None
        self._connected = False
        # Leverage cache to avoid redundant set_leverage calls
        self._leverage_cache: Dict[str, int] = {}
        self._cache_lock = threading.Lock()

    # ── Exchange instance (created per-call, closed after) ──────────────

    def _options(self) -> Dict[str, Any]:
        return {"defaultType": self.DEFAULT_TYPE}

    def _client_config(self) -> Dict[str, Any]:
        creds = self._credentials
        config: Dict[str, Any] = {
            "apiKey": creds.api_key,
            "secret": creds.api_secret,
            "enableRateLimit": True,
            "timeout": self._timeout_ms,
            "options": self._options(),
        }
        if creds.passphrase:
            config["password"] = creds.passphrase
        return config

    def _configure_sandbox(self, exchange) -> None:
        exchange.set_sandbox_mode(True)

    def _create_exchange(self):
        """Create a fresh async exchange instance for this account."""
        if self._credentials is None:
            raise GatewayError("Exchange not connected")
        exchange_cls = getattr(ccxt_async, self.EXCHANGE_CLASS)
        exchange = exchange_cls(self._client_config())
        if self._testnet:
            self._configure_sandbox(exchange)
        return exchange

    async def _execute(self, coro_factory):
        """Create exchange → run coroutine → close exchange.

        ``coro_factory`` receives the exchange instance and returns a coroutine.
        This ensures the aiohttp session is always properly closed.
        """
        exchange = self._create_exchange()
        try:
            return await asyncio.wait_for(coro_factory(exchange), timeout=self._call_timeout_s)
        finally:
            await exchange.close()

    # ── Session ─────────────────────────────────────────────────────────

    def connect(self, credentials: ExchangeCredentials) -> ConnectedAccount:
        if credentials.exchange.requires_passphrase and not credentials.passphrase:
            raise AuthError(AuthReason.MISSING_PASSPHRASE)

        logger.info(f"🔗 Connecting to {self.exchange_name} ({self.mode})...")
        self._credentials = credentials
        self._connected = False
        try:
            balance = _run_sync(self._async_get_balance())
        except ccxt.AuthenticationError as exc:
            reason = classify_auth_failure(str(exc))
            if reason is AuthReason.UNKNOWN:
                reason = (AuthReason.INSUFFICIENT_PERMISSIONS
                          if isinstance(exc, ccxt.PermissionDenied)
                          else AuthReason.INVALID_CREDENTIALS)
            logger.error(f"❌ {self.exchange_name} authentication failed: {exc}")
            raise AuthError(reason, str(exc)) from exc
        except Exception as exc:
            reason = classify_auth_failure(str(exc))
            logger.error(f"❌ Exchange connection error ({self.exchange_name}): {exc}")
            if reason is not AuthReason.UNKNOWN:
                raise AuthError(reason, str(exc)) from exc
            raise GatewayError(f"Failed to connect to {self.exchange_name}: {exc}") from exc

        self._connected = True
        logger.info(f"✅ Connected to {self.exchange_name} — USDT balance {balance.total:.2f}")
        return ConnectedAccount(exchange=self.exchange_name, mode=self.mode, balance=balance.total)

    @property
    def connected(self) -> bool:
        return self._connected

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
        ccxt_sym = to_ccxt_symbol(symbol)
        params = {
            "leverage": leverage,
            "marginMode": margin_mode,
            "timeInForce": time_in_force,
        }
        try:
            result = _run_sync(self._async_create_order(ccxt_sym, side, size, params))
        except Exception as exc:
            logger.error(f"CCXT place_market_order error for {symbol}: {exc}", exc_info=True)
            return OrderResult(success=False, error=str(exc))

        return OrderResult(
            success=True,
            order_id=result["order_id"],
            fill_price=result["fill_price"],
            filled_qty=result["filled_qty"],
            commission=result["commission"],
            raw_response=result.get("raw"),
        )

    def close_position(self, symbol: str) -> OrderResult:
        ccxt_sym = to_ccxt_symbol(symbol)
        try:
            result = _run_sync(self._async_close(ccxt_sym))
        except Exception as exc:
            logger.error(f"CCXT close_position error for {symbol}: {exc}", exc_info=True)
            return OrderResult(success=False, error=str(exc))

        if result.get("noop"):
            logger.info(f"ℹ️ No open position for {symbol}")
            return OrderResult(success=True, noop=True)

        return OrderResult(
            success=True,
            order_id=result["order_id"],
            fill_price=result["fill_price"],
            filled_qty=result["filled_qty"],
            commission=result["commission"],
            pnl=result["pnl"],
            raw_response=result.get("raw"),
        )

    # ── Queries ─────────────────────────────────────────────────────────

    def get_balance(self) -> BalanceInfo:
        try:
            return _run_sync(self._async_get_balance())
        except Exception as exc:
            logger.error(f"CCXT get_balance error: {exc}", exc_info=True)
            raise GatewayError(f"Failed to fetch account balance: {exc}") from exc

    def get_positions(self, symbols: Optional[Sequence[str]] = None) -> List[PositionInfo]:
        ccxt_syms = [to_ccxt_symbol(s) for s in symbols] if symbols else None
        try:
            raw = _run_sync(self._async_get_positions(ccxt_syms))
        except Exception as exc:
            logger.error(f"CCXT get_positions error: {exc}", exc_info=True)
            raise GatewayError(f"Failed to fetch positions: {exc}") from exc

        positions = []
        for pos_data in raw:
            positions.append(PositionInfo(
                symbol=from_ccxt_symbol(pos_data.get("symbol", "")),
                side=(pos_data.get("side") or "").lower(),
                size=abs(float(pos_data.get("contracts") or 0)),
                entry_price=float(pos_data.get("entryPrice") or 0),
                mark_price=float(pos_data.get("markPrice") or 0),
                unrealized_pnl=float(pos_data.get("unrealizedPnl") or 0),
                leverage=int(float(pos_data.get("leverage") or 1)),
                margin=float(pos_data.get("initialMargin") or pos_data.get("collateral") or 0),
                liquidation_price=float(pos_data.get("liquidationPrice") or 0),
            ))
        return positions

    def get_min_order_size(self, symbol: str) -> float:
        ccxt_sym = to_ccxt_symbol(symbol)
        try:
            return _run_sync(self._async_min_order_size(ccxt_sym))
        except Exception as exc:
            logger.error(f"CCXT market limits error for {symbol}: {exc}")
            raise GatewayError(f"Failed to load market limits for {symbol}: {exc}") from exc

    # ── Configuration ───────────────────────────────────────────────────

    def set_leverage(self, symbol: str, leverage: int) -> bool:
        """Set leverage for a symbol on the exchange.

        Caches the value to avoid redundant API calls on consecutive orders.
        """
        ccxt_sym = to_ccxt_symbol(symbol)

        with self._cache_lock:
            if self._leverage_cache.get(ccxt_sym) == leverage:
                return True

        try:
            _run_sync(self._async_set_leverage(ccxt_sym, leverage))
        except Exception as exc:
            # Binance/Bybit return an error if leverage is already set; treat as OK
            text = str(exc)
            if "No need to change" not in text and "not modified" not in text:
                logger.error(f"❌ Failed to set leverage for {symbol} ({leverage}x): {exc}")
                return False

        with self._cache_lock:
            self._leverage_cache[ccxt_sym] = leverage
        logger.info(f"✅ Set leverage to {leverage}x for {symbol}")
        return True

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "testnet" if self._testnet else "live"

    @property
    def exchange_name(self) -> str:
        return self.EXCHANGE_CLASS

    # ── Private async methods ───────────────────────────────────────────

    async def _async_create_order(self, ccxt_sym: str, side: str, qty: float, params: Dict) -> Dict:

        async def _run(exchange):
            order = await exchange.create_order(
                symbol=ccxt_sym,
                type="market",
                side=side,
                amount=qty,
                price=None,
                params=params,
            )
            return {
                "order_id": str(order.get("id", "")),
                "fill_price": _fill_price(order),
                "filled_qty": float(order.get("filled") or qty),
                "commission": _commission(order),
                "raw": {"market_order": order},
            }

        return await self._execute(_run)

    async def _async_close(self, ccxt_sym: str) -> Dict:
        """Close position: resolve it → opposite-side reduce-only market order."""

        async def _run(exchange):
            positions = await exchange.fetch_positions([ccxt_sym])
            position = next(
                (p for p in positions
                 if p.get("symbol") == ccxt_sym and abs(float(p.get("contracts") or 0)) > 0),
                None,
            )
            if position is None:
                return {"noop": True}

            side = "sell" if (position.get("side") or "").lower() == "long" else "buy"
            qty = abs(float(position["contracts"]))
            order = await exchange.create_order(
                symbol=ccxt_sym,
                type="market",
                side=side,
                amount=qty,
                price=None,
                params={"reduceOnly": True},
            )
            return {
                "order_id": str(order.get("id", "")),
                "fill_price": _fill_price(order),
                "filled_qty": qty,
                "commission": _commission(order),
                "pnl": float(position.get("unrealizedPnl") or 0),
                "raw": {"close_order": order},
            }

        return await self._execute(_run)

    async def _async_get_balance(self) -> BalanceInfo:

        async def _run(exchange):
            balance = await exchange.fetch_balance()
            if not balance:
                raise GatewayError("Failed to fetch account balance")
            usdt = balance.get("USDT") or {}
            return BalanceInfo(
                total=float(usdt.get("total") or 0),
                available=float(usdt.get("free") or 0),
                margin_used=float(usdt.get("used") or 0),
                unrealized_pnl=0.0,
                assets={"USDT": {k: float(usdt.get(k) or 0) for k in ("total", "free", "used")}},
            )

        return await self._execute(_run)

    async def _async_get_positions(self, ccxt_syms: Optional[List[str]]) -> List[Dict]:

        async def _run(exchange):
            positions = await exchange.fetch_positions(ccxt_syms)
            # Filter to only positions with nonzero size
            return [p for p in positions if abs(float(p.get("contracts") or 0)) > 0]

        return await self._execute(_run)

    async def _async_min_order_size(self, ccxt_sym: str) -> float:

        async def _run(exchange):
            await exchange.load_markets()
            market = exchange.market(ccxt_sym)
            limits = (market.get("limits") or {}).get("amount") or {}
            return float(limits.get("min") or 0.0)

        return await self._execute(_run)

    async def _async_set_leverage(self, ccxt_sym: str, leverage: int):

        async def _run(exchange):
            return await exchange.set_leverage(leverage, ccxt_sym)

        return await self._execute(_run)


# ── Per-exchange adapters ───────────────────────────────────────────────────


class BybitAdapter(CCXTExchangeAdapter):
    EXCHANGE_CLASS = "bybit"


class BinanceAdapter(CCXTExchangeAdapter):
    EXCHANGE_CLASS = "binance"
    DEFAULT_TYPE = "future"

    # Binance migrated the old futures testnet to the Demo Trading platform
    # (demo-fapi.binance.com).  CCXT's set_sandbox_mode still points to the
    # deprecated URL, so the fapi endpoints are overridden after enabling it.
    _DEMO_FAPI_BASE = "https://demo-fapi.binance.com"
    _DEMO_FAPI_URLS = {
        "fapiPublic":    f"{_DEMO_FAPI_BASE}/fapi/v1",
        "fapiPrivate":   f"{_DEMO_FAPI_BASE}/fapi/v1",
        "fapiPublicV2":  f"{_DEMO_FAPI_BASE}/fapi/v2",
        "fapiPrivateV2": f"{_DEMO_FAPI_BASE}/fapi/v2",
        "fapiPublicV3":  f"{_DEMO_FAPI_BASE}/fapi/v3",
        "fapiPrivateV3": f"{_DEMO_FAPI_BASE}/fapi/v3",
    }

    def _options(self) -> Dict[str, Any]:
        return {"defaultType": self.DEFAULT_TYPE, "adjustForTimeDifference": True}

    def _configure_sandbox(self, exchange) -> None:
        exchange.set_sandbox_mode(True)
        exchange.urls["api"].update(self._DEMO_FAPI_URLS)


class BitgetAdapter(CCXTExchangeAdapter):
    EXCHANGE_CLASS = "bitget"


class OkxAdapter(CCXTExchangeAdapter):
    EXCHANGE_CLASS = "okx"
