"""
Martingale Strategy Engine
==========================
Drives the per-symbol ladder state machine for one account session:

    Idle ──start──▶ Active(1) ──loss──▶ Active(2) … ──loss──▶ Active(max)
      ▲                 │   ◀──win (reset)──┘                     │
      └──── stop ───────┴─────────────────────────── loss ──▶ Exhausted

Every operation on a symbol holds that symbol's registry lock for its
whole duration, so two concurrent ``start`` calls can never both place
an order.  State is written only after the exchange accepted the order;
a failure at any step leaves the previous state untouched.

Order sizing comes from the Position Sizer; exchange access goes through
the session's ExchangeAdapter.  Nothing is retried automatically: the
ladder moves only on an explicit loss / win signal (API or LossMonitor).
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Union

from voltex.config import Settings
from voltex.services.errors import (
    AlreadyActive,
    CloseError,
    Exhausted,
    GatewayError,
    NotActive,
    NotConnected,
    OrderFailed,
    PositionTooSmall,
)
from voltex.services.execution.exchange_adapter import (
    ConnectedAccount,
    ExchangeAdapter,
    ExchangeCredentials,
    OrderResult,
    PositionInfo,
)
from voltex.services.strategies import MartingaleStrategy, calculate_position_size, get_strategy
from voltex.services.strategy_registry import StrategyRegistry, StrategyState
from voltex.services.trade_journal import TradeJournal

logger = logging.getLogger(__name__)

MARGIN_MODE = "isolated"
TIME_IN_FORCE = "IOC"


# ── Results ─────────────────────────────────────────────────────────────────


@dataclass
class OrderPlacement:
    """Outcome of a ladder order (start, escalation or reset)."""
    order_id: Optional[str]
    symbol: str
    side: str
    size: float
    level: int
    strategy: str
    strategy_name: str
    leverage: int
    leverage_applied: bool
    fill_price: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict:
        return {
            "orderId": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "level": self.level,
            "strategy": self.strategy,
            "strategyName": self.strategy_name,
            "leverage": self.leverage,
            "leverageApplied": self.leverage_applied,
            "fillPrice": self.fill_price,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CloseFailure:
    symbol: str
    reason: str


@dataclass
class StopResult:
    """Aggregate outcome of stop / stop_all / emergency_stop."""
    closed_count: int = 0
    closed_symbols: List[str] = field(default_factory=list)
    failures: List[CloseFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "closedCount": self.closed_count,
            "closedSymbols": list(self.closed_symbols),
            "failures": [{"symbol": f.symbol, "reason": f.reason} for f in self.failures],
        }


@dataclass
class _CloseOutcome:
    symbol: str
    ok: bool
    reason: Optional[str] = None
    state: Optional[StrategyState] = None   # state seen when the close ran


# ── Engine ──────────────────────────────────────────────────────────────────


class MartingaleEngine:
    """Owns one account's strategy registry and ladder state machine."""

    def __init__(
        self,
        account_id: str = "default",
        *,
        registry: Optional[StrategyRegistry] = None,
        journal: Optional[TradeJournal] = None,
        settings: Optional[Settings] = None,
    ):
        self.account_id = account_id
        self._registry = registry if registry is not None else StrategyRegistry()
        self._journal = journal
        self._settings = settings or Settings()
        self._gateway: Optional[ExchangeAdapter] = None
        self._trading_active = False
        self._flag_lock = threading.Lock()

    # ── Gateway session ─────────────────────────────────────────────────

    def connect_gateway(
        self, gateway: ExchangeAdapter, credentials: ExchangeCredentials,
    ) -> ConnectedAccount:
        """Connect ``gateway`` and bind it.  AuthError leaves the old binding."""
        account = gateway.connect(credentials)
        self._gateway = gateway
        return account

    @property
    def gateway(self) -> Optional[ExchangeAdapter]:
        return self._gateway

    def _require_gateway(self) -> ExchangeAdapter:
        if self._gateway is None or not self._gateway.connected:
            raise NotConnected()
        return self._gateway

    # ── Start ───────────────────────────────────────────────────────────

    def start(self, symbol: str, strategy_key: str) -> OrderPlacement:
        """Place the level-1 order for ``symbol`` and begin tracking it."""
        strategy = get_strategy(strategy_key)
        gateway = self._require_gateway()

        with self._registry.lock_for(symbol):
            if symbol in self._registry:
                raise AlreadyActive(symbol)

            logger.info(f"🎯 Starting {strategy.name} strategy for {symbol}")
            placement = self._place_level(gateway, symbol, strategy, level=1)
            self._registry.put(StrategyState(
                symbol=symbol,
                strategy_key=strategy.key,
                current_level=1,
                last_order_id=placement.order_id,
                last_size=placement.size,
            ))
            self._set_trading(True)

        return placement

    # ── Ladder transitions ──────────────────────────────────────────────

    def advance_on_loss(self, symbol: str) -> OrderPlacement:
        """Escalate ``symbol`` one rung after a realized loss.

        At the top rung the position is closed and ``Exhausted`` raised.
        """
        gateway = self._require_gateway()
        with self._registry.lock_for(symbol):
            state = self._active_state(symbol)
            return self._advance_locked(gateway, state)

    def realize_loss(self, symbol: str) -> OrderPlacement:
        """Close the losing position, then escalate."""
        gateway = self._require_gateway()
        with self._registry.lock_for(symbol):
            state = self._active_state(symbol)
            strategy = get_strategy(state.strategy_key)
            if state.current_level >= strategy.max_levels:
                self._exhaust(gateway, state)
            self._close_tracked(gateway, state)
            return self._advance_locked(gateway, state)

    def realize_win(self, symbol: str) -> OrderPlacement:
        """Close the winning position and restart the ladder at level 1."""
        gateway = self._require_gateway()
        with self._registry.lock_for(symbol):
            state = self._active_state(symbol)
            strategy = get_strategy(state.strategy_key)
            self._close_tracked(gateway, state)
            placement = self._place_level(gateway, symbol, strategy, level=1)
            self._registry.put(state.advanced(1, placement.order_id, placement.size))
            logger.info(f"🔄 {symbol} ladder reset to level 1 after win")
            return placement

    def _active_state(self, symbol: str) -> StrategyState:
        state = self._registry.get(symbol)
        if state is None or not state.active:
            raise NotActive(symbol)
        return state

    def _advance_locked(self, gateway: ExchangeAdapter, state: StrategyState) -> OrderPlacement:
        strategy = get_strategy(state.strategy_key)
        if state.current_level >= strategy.max_levels:
            self._exhaust(gateway, state)

        next_level = state.current_level + 1
        placement = self._place_level(gateway, state.symbol, strategy, level=next_level)
        self._registry.put(state.advanced(next_level, placement.order_id, placement.size))
        logger.info(f"📈 {state.symbol} escalated to level {next_level}/{strategy.max_levels}")
        return placement

    def _exhaust(self, gateway: ExchangeAdapter, state: StrategyState) -> None:
        """Terminal ladder condition: close, drop state if closed, raise."""
        symbol = state.symbol
        logger.warning(
            f"🚨 Martingale ladder exhausted for {symbol} at level {state.current_level} — stopping"
        )
        result = gateway.close_position(symbol)
        if result.success:
            self._journal_close(state, result)
            self._registry.remove(symbol)
            self._clear_trading_if_idle()
        else:
            logger.error(f"❌ Failed to close exhausted position {symbol}: {result.error}")
            self._registry.put(replace(state, active=False, exhausted=True))
        raise Exhausted(symbol, state.current_level, closed=result.success)

    # ── Order placement ─────────────────────────────────────────────────

    def _place_level(
        self,
        gateway: ExchangeAdapter,
        symbol: str,
        strategy: MartingaleStrategy,
        level: int,
        side: str = "buy",
    ) -> OrderPlacement:
        """balance → size → leverage → min size → market order.

        Raises before submission on any sizing / market-data problem.
        """
        try:
            balance = gateway.get_balance().total
        except GatewayError as exc:
            raise OrderFailed(symbol, exc.message) from exc

        size = calculate_position_size(balance, level, strategy)
        if size <= 0:
            raise PositionTooSmall(symbol, size, 0.0)

        leverage_applied = gateway.set_leverage(symbol, strategy.leverage)
        if not leverage_applied:
            logger.warning(
                f"⚠️ Leverage {strategy.leverage}x not applied for {symbol} — "
                f"proceeding at the exchange's current setting"
            )

        try:
            minimum = gateway.get_min_order_size(symbol)
        except GatewayError as exc:
            raise OrderFailed(symbol, exc.message, size) from exc
        if size < minimum:
            raise PositionTooSmall(symbol, size, minimum)

        logger.info(
            f"🚀 Placing {strategy.key} order: {symbol} level {level} "
            f"size {size:.6f} @ {strategy.leverage}x"
        )
        result = gateway.place_market_order(
            symbol, side, size,
            leverage=strategy.leverage,
            margin_mode=MARGIN_MODE,
            time_in_force=TIME_IN_FORCE,
        )
        if not result.success:
            reason = result.error or "Unknown"
            logger.error(f"❌ Order placement failed for {symbol}: {reason}")
            self._journal_order(gateway, symbol, side, size, strategy, level, result, "failed")
            raise OrderFailed(symbol, reason, size)

        logger.info(f"✅ Order placed successfully: {result.order_id}")
        self._journal_order(gateway, symbol, side, size, strategy, level, result, "filled")
        return OrderPlacement(
            order_id=result.order_id,
            symbol=symbol,
            side=side,
            size=size,
            level=level,
            strategy=strategy.key,
            strategy_name=strategy.name,
            leverage=strategy.leverage,
            leverage_applied=leverage_applied,
            fill_price=result.fill_price,
        )

    def _close_tracked(self, gateway: ExchangeAdapter, state: StrategyState) -> OrderResult:
        result = gateway.close_position(state.symbol)
        if not result.success:
            raise CloseError(state.symbol, result.error or "Unknown")
        self._journal_close(state, result)
        return result

    # ── Stop ────────────────────────────────────────────────────────────

    def stop(self, symbol: str) -> StopResult:
        """Close and forget one symbol.  Untracked symbols are a no-op.

        A failed close keeps the state, deactivated, so the ladder cannot
        escalate while the stop is retried.
        """
        result = StopResult()
        with self._registry.lock_for(symbol):
            if symbol not in self._registry:
                return result
            gateway = self._require_gateway()
            outcome = self._close_symbol_locked(gateway, symbol)
            self._collect(outcome, result)
            if outcome.ok:
                self._registry.remove(symbol)
            else:
                self._deactivate_locked(outcome)
        self._clear_trading_if_idle()
        return result

    def stop_all(self) -> StopResult:
        """Close every tracked symbol and every open position, in parallel."""
        gateway = self._require_gateway()
        logger.info("🛑 Stopping all trading strategies...")

        targets = self._registry.symbols()
        try:
            for pos in gateway.get_positions():
                if pos.symbol not in targets:
                    targets.append(pos.symbol)
        except GatewayError as exc:
            logger.warning(f"Could not list open positions ({exc.message}) — closing tracked symbols only")

        result = StopResult()
        outcomes: List[_CloseOutcome] = []
        if targets:
            workers = min(self._settings.stop_all_workers, len(targets))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="close") as pool:
                futures = {pool.submit(self._close_symbol, gateway, s): s for s in targets}
                for future in as_completed(futures):
                    symbol = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.error(f"❌ Close of {symbol} raised: {exc}", exc_info=True)
                        outcome = _CloseOutcome(symbol, False, str(exc))
                    outcomes.append(outcome)
                    self._collect(outcome, result)

        keep_all = bool(result.failures) and self._settings.require_all_closed
        if keep_all:
            logger.warning(
                f"{len(result.failures)} close(s) failed — keeping all strategy state "
                f"(REQUIRE_ALL_CLOSED)"
            )
        for outcome in outcomes:
            if outcome.ok and not keep_all:
                self._release(outcome)
            else:
                self._deactivate(outcome)

        # Ladders started on other symbols during the sweep keep the flag
        self._clear_trading_if_idle()
        if result.failures:
            logger.error(
                f"❌ Stop finished with failures — closed {result.closed_count}, "
                f"failed {[f.symbol for f in result.failures]}"
            )
        else:
            logger.info(f"✅ All strategies stopped — closed {result.closed_count}")
        return result

    def emergency_stop(self) -> StopResult:
        logger.warning(f"🚨 EMERGENCY STOP ACTIVATED (account {self.account_id})")
        result = self.stop_all()
        logger.warning(
            f"🚨 Emergency stop completed — closed {result.closed_count}, "
            f"{len(result.failures)} failure(s)"
        )
        return result

    def _close_symbol(self, gateway: ExchangeAdapter, symbol: str) -> _CloseOutcome:
        with self._registry.lock_for(symbol):
            return self._close_symbol_locked(gateway, symbol)

    def _close_symbol_locked(self, gateway: ExchangeAdapter, symbol: str) -> _CloseOutcome:
        state = self._registry.get(symbol)
        result = gateway.close_position(symbol)
        if not result.success:
            logger.error(f"❌ Failed to close position for {symbol}: {result.error}")
            return _CloseOutcome(symbol, False, result.error or "Unknown", state)
        if result.noop:
            logger.info(f"ℹ️ {symbol}: nothing to close")
        else:
            logger.info(f"✅ Position closed for {symbol}: {result.order_id}")
            self._journal_close(state, result, symbol=symbol)
        return _CloseOutcome(symbol, True, None, state)

    @staticmethod
    def _collect(outcome: _CloseOutcome, result: StopResult) -> None:
        if outcome.ok:
            result.closed_count += 1
            result.closed_symbols.append(outcome.symbol)
        else:
            result.failures.append(CloseFailure(outcome.symbol, outcome.reason or "Unknown"))

    def _release(self, outcome: _CloseOutcome) -> None:
        """Drop the state the close was performed for, unless it was replaced since."""
        with self._registry.lock_for(outcome.symbol):
            if outcome.state is not None and self._registry.get(outcome.symbol) is outcome.state:
                self._registry.remove(outcome.symbol)

    def _deactivate(self, outcome: _CloseOutcome) -> None:
        with self._registry.lock_for(outcome.symbol):
            self._deactivate_locked(outcome)

    def _deactivate_locked(self, outcome: _CloseOutcome) -> None:
        """Keep a stopped symbol's state for a retried close, but off the ladder."""
        current = self._registry.get(outcome.symbol)
        if current is None or not current.active:
            return
        if outcome.state is None or current is outcome.state:
            self._registry.put(replace(current, active=False))

    # ── Status ──────────────────────────────────────────────────────────

    def status(self, symbol: Optional[str] = None) -> Union[Optional[StrategyState], Dict[str, StrategyState]]:
        if symbol is not None:
            return self._registry.get(symbol)
        return self._registry.snapshot()

    def is_trading(self) -> bool:
        with self._flag_lock:
            active = self._trading_active
        return active and self._has_active_state()

    def _has_active_state(self) -> bool:
        return any(state.active for state in self._registry.snapshot().values())

    def _set_trading(self, value: bool) -> None:
        with self._flag_lock:
            self._trading_active = value

    def _clear_trading_if_idle(self) -> None:
        # Checked under the flag lock: a start that stores its state after
        # this check sets the flag after the clear.
        with self._flag_lock:
            if not self._has_active_state():
                self._trading_active = False

    # ── Delegated queries ───────────────────────────────────────────────

    def get_balance(self) -> float:
        return self._require_gateway().get_balance().total

    def get_positions(self, symbols: Optional[List[str]] = None) -> List[PositionInfo]:
        return self._require_gateway().get_positions(symbols)

    # ── Journal ─────────────────────────────────────────────────────────

    def _journal_order(self, gateway, symbol, side, size, strategy, level, result, status):
        if self._journal is None:
            return
        self._journal.record_order(
            account_id=self.account_id,
            exchange=gateway.exchange_name,
            symbol=symbol,
            side=side,
            quantity=result.filled_qty or size,
            price=result.fill_price,
            order_id=result.order_id,
            strategy=strategy.key,
            level=level,
            leverage=strategy.leverage,
            status=status,
            fees=result.commission,
            error=result.error,
        )

    def _journal_close(self, state: Optional[StrategyState], result: OrderResult, symbol: str = None):
        if self._journal is None or result.noop:
            return
        self._journal.record_close(
            account_id=self.account_id,
            exchange=self._gateway.exchange_name if self._gateway else "",
            symbol=symbol or state.symbol,
            quantity=result.filled_qty,
            price=result.fill_price,
            order_id=result.order_id,
            pnl=result.pnl,
            fees=result.commission,
            strategy=state.strategy_key if state else None,
            level=state.current_level if state else None,
        )
