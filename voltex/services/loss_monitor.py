"""
Loss Monitor — decides when a ladder rung is lost (or won).
===========================================================
Runs on the scheduler every ``LOSS_MONITOR_INTERVAL_S`` seconds.  For each
trading session it fetches open positions once, then for every active
strategy state:

  unrealized PnL ≤ −LOSS_TRIGGER_PCT % of margin  →  engine.realize_loss
  unrealized PnL ≥  TAKE_PROFIT_PCT % of margin   →  engine.realize_win
  position missing                                →  logged, no action

A missing position means it was closed outside the engine (liquidation,
manual close); without the realized PnL there is no evidence of a loss,
so the operator decides via the advance / stop endpoints.

One symbol's failure never stops the sweep.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List

from voltex.config import Settings
from voltex.services.errors import TradingError

logger = logging.getLogger(__name__)


@dataclass
class MonitorReport:
    losses: List[str] = field(default_factory=list)
    wins: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class LossMonitor:

    def __init__(self, session_manager, settings: Settings):
        self._sessions = session_manager
        self._settings = settings
        self._runs = 0
        self._last_run_ms: float = 0

    def check(self) -> MonitorReport:
        start = time.time()
        report = MonitorReport()
        for session in self._sessions.sessions():
            engine = session.engine
            if not engine.is_trading():
                continue
            try:
                positions = {p.symbol: p for p in engine.get_positions()}
            except TradingError as exc:
                logger.warning(f"Loss monitor: positions unavailable for {session.account_id}: {exc.message}")
                continue

            for symbol, state in engine.status().items():
                if not state.active:
                    continue
                key = f"{session.account_id}:{symbol}"
                pos = positions.get(symbol)
                if pos is None:
                    logger.warning(f"Loss monitor: {key} tracked at level {state.current_level} but no open position")
                    report.missing.append(key)
                    continue
                try:
                    if self._is_loss(pos):
                        logger.info(f"📉 {key} loss trigger hit (uPnL {pos.unrealized_pnl:.4f}, margin {pos.margin:.4f})")
                        engine.realize_loss(symbol)
                        report.losses.append(key)
                    elif self._is_win(pos):
                        logger.info(f"📈 {key} take-profit trigger hit (uPnL {pos.unrealized_pnl:.4f})")
                        engine.realize_win(symbol)
                        report.wins.append(key)
                except TradingError as exc:
                    logger.error(f"❌ Loss monitor action failed for {key}: {exc.message}")
                    report.errors[key] = exc.code

        self._runs += 1
        self._last_run_ms = (time.time() - start) * 1000
        return report

    def _is_loss(self, pos) -> bool:
        if pos.margin <= 0:
            return False
        return pos.unrealized_pnl <= -(self._settings.loss_trigger_pct / 100.0) * pos.margin

    def _is_win(self, pos) -> bool:
        if self._settings.take_profit_pct <= 0 or pos.margin <= 0:
            return False
        return pos.unrealized_pnl >= (self._settings.take_profit_pct / 100.0) * pos.margin

    def health_check(self) -> Dict:
        return {
            "runs": self._runs,
            "last_run_ms": round(self._last_run_ms, 2),
            "loss_trigger_pct": self._settings.loss_trigger_pct,
            "take_profit_pct": self._settings.take_profit_pct,
        }
