"""
Runtime configuration read from the environment (and ``.env`` if present).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

EXECUTION_MODES = ("paper", "testnet", "live")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Immutable service settings.

    Attributes:
        execution_mode: ``paper`` (in-memory simulation), ``testnet`` or
            ``live`` (real ccxt adapters).
        exchange_timeout_ms: Upper bound for every ccxt request.
        stop_all_workers: Thread pool size used to fan out position closes.
        require_all_closed: When set, ``stop_all`` removes no strategy state
            unless every close succeeded.
        loss_monitor_enabled: Schedule the loss monitor job on startup.
        loss_monitor_interval_s: Seconds between loss monitor sweeps.
        loss_trigger_pct: Unrealized loss, as % of position margin, treated
            as a lost ladder level.
        take_profit_pct: Unrealized gain, as % of margin, that closes the
            position and resets the ladder. ``0`` disables it.
        paper_balance: Starting USDT balance for paper sessions.
    """
    execution_mode: str = "paper"
    exchange_timeout_ms: int = 10_000
    stop_all_workers: int = 8
    require_all_closed: bool = False
    loss_monitor_enabled: bool = True
    loss_monitor_interval_s: int = 10
    loss_trigger_pct: float = 50.0
    take_profit_pct: float = 0.0
    paper_balance: float = 10_000.0

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv("EXECUTION_MODE", "paper").lower().strip()
        if mode not in EXECUTION_MODES:
            logger.warning(f"Unknown EXECUTION_MODE '{mode}' — falling back to paper")
            mode = "paper"

        return cls(
            execution_mode=mode,
            exchange_timeout_ms=int(os.getenv("EXCHANGE_TIMEOUT_MS", "10000")),
            stop_all_workers=max(1, int(os.getenv("STOP_ALL_WORKERS", "8"))),
            require_all_closed=_env_bool("REQUIRE_ALL_CLOSED", False),
            loss_monitor_enabled=_env_bool("LOSS_MONITOR_ENABLED", True),
            loss_monitor_interval_s=int(os.getenv("LOSS_MONITOR_INTERVAL_S", "10")),
            loss_trigger_pct=float(os.getenv("LOSS_TRIGGER_PCT", "50")),
            take_profit_pct=float(os.getenv("TAKE_PROFIT_PCT", "0")),
            paper_balance=float(os.getenv("PAPER_BALANCE", "10000")),
        )

    @property
    def testnet(self) -> bool:
        return self.execution_mode != "live"
