"""
Strategy Registry — in-memory symbol → StrategyState store.

Owned by exactly one MartingaleEngine.  States are immutable snapshots
replaced wholesale on every mutation, so readers never observe a
half-updated entry.  Two kinds of lock:

  • ``_lock``         short-held, guards the dict itself
  • ``lock_for(sym)`` per-symbol, held by the engine for a whole operation
                      (balance → size → order → state) so operations on one
                      symbol serialize while different symbols run in parallel
"""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class StrategyState:
    symbol: str
    strategy_key: str
    current_level: int
    last_order_id: Optional[str]
    last_size: float = 0.0
    started_at: datetime = field(default_factory=datetime.utcnow)
    active: bool = True
    exhausted: bool = False

    def advanced(self, level: int, order_id: Optional[str], size: float) -> "StrategyState":
        return replace(self, current_level=level, last_order_id=order_id, last_size=size)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class StrategyRegistry:
    """Symbol-keyed store of active strategy states."""

    def __init__(self):
        self._states: Dict[str, StrategyState] = {}
        self._lock = threading.Lock()
        self._symbol_locks: Dict[str, threading.Lock] = {}

    def lock_for(self, symbol: str) -> threading.Lock:
        with self._lock:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = self._symbol_locks[symbol] = threading.Lock()
            return lock

    def get(self, symbol: str) -> Optional[StrategyState]:
        with self._lock:
            return self._states.get(symbol)

    def put(self, state: StrategyState) -> None:
        with self._lock:
            self._states[state.symbol] = state

    def remove(self, symbol: str) -> Optional[StrategyState]:
        with self._lock:
            return self._states.pop(symbol, None)

    def snapshot(self) -> Dict[str, StrategyState]:
        with self._lock:
            return dict(self._states)

    def symbols(self):
        with self._lock:
            return list(self._states)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
