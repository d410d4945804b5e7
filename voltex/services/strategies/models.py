"""
Data models for the strategy system.
MartingaleStrategy and the STRATEGIES catalog.
"""
from dataclasses import dataclass
from typing import Dict, Tuple

from voltex.services.errors import UnknownStrategy


# ── Strategy Definition ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class MartingaleStrategy:
    key: str
    name: str
    description: str
    style: str                        # conservative, aggressive
    capital_base_fraction: float      # raw fraction of balance for the level-1 base (0.001 = 0.1%)
    leverage: int
    multipliers: Tuple[float, ...]    # index 0 = level 1
    max_levels: int

    def __post_init__(self):
        if len(self.multipliers) != self.max_levels:
            raise ValueError(
                f"{self.key}: {len(self.multipliers)} multipliers for {self.max_levels} levels"
            )
        if any(m <= 0 for m in self.multipliers):
            raise ValueError(f"{self.key}: multipliers must be positive")

    def multiplier(self, level: int) -> float:
        return self.multipliers[level - 1]


STRATEGIES: Dict[str, MartingaleStrategy] = {
    "steady_climb": MartingaleStrategy(
        key="steady_climb",
        name="Steady Climb",
        description="Conservative ladder with gentle multiplier growth. "
                    "The level-15 order is ~40x the level-1 order.",
        style="conservative",
        capital_base_fraction=0.001,
        leverage=25,
        multipliers=(0.25, 0.27, 0.36, 0.47, 0.63, 0.83, 1.08, 1.43,
                     1.88, 2.47, 3.25, 4.30, 5.68, 7.51, 9.93),
        max_levels=15,
    ),
    "power_surge": MartingaleStrategy(
        key="power_surge",
        name="Power Surge",
        description="Aggressive ladder with steep multiplier growth. "
                    "Recovers faster, drains margin faster.",
        style="aggressive",
        capital_base_fraction=0.001,
        leverage=25,
        multipliers=(0.40, 0.54, 0.72, 0.94, 1.26, 1.66, 2.16, 2.86,
                     3.76, 4.94, 6.50, 8.60, 11.36, 15.02, 19.86),
        max_levels=15,
    ),
}


# Pairs the HTTP layer accepts (BASE/QUOTE, USDT-margined perpetuals)
SUPPORTED_PAIRS: Tuple[str, ...] = (
    "HYPE/USDT", "BTC/USDT", "ETH/USDT", "BNB/USDT",
    "SOL/USDT", "ADA/USDT", "XRP/USDT", "DOGE/USDT",
    "AVAX/USDT", "LINK/USDT", "DOT/USDT", "UNI/USDT",
)


def get_strategy(key: str) -> MartingaleStrategy:
    cfg = STRATEGIES.get(key)
    if cfg is None:
        raise UnknownStrategy(key)
    return cfg
