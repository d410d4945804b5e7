"""
Position sizing for the martingale ladder.
"""
from voltex.services.errors import InvalidLevel
from voltex.services.strategies.models import MartingaleStrategy


def calculate_position_size(balance: float, level: int, strategy: MartingaleStrategy) -> float:
    """
    Order size for ``level`` of ``strategy`` given the account balance.

        base = balance × capital_base_fraction
        size = base × multipliers[level - 1]

    Raises InvalidLevel for anything outside 1..max_levels; the level is
    never clamped. A non-positive balance yields a non-positive size, which
    the engine rejects before submission.
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidLevel(level, strategy.max_levels)
    if level < 1 or level > strategy.max_levels:
        raise InvalidLevel(level, strategy.max_levels)

    base = balance * strategy.capital_base_fraction
    return base * strategy.multipliers[level - 1]
