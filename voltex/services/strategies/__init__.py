"""
Strategies Package — re-exports the catalog and sizer.

    from voltex.services.strategies import STRATEGIES, get_strategy, calculate_position_size
"""
from voltex.services.strategies.models import (
    MartingaleStrategy,
    STRATEGIES,
    SUPPORTED_PAIRS,
    get_strategy,
)
from voltex.services.strategies.sizing import calculate_position_size

__all__ = [
    "MartingaleStrategy",
    "STRATEGIES",
    "SUPPORTED_PAIRS",
    "get_strategy",
    "calculate_position_size",
]
