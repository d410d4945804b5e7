"""Tests for the strategy catalog and the position sizer."""

import pytest

from voltex.services.errors import InvalidLevel, UnknownStrategy
from voltex.services.strategies import (
    STRATEGIES,
    SUPPORTED_PAIRS,
    calculate_position_size,
    get_strategy,
)
from voltex.services.strategies.models import MartingaleStrategy


class TestCatalog:

    def test_both_ladders_have_fifteen_levels_at_25x(self):
        for key in ("steady_climb", "power_surge"):
            strategy = get_strategy(key)
            assert strategy.max_levels == 15
            assert len(strategy.multipliers) == 15
            assert strategy.leverage == 25
            assert strategy.capital_base_fraction == 0.001

    def test_multiplier_literals(self):
        steady = STRATEGIES["steady_climb"]
        surge = STRATEGIES["power_surge"]
        assert steady.multipliers[0] == 0.25
        assert steady.multipliers[-1] == 9.93
        assert surge.multipliers[0] == 0.40
        assert surge.multipliers[-1] == 19.86
        assert steady.multiplier(3) == 0.36

    def test_ladders_are_strictly_increasing(self):
        for strategy in STRATEGIES.values():
            assert all(a < b for a, b in zip(strategy.multipliers, strategy.multipliers[1:]))

    def test_unknown_key_raises(self):
        with pytest.raises(UnknownStrategy) as exc:
            get_strategy("moon_shot")
        assert exc.value.status_code == 404

    def test_mismatched_multiplier_count_is_rejected(self):
        with pytest.raises(ValueError):
            MartingaleStrategy(
                key="broken", name="Broken", description="", style="conservative",
                capital_base_fraction=0.001, leverage=10, multipliers=(1.0, 2.0), max_levels=3,
            )

    def test_supported_pairs(self):
        assert "BTC/USDT" in SUPPORTED_PAIRS
        assert "HYPE/USDT" in SUPPORTED_PAIRS
        assert all(p.endswith("/USDT") for p in SUPPORTED_PAIRS)


class TestPositionSizer:

    @pytest.mark.parametrize("key,level,expected", [
        ("steady_climb", 1, 10_000 * 0.001 * 0.25),
        ("steady_climb", 15, 10_000 * 0.001 * 9.93),
        ("power_surge", 1, 10_000 * 0.001 * 0.40),
        ("power_surge", 8, 10_000 * 0.001 * 2.86),
    ])
    def test_size_formula(self, key, level, expected):
        assert calculate_position_size(10_000, level, get_strategy(key)) == pytest.approx(expected)

    def test_size_scales_linearly_with_balance(self):
        strategy = get_strategy("steady_climb")
        small = calculate_position_size(1_000, 4, strategy)
        large = calculate_position_size(2_000, 4, strategy)
        assert large == pytest.approx(2 * small)

    @pytest.mark.parametrize("level", [0, 16, -1, 2.0, "3", True])
    def test_out_of_range_or_non_int_level_raises(self, level):
        with pytest.raises(InvalidLevel):
            calculate_position_size(10_000, level, get_strategy("steady_climb"))

    def test_zero_balance_gives_zero_size(self):
        assert calculate_position_size(0, 1, get_strategy("power_surge")) == 0
