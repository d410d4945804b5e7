"""Tests for the scheduled loss / take-profit monitor."""

import pytest

from voltex.config import Settings
from voltex.services.loss_monitor import LossMonitor
from voltex.services.session_manager import SessionManager

BTC = "BTC/USDT"
KEY = f"acct:{BTC}"


@pytest.fixture
def monitor_settings():
    return Settings(execution_mode="paper", loss_trigger_pct=50, take_profit_pct=20)


@pytest.fixture
def manager(monitor_settings, session_factory, journal, credentials):
    manager = SessionManager(monitor_settings, session_factory, journal=journal)
    manager.connect("acct", credentials)
    return manager


@pytest.fixture
def session(manager):
    return manager.get("acct")


@pytest.fixture
def monitor(manager, monitor_settings):
    return LossMonitor(manager, monitor_settings)


def test_idle_sessions_are_skipped(monitor):
    report = monitor.check()
    assert report.losses == [] and report.wins == [] and report.missing == []


def test_small_move_triggers_nothing(session, monitor):
    session.engine.start(BTC, "steady_climb")
    session.gateway.set_price(BTC, 0.99)

    report = monitor.check()

    assert report.losses == [] and report.wins == []
    assert session.engine.status(BTC).current_level == 1


def test_loss_beyond_threshold_escalates(session, monitor):
    session.engine.start(BTC, "steady_climb")
    # 2.5 contracts at 1.0, 25x → margin 0.1; -0.075 is a 75% loss
    session.gateway.set_price(BTC, 0.97)

    report = monitor.check()

    assert report.losses == [KEY]
    assert session.engine.status(BTC).current_level == 2


def test_take_profit_resets_ladder(session, monitor):
    session.engine.start(BTC, "steady_climb")
    session.engine.advance_on_loss(BTC)
    session.gateway.set_price(BTC, 1.01)

    report = monitor.check()

    assert report.wins == [KEY]
    assert session.engine.status(BTC).current_level == 1


def test_take_profit_disabled_by_default(session, manager):
    monitor = LossMonitor(manager, Settings(execution_mode="paper"))
    session.engine.start(BTC, "steady_climb")
    session.gateway.set_price(BTC, 2.0)

    assert monitor.check().wins == []


def test_missing_position_is_reported_only(session, monitor):
    session.engine.start(BTC, "steady_climb")
    session.gateway.close_position(BTC)

    report = monitor.check()

    assert report.missing == [KEY]
    assert session.engine.status(BTC).current_level == 1


def test_failed_action_is_recorded_and_sweep_continues(session, monitor):
    session.engine.start(BTC, "steady_climb")
    session.engine.start("ETH/USDT", "steady_climb")
    session.gateway.set_price(BTC, 0.97)
    session.gateway.set_price("ETH/USDT", 0.97)
    session.gateway.fail_closes(BTC)

    report = monitor.check()

    assert report.errors == {KEY: "close_error"}
    assert report.losses == ["acct:ETH/USDT"]
    assert session.engine.status(BTC).current_level == 1


def test_health_check_counts_runs(monitor):
    monitor.check()
    monitor.check()
    health = monitor.health_check()
    assert health["runs"] == 2
    assert health["loss_trigger_pct"] == 50
