"""Tests for the in-memory paper exchange."""

import pytest

from voltex.services.errors import AuthError, AuthReason, GatewayError
from voltex.services.execution import ExchangeCredentials, ExchangeId, PaperExchangeAdapter

BTC = "BTC/USDT"


def test_connect_reports_balance_and_exchange():
    adapter = PaperExchangeAdapter(balance=500.0)
    account = adapter.connect(ExchangeCredentials(ExchangeId.BINANCE, "k", "s"))

    assert adapter.connected
    assert account.balance == 500.0
    assert account.mode == "paper"
    assert adapter.exchange_name == "binance"


def test_connect_rejects_empty_credentials():
    adapter = PaperExchangeAdapter()
    with pytest.raises(AuthError) as exc:
        adapter.connect(ExchangeCredentials(ExchangeId.BYBIT, "", "s"))
    assert exc.value.reason is AuthReason.INVALID_CREDENTIALS
    assert not adapter.connected


def test_connect_requires_passphrase_for_okx():
    adapter = PaperExchangeAdapter()
    with pytest.raises(AuthError) as exc:
        adapter.connect(ExchangeCredentials(ExchangeId.OKX, "k", "s"))
    assert exc.value.reason is AuthReason.MISSING_PASSPHRASE


def test_same_direction_fills_average_in(paper):
    paper.place_market_order(BTC, "buy", 1.0, leverage=25)
    paper.set_price(BTC, 110.0)
    paper.place_market_order(BTC, "buy", 1.0, leverage=25)

    (pos,) = paper.get_positions([BTC])
    assert pos.side == "long"
    assert pos.size == pytest.approx(2.0)
    assert pos.entry_price == pytest.approx(105.0)
    assert pos.margin == pytest.approx(2.0 * 105.0 / 25)


def test_opposite_fill_reduces_and_realizes(paper):
    paper.place_market_order(BTC, "buy", 2.0, leverage=10)
    paper.set_price(BTC, 120.0)
    paper.place_market_order(BTC, "sell", 1.0, leverage=10)

    (pos,) = paper.get_positions([BTC])
    assert pos.size == pytest.approx(1.0)
    assert pos.entry_price == 100.0
    # 1 contract realized +20, 1 contract still open +20
    assert paper.get_balance().total == pytest.approx(10_040.0)


def test_close_realizes_pnl_into_balance(paper):
    paper.place_market_order(BTC, "buy", 4.0, leverage=25)
    paper.set_price(BTC, 95.0)

    result = paper.close_position(BTC)

    assert result.success and not result.noop
    assert result.pnl == pytest.approx(-20.0)
    assert result.filled_qty == pytest.approx(4.0)
    assert paper.get_positions() == []
    assert paper.get_balance().total == pytest.approx(9_980.0)
    assert paper.orders[-1]["reduceOnly"] is True
    assert paper.orders[-1]["side"] == "sell"


def test_close_without_position_is_noop(paper):
    result = paper.close_position(BTC)
    assert result.success
    assert result.noop


def test_injected_failures(paper):
    paper.fail_next_orders(BTC, "Insufficient margin")
    paper.fail_closes(BTC, "Exchange unavailable")
    paper.fail_leverage(BTC)
    paper.fail_balance("Request timed out")

    order = paper.place_market_order(BTC, "buy", 1.0, leverage=25)
    assert not order.success and order.error == "Insufficient margin"
    assert not paper.close_position(BTC).success
    assert paper.set_leverage(BTC, 25) is False
    with pytest.raises(GatewayError):
        paper.get_balance()

    paper.clear_failures()
    assert paper.place_market_order(BTC, "buy", 1.0, leverage=25).success
    assert paper.set_leverage(BTC, 25) is True


def test_rejects_non_positive_size(paper):
    assert not paper.place_market_order(BTC, "buy", 0, leverage=25).success


def test_min_order_size_defaults_and_overrides(paper):
    assert paper.get_min_order_size(BTC) == 0.001
    paper.set_min_order_size(BTC, 0.5)
    assert paper.get_min_order_size(BTC) == 0.5
