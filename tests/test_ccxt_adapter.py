"""Tests for the CCXT adapters with the exchange client mocked out."""

from unittest.mock import AsyncMock, MagicMock

import ccxt
import pytest

from voltex.config import Settings
from voltex.services.errors import AuthError, AuthReason, GatewayError, classify_auth_failure
from voltex.services.execution import (
    BinanceAdapter,
    BybitAdapter,
    ExchangeCredentials,
    ExchangeId,
    OkxAdapter,
    PaperExchangeAdapter,
    build_exchange_adapter,
)
from voltex.services.execution.ccxt_adapter import from_ccxt_symbol, to_ccxt_symbol

CREDS = ExchangeCredentials(ExchangeId.BYBIT, "key", "secret")


def _fake_exchange(**methods):
    exchange = MagicMock()
    exchange.close = AsyncMock()
    for name, value in methods.items():
        setattr(exchange, name, value)
    return exchange


def _adapter(monkeypatch, exchange, cls=BybitAdapter):
    adapter = cls(testnet=True, timeout_ms=1_000)
    monkeypatch.setattr(adapter, "_create_exchange", lambda: exchange)
    return adapter


# ── Symbols ────────────────────────────────────────────────────────────────

def test_symbol_mapping():
    assert to_ccxt_symbol("BTC/USDT") == "BTC/USDT:USDT"
    assert to_ccxt_symbol("BTC/USDT:USDT") == "BTC/USDT:USDT"
    assert from_ccxt_symbol("ETH/USDT:USDT") == "ETH/USDT"


# ── Connect / auth classification ──────────────────────────────────────────

class TestConnect:

    def test_success_returns_balance(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(
            return_value={"USDT": {"total": 500.0, "free": 400.0, "used": 100.0}}
        ))
        adapter = _adapter(monkeypatch, exchange)

        account = adapter.connect(CREDS)

        assert adapter.connected
        assert account.balance == 500.0
        assert account.exchange == "bybit"
        assert account.mode == "testnet"
        exchange.close.assert_awaited()

    def test_invalid_key_maps_to_invalid_credentials(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(
            side_effect=ccxt.AuthenticationError('bybit {"retCode":10003,"retMsg":"API key is invalid."}')
        ))
        adapter = _adapter(monkeypatch, exchange)

        with pytest.raises(AuthError) as exc:
            adapter.connect(CREDS)

        assert exc.value.reason is AuthReason.INVALID_CREDENTIALS
        assert not adapter.connected

    def test_ip_whitelist_error(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(
            side_effect=ccxt.AuthenticationError("Unmatched IP, please check your API key's bound IP addresses.")
        ))
        adapter = _adapter(monkeypatch, exchange)

        with pytest.raises(AuthError) as exc:
            adapter.connect(CREDS)
        assert exc.value.reason is AuthReason.IP_NOT_WHITELISTED

    def test_permission_denied(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(
            side_effect=ccxt.PermissionDenied("account has no futures access")
        ))
        adapter = _adapter(monkeypatch, exchange)

        with pytest.raises(AuthError) as exc:
            adapter.connect(CREDS)
        assert exc.value.reason is AuthReason.INSUFFICIENT_PERMISSIONS

    def test_network_failure_is_gateway_error(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(side_effect=ccxt.NetworkError("timed out")))
        adapter = _adapter(monkeypatch, exchange)

        with pytest.raises(GatewayError):
            adapter.connect(CREDS)

    def test_okx_without_passphrase_never_calls_exchange(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock())
        adapter = _adapter(monkeypatch, exchange, cls=OkxAdapter)

        with pytest.raises(AuthError) as exc:
            adapter.connect(ExchangeCredentials(ExchangeId.OKX, "key", "secret"))

        assert exc.value.reason is AuthReason.MISSING_PASSPHRASE
        exchange.fetch_balance.assert_not_awaited()


@pytest.mark.parametrize("message,reason", [
    ("Invalid API-key, IP, or permissions for action.", AuthReason.INVALID_CREDENTIALS),
    ("Invalid key provided", AuthReason.INVALID_CREDENTIALS),
    ("Your IP is not in the whitelist", AuthReason.IP_NOT_WHITELISTED),
    ("request from non-whitelisted address", AuthReason.IP_NOT_WHITELISTED),
    ("No permission to access this endpoint", AuthReason.INSUFFICIENT_PERMISSIONS),
    ("API key expired", AuthReason.UNKNOWN),
    ("", AuthReason.UNKNOWN),
])
def test_classify_auth_failure(message, reason):
    assert classify_auth_failure(message) is reason


# ── Execution ──────────────────────────────────────────────────────────────

class TestExecution:

    def test_market_order_params(self, monkeypatch):
        exchange = _fake_exchange(create_order=AsyncMock(return_value={
            "id": 987, "average": 101.5, "filled": 2.5,
            "trades": [{"fee": {"cost": 0.05}}, {"fee": {"cost": 0.02}}],
        }))
        adapter = _adapter(monkeypatch, exchange)

        result = adapter.place_market_order("BTC/USDT", "buy", 2.5, leverage=25)

        assert result.success
        assert result.order_id == "987"
        assert result.fill_price == 101.5
        assert result.commission == pytest.approx(0.07)
        kwargs = exchange.create_order.await_args.kwargs
        assert kwargs["symbol"] == "BTC/USDT:USDT"
        assert kwargs["type"] == "market"
        assert kwargs["params"] == {"leverage": 25, "marginMode": "isolated", "timeInForce": "IOC"}

    def test_rejected_order_returns_failure(self, monkeypatch):
        exchange = _fake_exchange(create_order=AsyncMock(
            side_effect=ccxt.InsufficientFunds("insufficient margin")
        ))
        adapter = _adapter(monkeypatch, exchange)

        result = adapter.place_market_order("BTC/USDT", "buy", 2.5, leverage=25)

        assert not result.success
        assert "insufficient margin" in result.error

    def test_close_without_position_is_noop(self, monkeypatch):
        exchange = _fake_exchange(fetch_positions=AsyncMock(return_value=[]), create_order=AsyncMock())
        adapter = _adapter(monkeypatch, exchange)

        result = adapter.close_position("BTC/USDT")

        assert result.success and result.noop
        exchange.create_order.assert_not_awaited()

    def test_close_sends_reduce_only_opposite_order(self, monkeypatch):
        exchange = _fake_exchange(
            fetch_positions=AsyncMock(return_value=[{
                "symbol": "BTC/USDT:USDT", "contracts": 2.0, "side": "long", "unrealizedPnl": -3.5,
            }]),
            create_order=AsyncMock(return_value={"id": "c-1", "average": 99.0, "fee": {"cost": 0.1}}),
        )
        adapter = _adapter(monkeypatch, exchange)

        result = adapter.close_position("BTC/USDT")

        assert result.success and not result.noop
        assert result.pnl == -3.5
        assert result.filled_qty == 2.0
        kwargs = exchange.create_order.await_args.kwargs
        assert kwargs["side"] == "sell"
        assert kwargs["amount"] == 2.0
        assert kwargs["params"] == {"reduceOnly": True}

    def test_close_failure_returns_failure(self, monkeypatch):
        exchange = _fake_exchange(fetch_positions=AsyncMock(side_effect=ccxt.ExchangeNotAvailable("down")))
        adapter = _adapter(monkeypatch, exchange)

        result = adapter.close_position("BTC/USDT")
        assert not result.success


# ── Queries & config ───────────────────────────────────────────────────────

class TestQueries:

    def test_positions_are_mapped_back(self, monkeypatch):
        exchange = _fake_exchange(fetch_positions=AsyncMock(return_value=[
            {"symbol": "ETH/USDT:USDT", "contracts": 1.5, "side": "long", "entryPrice": 2000,
             "markPrice": 1990, "unrealizedPnl": -15, "leverage": 25, "initialMargin": 120},
            {"symbol": "BTC/USDT:USDT", "contracts": 0},
        ]))
        adapter = _adapter(monkeypatch, exchange)

        (pos,) = adapter.get_positions()

        assert pos.symbol == "ETH/USDT"
        assert pos.size == 1.5
        assert pos.margin == 120.0
        assert pos.leverage == 25

    def test_balance_failure_raises_gateway_error(self, monkeypatch):
        exchange = _fake_exchange(fetch_balance=AsyncMock(side_effect=ccxt.RequestTimeout("slow")))
        adapter = _adapter(monkeypatch, exchange)

        with pytest.raises(GatewayError):
            adapter.get_balance()

    def test_min_order_size_from_market_limits(self, monkeypatch):
        exchange = _fake_exchange(load_markets=AsyncMock(return_value={}))
        exchange.market = MagicMock(return_value={"limits": {"amount": {"min": 0.001}}})
        adapter = _adapter(monkeypatch, exchange)

        assert adapter.get_min_order_size("BTC/USDT") == 0.001
        exchange.market.assert_called_with("BTC/USDT:USDT")

    def test_set_leverage_is_cached(self, monkeypatch):
        exchange = _fake_exchange(set_leverage=AsyncMock(return_value={}))
        adapter = _adapter(monkeypatch, exchange)

        assert adapter.set_leverage("BTC/USDT", 25) is True
        assert adapter.set_leverage("BTC/USDT", 25) is True
        assert exchange.set_leverage.await_count == 1

    def test_set_leverage_not_modified_counts_as_success(self, monkeypatch):
        exchange = _fake_exchange(set_leverage=AsyncMock(
            side_effect=ccxt.BadRequest('bybit {"retCode":110043,"retMsg":"leverage not modified"}')
        ))
        adapter = _adapter(monkeypatch, exchange)

        assert adapter.set_leverage("BTC/USDT", 25) is True

    def test_set_leverage_failure_returns_false(self, monkeypatch):
        exchange = _fake_exchange(set_leverage=AsyncMock(side_effect=ccxt.BadRequest("max leverage 20")))
        adapter = _adapter(monkeypatch, exchange)

        assert adapter.set_leverage("BTC/USDT", 25) is False


def test_binance_sandbox_points_at_demo_fapi():
    exchange = MagicMock()
    exchange.urls = {"api": {}}

    BinanceAdapter(testnet=True)._configure_sandbox(exchange)

    exchange.set_sandbox_mode.assert_called_once_with(True)
    assert exchange.urls["api"]["fapiPrivate"].startswith("https://demo-fapi.binance.com")


class TestFactory:

    def test_paper_mode_builds_paper_adapter(self):
        adapter = build_exchange_adapter(ExchangeId.OKX, Settings(execution_mode="paper", paper_balance=250))
        assert isinstance(adapter, PaperExchangeAdapter)
        assert adapter.exchange_name == "okx"

    def test_testnet_and_live_modes(self):
        testnet = build_exchange_adapter(ExchangeId.BINANCE, Settings(execution_mode="testnet"))
        live = build_exchange_adapter(ExchangeId.BYBIT, Settings(execution_mode="live"))

        assert isinstance(testnet, BinanceAdapter) and testnet.mode == "testnet"
        assert isinstance(live, BybitAdapter) and live.mode == "live"
