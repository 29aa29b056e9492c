"""
Tests for symbol conventions, pydantic models and environment configuration.
"""

import os
import pytest
from unittest.mock import patch

from pydantic import ValidationError

from makakatrade.config import TradeConfig
from makakatrade.models import OrderRequest, OrderType, PriceMessage, PriceUpdateMessage, WelcomeMessage
from makakatrade.symbols import (
    price_topic,
    subscription_pattern,
    symbol_from_topic,
    to_base_symbol,
    to_trading_pair,
)


class TestSymbols:

    @pytest.mark.parametrize("raw,expected", [
        ("BTCUSDT", "BTC"),
        ("btcusdt", "BTC"),
        ("BTC", "BTC"),
        ("USDT", "USDT"),
        ("USDTUSDT", "USDT"),
    ])
    def test_to_base_symbol(self, raw, expected):
        assert to_base_symbol(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("btc", "BTCUSDT"),
        ("BTCUSDT", "BTCUSDT"),
        (" eth ", "ETHUSDT"),
    ])
    def test_to_trading_pair(self, raw, expected):
        assert to_trading_pair(raw) == expected

    def test_custom_quote(self):
        assert to_trading_pair("btc", "EUR") == "BTCEUR"
        assert to_base_symbol("BTCEUR", "EUR") == "BTC"

    def test_topics(self):
        assert price_topic("vacetmax", "BTC") == "vacetmax/market/BTC"
        assert subscription_pattern("vacetmax") == "vacetmax/market/*"
        assert symbol_from_topic("vacetmax", "vacetmax/market/BTC") == "BTC"
        assert symbol_from_topic("vacetmax", "vacetmax/market/a/b") is None
        assert symbol_from_topic("vacetmax", "vacetmax/market/") is None


class TestModels:

    def test_price_message_accepts_int_and_float(self):
        assert PriceMessage.model_validate_json('{"price": 3}').price == 3.0
        assert PriceMessage.model_validate_json('{"price": 0.00001}').price == 0.00001

    @pytest.mark.parametrize("price", [0, -1.0, "1.0", True, None, float("nan"), float("inf")])
    def test_price_message_rejects(self, price):
        with pytest.raises(ValidationError):
            PriceMessage(price=price)

    def test_price_update_shape(self):
        message = PriceUpdateMessage(symbol="BTC", price=42.5).model_dump()
        assert message == {"type": "PRICE_UPDATE", "symbol": "BTC", "price": 42.5}

    def test_welcome_message(self):
        assert WelcomeMessage().model_dump() == {"message": "Welcome to MakakaTrade"}

    def test_order_request_parses_type(self):
        request = OrderRequest(asset_symbol="BTC", amount=0.5, order_type="SELL")
        assert request.order_type == OrderType.SELL

    @pytest.mark.parametrize("symbol", ["BTC/USDT", "  ", "BTC-USDT"])
    def test_order_request_rejects_symbols(self, symbol):
        with pytest.raises(ValidationError):
            OrderRequest(asset_symbol=symbol, amount=1, order_type="BUY")


class TestTradeConfig:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = TradeConfig.from_env()

        assert config.bus_namespace == "vacetmax"
        assert config.quote_asset == "USDT"
        assert config.ingest_interval == 1.0
        assert config.ledger_backend == "postgres"
        assert config.initial_balance == 10000.0
        assert config.tracked_symbols == ["BTC", "ETH", "XRP", "LTC"]
        assert config.ingester_enabled is False
        assert config.price_bus_enabled is True

    def test_overrides(self):
        env = {
            "PRICE_BUS_NAMESPACE": "staging",
            "LEDGER_BACKEND": "MEMORY",
            "TRACKED_SYMBOLS": "btc, sol,,",
            "INGEST_INTERVAL_SECONDS": "2.5",
            "INGESTER_ENABLED": "true",
            "PORT": "9000",
        }
        with patch.dict(os.environ, env, clear=True):
            config = TradeConfig.from_env()

        assert config.bus_namespace == "staging"
        assert config.ledger_backend == "memory"
        assert config.tracked_symbols == ["BTC", "SOL"]
        assert config.ingest_interval == 2.5
        assert config.ingester_enabled is True
        assert config.port == 9000

    def test_invalid_number_names_variable(self):
        with patch.dict(os.environ, {"INGEST_INTERVAL_SECONDS": "fast"}, clear=True):
            with pytest.raises(ValueError, match="INGEST_INTERVAL_SECONDS"):
                TradeConfig.from_env()

    def test_unknown_ledger_backend(self):
        with patch.dict(os.environ, {"LEDGER_BACKEND": "sqlite"}, clear=True):
            with pytest.raises(ValueError, match="LEDGER_BACKEND"):
                TradeConfig.from_env()
