"""
MakakaTrade environment configuration.

Simple, centralized configuration for the API process and the market ingester.
Loads from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


def _get_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def _get_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


def _get_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class TradeConfig:
    """
    MakakaTrade configuration loaded from environment variables.

    Flat structure: price bus, ingester, ledger and server settings.
    """

    # Price bus
    redis_url: str = "redis://localhost:6379/0"
    bus_namespace: str = "vacetmax"
    price_bus_enabled: bool = True
    bus_reconnect_delay: float = 5.0

    # Market ingester
    ticker_url: str = "https://api.binance.com/api/v3/ticker/price"
    quote_asset: str = "USDT"
    ingest_interval: float = 1.0  # seconds
    ingest_timeout: float = 5.0  # seconds
    ingester_enabled: bool = False
    tracked_symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH", "XRP", "LTC"])

    # Ledger
    ledger_backend: str = "postgres"  # postgres or memory
    database_url: Optional[str] = None
    db_pool_size: int = 10
    initial_balance: float = 10000.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "TradeConfig":
        """
        Load configuration from environment variables.

        Returns:
            TradeConfig instance

        Raises:
            ValueError: If a numeric variable cannot be parsed or the ledger backend is unknown
        """
        tracked_str = os.environ.get("TRACKED_SYMBOLS", "BTC,ETH,XRP,LTC")
        tracked_symbols = [s.strip().upper() for s in tracked_str.split(",") if s.strip()]

        ledger_backend = os.environ.get("LEDGER_BACKEND", "postgres").lower()
        if ledger_backend not in ("postgres", "memory"):
            raise ValueError(f"LEDGER_BACKEND must be 'postgres' or 'memory', got {ledger_backend!r}")

        config = cls(
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            bus_namespace=os.environ.get("PRICE_BUS_NAMESPACE", "vacetmax"),
            price_bus_enabled=_get_bool("PRICE_BUS_ENABLED", "true"),
            bus_reconnect_delay=_get_float("PRICE_BUS_RECONNECT_DELAY", "5.0"),
            ticker_url=os.environ.get(
                "BINANCE_TICKER_URL",
                "https://api.binance.com/api/v3/ticker/price"
            ),
            quote_asset=os.environ.get("QUOTE_ASSET", "USDT").upper(),
            ingest_interval=_get_float("INGEST_INTERVAL_SECONDS", "1.0"),
            ingest_timeout=_get_float("INGEST_TIMEOUT_SECONDS", "5.0"),
            ingester_enabled=_get_bool("INGESTER_ENABLED", "false"),
            tracked_symbols=tracked_symbols,
            ledger_backend=ledger_backend,
            database_url=os.environ.get("DATABASE_URL"),
            db_pool_size=_get_int("DB_POOL_SIZE", "10"),
            initial_balance=_get_float("INITIAL_BALANCE", "10000.0"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_get_int("PORT", "8000"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

        logger.info(
            f"Loaded config: ledger={config.ledger_backend}, namespace={config.bus_namespace}, "
            f"bus_enabled={config.price_bus_enabled}, ingester_enabled={config.ingester_enabled}"
        )
        return config
