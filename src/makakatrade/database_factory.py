"""
Ledger factory selecting the PostgreSQL or in-memory implementation.

Controlled by the LEDGER_BACKEND setting (postgres by default).
"""

import logging
from typing import Union

from .config import TradeConfig
from .database import Database
from .memory_ledger import MemoryLedger

logger = logging.getLogger(__name__)

Ledger = Union[Database, MemoryLedger]


class DatabaseFactory:
    """Factory class to create the configured ledger backend."""

    @staticmethod
    def create_database(config: TradeConfig) -> Ledger:
        if config.ledger_backend == "memory":
            return MemoryLedger()
        return Database(database_url=config.database_url, pool_size=config.db_pool_size)

    @staticmethod
    async def create_database_async(config: TradeConfig) -> Ledger:
        """Create and initialize the configured ledger."""
        db = DatabaseFactory.create_database(config)
        await db.initialize()
        logger.info(f"Ledger initialized: {DatabaseFactory.get_database_type(config)}")
        return db

    @staticmethod
    def get_database_type(config: TradeConfig) -> str:
        return "memory" if config.ledger_backend == "memory" else "PostgreSQL"
