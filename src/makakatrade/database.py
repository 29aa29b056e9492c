"""
PostgreSQL ledger storage for balances, holdings and order history.

Order execution runs every balance/holding/order mutation for one request
inside a single transaction with row locks on the user and holding rows.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any

import asyncpg

from .models import Holding, OrderRecord, OrderType

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "migrations")
MIGRATION_FILES = [
    "001_initial_schema.sql",
    "002_indexes.sql",
]


class LedgerError(Exception):
    """Persistence fault. No partial mutation is visible; safe to retry."""
    pass


class PostgresLedgerTransaction:
    """Ledger operations bound to one open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def get_balance(self, user_id: int) -> Optional[float]:
        """Read and lock the user's balance. None if the user does not exist."""
        return await self.conn.fetchval(
            "SELECT balance FROM users WHERE id = $1 FOR UPDATE",
            user_id
        )

    async def adjust_balance(self, user_id: int, delta: float) -> float:
        return await self.conn.fetchval(
            "UPDATE users SET balance = balance + $2 WHERE id = $1 RETURNING balance",
            user_id, delta
        )

    async def get_holding(self, user_id: int, asset_symbol: str) -> Optional[Holding]:
        """Read and lock a portfolio row."""
        row = await self.conn.fetchrow('''
            SELECT user_id, asset_symbol, amount FROM portfolio
            WHERE user_id = $1 AND asset_symbol = $2
            FOR UPDATE
        ''', user_id, asset_symbol)
        return Holding(**dict(row)) if row else None

    async def upsert_holding(self, user_id: int, asset_symbol: str, delta: float) -> float:
        """Add delta to the holding, inserting the row if needed. Returns the new amount."""
        return await self.conn.fetchval('''
            INSERT INTO portfolio (user_id, asset_symbol, amount)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id, asset_symbol) DO UPDATE SET
                amount = portfolio.amount + EXCLUDED.amount
            RETURNING amount
        ''', user_id, asset_symbol, delta)

    async def delete_holding(self, user_id: int, asset_symbol: str) -> None:
        await self.conn.execute(
            "DELETE FROM portfolio WHERE user_id = $1 AND asset_symbol = $2",
            user_id, asset_symbol
        )

    async def insert_order(self, record: OrderRecord) -> int:
        return await self.conn.fetchval('''
            INSERT INTO orders (
                user_id, asset_symbol, order_type, amount, price_at_transaction, timestamp
            ) VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
        ''',
            record.user_id,
            record.asset_symbol,
            record.order_type.value,
            record.amount,
            record.price_at_transaction,
            record.timestamp
        )

    async def ensure_asset(self, symbol: str) -> None:
        """Register a traded symbol as an active asset if it is not known yet."""
        await self.conn.execute('''
            INSERT INTO assets (symbol, name, is_active) VALUES ($1, $1, TRUE)
            ON CONFLICT (symbol) DO NOTHING
        ''', symbol)


class Database:
    """PostgreSQL database manager for the trading ledger."""

    def __init__(self, database_url: str = None, pool_size: int = 10):
        """Initialize database with connection pool."""
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.pool_size = pool_size
        self._pool = None
        self._initialized = False

    async def initialize(self):
        """Initialize database connection pool and schema."""
        if self._initialized:
            return

        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        try:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=20,
                server_settings={
                    'application_name': 'makakatrade',
                    'timezone': 'UTC'
                }
            )

            async with self._pool.acquire() as conn:
                await conn.fetchval('SELECT 1')

            await self._run_migrations()

            logger.info(f"PostgreSQL ledger initialized with pool size {self.pool_size}")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL ledger: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("PostgreSQL ledger pool closed")

    async def _run_migrations(self):
        """Apply bundled SQL migrations that have not been recorded yet."""
        async with self._pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    id SERIAL PRIMARY KEY,
                    filename VARCHAR(255) NOT NULL UNIQUE,
                    applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            for filename in MIGRATION_FILES:
                existing = await conn.fetchrow(
                    "SELECT id FROM migrations WHERE filename = $1",
                    filename
                )
                if existing:
                    logger.debug(f"Migration {filename} already applied")
                    continue

                migration_path = os.path.join(MIGRATIONS_DIR, filename)
                with open(migration_path, 'r') as f:
                    migration_sql = f.read()

                async with conn.transaction():
                    await conn.execute(migration_sql)
                    await conn.execute(
                        "INSERT INTO migrations (filename) VALUES ($1)",
                        filename
                    )
                logger.info(f"Applied migration: {filename}")

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self._initialized:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """
        Open a READ COMMITTED transaction for one ledger unit of work.

        Everything done through the yielded PostgresLedgerTransaction commits
        together or not at all. Driver and connection failures surface as
        LedgerError; any other exception from the body propagates unchanged
        after the rollback.
        """
        try:
            async with self.get_connection() as conn:
                async with conn.transaction(isolation='read_committed'):
                    yield PostgresLedgerTransaction(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Ledger transaction failed and was rolled back: {e}")
            raise LedgerError(str(e)) from e

    async def create_user(self, username: str, balance: float = 10000.0) -> int:
        async with self.get_connection() as conn:
            return await conn.fetchval(
                "INSERT INTO users (username, balance) VALUES ($1, $2) RETURNING id",
                username, balance
            )

    async def get_balance(self, user_id: int) -> Optional[float]:
        async with self.get_connection() as conn:
            return await conn.fetchval("SELECT balance FROM users WHERE id = $1", user_id)

    async def get_active_symbols(self) -> List[str]:
        """Trading-pair symbols of every asset flagged active."""
        async with self.get_connection() as conn:
            rows = await conn.fetch("SELECT symbol FROM assets WHERE is_active ORDER BY symbol")
            return [row['symbol'] for row in rows]

    async def get_portfolio(self, user_id: int) -> List[Holding]:
        async with self.get_connection() as conn:
            rows = await conn.fetch('''
                SELECT user_id, asset_symbol, amount FROM portfolio
                WHERE user_id = $1
                ORDER BY asset_symbol
            ''', user_id)
            return [Holding(**dict(row)) for row in rows]

    async def get_orders(self, user_id: int, limit: int = 100) -> List[OrderRecord]:
        """Most recent orders first."""
        async with self.get_connection() as conn:
            rows = await conn.fetch('''
                SELECT id, user_id, asset_symbol, order_type, amount, price_at_transaction, timestamp
                FROM orders
                WHERE user_id = $1
                ORDER BY timestamp DESC, id DESC
                LIMIT $2
            ''', user_id, limit)
            return [OrderRecord(**dict(row)) for row in rows]

    async def get_order_summary(self, user_id: int) -> Dict[str, Any]:
        """Order counts and traded value for a user."""
        async with self.get_connection() as conn:
            row = await conn.fetchrow('''
                SELECT
                    COUNT(*) as total_orders,
                    SUM(CASE WHEN order_type = 'BUY' THEN 1 ELSE 0 END) as buy_orders,
                    SUM(CASE WHEN order_type = 'SELL' THEN 1 ELSE 0 END) as sell_orders,
                    SUM(CASE WHEN order_type = 'BUY' THEN amount * price_at_transaction ELSE 0 END) as total_spent,
                    SUM(CASE WHEN order_type = 'SELL' THEN amount * price_at_transaction ELSE 0 END) as total_earned
                FROM orders
                WHERE user_id = $1
            ''', user_id)

        return {
            "total_orders": row["total_orders"] or 0,
            "buy_orders": row["buy_orders"] or 0,
            "sell_orders": row["sell_orders"] or 0,
            "total_spent": float(row["total_spent"] or 0),
            "total_earned": float(row["total_earned"] or 0),
        }

    async def get_order(self, user_id: int, order_id: int) -> Optional[OrderRecord]:
        """A single order, only if it belongs to the user."""
        async with self.get_connection() as conn:
            row = await conn.fetchrow('''
                SELECT id, user_id, asset_symbol, order_type, amount, price_at_transaction, timestamp
                FROM orders
                WHERE id = $1 AND user_id = $2
            ''', order_id, user_id)
            return OrderRecord(**dict(row)) if row else None

    async def get_orders_by_asset(self, user_id: int) -> List[Dict[str, Any]]:
        """Per-asset order counts and traded quantities for a user."""
        async with self.get_connection() as conn:
            rows = await conn.fetch('''
                SELECT
                    asset_symbol,
                    COUNT(*) as order_count,
                    SUM(CASE WHEN order_type = 'BUY' THEN amount ELSE 0 END) as total_bought,
                    SUM(CASE WHEN order_type = 'SELL' THEN amount ELSE 0 END) as total_sold
                FROM orders
                WHERE user_id = $1
                GROUP BY asset_symbol
                ORDER BY asset_symbol
            ''', user_id)

        return [
            {
                "asset_symbol": row["asset_symbol"],
                "order_count": row["order_count"],
                "total_bought": float(row["total_bought"] or 0),
                "total_sold": float(row["total_sold"] or 0),
            }
            for row in rows
        ]

    async def get_global_stats(self) -> Dict[str, Any]:
        """Platform-wide user, order and holding aggregates."""
        async with self.get_connection() as conn:
            users = await conn.fetchrow(
                "SELECT COUNT(*) as total_users, SUM(balance) as total_balance FROM users"
            )
            orders = await conn.fetchrow('''
                SELECT
                    COUNT(*) as total_orders,
                    SUM(CASE WHEN order_type = 'BUY' THEN 1 ELSE 0 END) as buy_orders,
                    SUM(CASE WHEN order_type = 'SELL' THEN 1 ELSE 0 END) as sell_orders,
                    SUM(amount * price_at_transaction) as total_volume
                FROM orders
            ''')
            most_traded = await conn.fetch('''
                SELECT
                    asset_symbol,
                    COUNT(*) as trade_count,
                    SUM(amount) as total_amount,
                    SUM(amount * price_at_transaction) as total_value
                FROM orders
                GROUP BY asset_symbol
                ORDER BY trade_count DESC
                LIMIT 10
            ''')
            activity = await conn.fetch('''
                SELECT
                    DATE(timestamp) as date,
                    COUNT(*) as order_count,
                    SUM(CASE WHEN order_type = 'BUY' THEN 1 ELSE 0 END) as buy_count,
                    SUM(CASE WHEN order_type = 'SELL' THEN 1 ELSE 0 END) as sell_count
                FROM orders
                WHERE timestamp >= NOW() - INTERVAL '7 days'
                GROUP BY DATE(timestamp)
                ORDER BY date ASC
            ''')
            top_traders = await conn.fetch('''
                SELECT
                    u.id,
                    u.username,
                    COUNT(o.id) as total_orders,
                    COALESCE(SUM(o.amount * o.price_at_transaction), 0) as total_volume
                FROM users u
                LEFT JOIN orders o ON u.id = o.user_id
                GROUP BY u.id, u.username
                ORDER BY total_volume DESC
                LIMIT 10
            ''')
            distribution = await conn.fetch('''
                SELECT
                    asset_symbol,
                    COUNT(DISTINCT user_id) as holders,
                    SUM(amount) as total_held
                FROM portfolio
                GROUP BY asset_symbol
                ORDER BY holders DESC
            ''')

        return {
            "users": {
                "total": users["total_users"] or 0,
                "total_balance": float(users["total_balance"] or 0),
            },
            "orders": {
                "total": orders["total_orders"] or 0,
                "buy_orders": orders["buy_orders"] or 0,
                "sell_orders": orders["sell_orders"] or 0,
                "total_volume": float(orders["total_volume"] or 0),
            },
            "most_traded_assets": [
                {
                    "asset_symbol": row["asset_symbol"],
                    "trade_count": row["trade_count"],
                    "total_amount": float(row["total_amount"]),
                    "total_value": float(row["total_value"]),
                }
                for row in most_traded
            ],
            "recent_activity": [
                {
                    "date": row["date"].isoformat(),
                    "order_count": row["order_count"],
                    "buy_count": row["buy_count"],
                    "sell_count": row["sell_count"],
                }
                for row in activity
            ],
            "top_traders": [
                {
                    "id": row["id"],
                    "username": row["username"],
                    "total_orders": row["total_orders"],
                    "total_volume": float(row["total_volume"]),
                }
                for row in top_traders
            ],
            "asset_distribution": [
                {
                    "asset_symbol": row["asset_symbol"],
                    "holders": row["holders"],
                    "total_held": float(row["total_held"]),
                }
                for row in distribution
            ],
        }

    async def get_db_stats(self) -> Dict[str, Any]:
        """Get database statistics for debugging."""
        async with self.get_connection() as conn:
            stats = await conn.fetchrow('''
                SELECT
                    (SELECT COUNT(*) FROM users) as total_users,
                    (SELECT COUNT(*) FROM orders) as total_orders,
                    (SELECT COUNT(*) FROM assets WHERE is_active) as active_assets
            ''')

        return {
            "total_users": stats["total_users"] if stats else 0,
            "total_orders": stats["total_orders"] if stats else 0,
            "active_assets": stats["active_assets"] if stats else 0,
            "database_type": "PostgreSQL",
            "pool_size": self.pool_size
        }
