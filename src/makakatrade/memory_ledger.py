"""
In-memory ledger with the same interface as the PostgreSQL Database.

Used for local runs without PostgreSQL (LEDGER_BACKEND=memory) and in tests.
Transactions are serialized by a lock and restored from a snapshot when the
body raises, so a failed order leaves no partial mutation behind.
"""

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple, Any

from .models import Holding, OrderRecord, OrderType

logger = logging.getLogger(__name__)


class _LedgerState:
    def __init__(self):
        self.users: Dict[int, Dict[str, Any]] = {}
        self.portfolio: Dict[Tuple[int, str], float] = {}
        self.orders: List[OrderRecord] = []
        self.assets: Dict[str, bool] = {}
        self.next_user_id = 1
        self.next_order_id = 1


class MemoryLedgerTransaction:
    """Ledger operations applied directly to the in-memory state."""

    def __init__(self, state: _LedgerState):
        self._state = state

    async def get_balance(self, user_id: int) -> Optional[float]:
        user = self._state.users.get(user_id)
        return user["balance"] if user else None

    async def adjust_balance(self, user_id: int, delta: float) -> float:
        user = self._state.users[user_id]
        user["balance"] += delta
        return user["balance"]

    async def get_holding(self, user_id: int, asset_symbol: str) -> Optional[Holding]:
        amount = self._state.portfolio.get((user_id, asset_symbol))
        if amount is None:
            return None
        return Holding(user_id=user_id, asset_symbol=asset_symbol, amount=amount)

    async def upsert_holding(self, user_id: int, asset_symbol: str, delta: float) -> float:
        key = (user_id, asset_symbol)
        self._state.portfolio[key] = self._state.portfolio.get(key, 0.0) + delta
        return self._state.portfolio[key]

    async def delete_holding(self, user_id: int, asset_symbol: str) -> None:
        self._state.portfolio.pop((user_id, asset_symbol), None)

    async def insert_order(self, record: OrderRecord) -> int:
        order_id = self._state.next_order_id
        self._state.next_order_id += 1
        self._state.orders.append(record.model_copy(update={"id": order_id}))
        return order_id

    async def ensure_asset(self, symbol: str) -> None:
        self._state.assets.setdefault(symbol, True)


class MemoryLedger:
    """Dictionary-backed ledger."""

    def __init__(self):
        self._state = _LedgerState()
        self._lock = asyncio.Lock()

    async def initialize(self):
        logger.info("In-memory ledger initialized")

    async def close(self):
        pass

    @asynccontextmanager
    async def transaction(self):
        """Serialized unit of work; state is restored if the body raises."""
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield MemoryLedgerTransaction(self._state)
            except BaseException:
                self._state = snapshot
                logger.debug("In-memory ledger transaction rolled back")
                raise

    async def create_user(self, username: str, balance: float = 10000.0) -> int:
        user_id = self._state.next_user_id
        self._state.next_user_id += 1
        self._state.users[user_id] = {"username": username, "balance": balance}
        return user_id

    async def add_asset(self, symbol: str, is_active: bool = True) -> None:
        self._state.assets[symbol] = is_active

    async def get_balance(self, user_id: int) -> Optional[float]:
        user = self._state.users.get(user_id)
        return user["balance"] if user else None

    async def get_active_symbols(self) -> List[str]:
        return sorted(symbol for symbol, active in self._state.assets.items() if active)

    async def get_portfolio(self, user_id: int) -> List[Holding]:
        return [
            Holding(user_id=uid, asset_symbol=symbol, amount=amount)
            for (uid, symbol), amount in sorted(self._state.portfolio.items())
            if uid == user_id
        ]

    async def get_orders(self, user_id: int, limit: int = 100) -> List[OrderRecord]:
        orders = [o for o in self._state.orders if o.user_id == user_id]
        orders.sort(key=lambda o: (o.timestamp, o.id), reverse=True)
        return orders[:limit]

    async def get_order_summary(self, user_id: int) -> Dict[str, Any]:
        orders = [o for o in self._state.orders if o.user_id == user_id]
        buys = [o for o in orders if o.order_type == OrderType.BUY]
        sells = [o for o in orders if o.order_type == OrderType.SELL]
        return {
            "total_orders": len(orders),
            "buy_orders": len(buys),
            "sell_orders": len(sells),
            "total_spent": sum(o.amount * o.price_at_transaction for o in buys),
            "total_earned": sum(o.amount * o.price_at_transaction for o in sells),
        }

    async def get_order(self, user_id: int, order_id: int) -> Optional[OrderRecord]:
        for order in self._state.orders:
            if order.id == order_id and order.user_id == user_id:
                return order
        return None

    async def get_orders_by_asset(self, user_id: int) -> List[Dict[str, Any]]:
        by_asset: Dict[str, Dict[str, Any]] = {}
        for o in self._state.orders:
            if o.user_id != user_id:
                continue
            row = by_asset.setdefault(o.asset_symbol, {
                "asset_symbol": o.asset_symbol,
                "order_count": 0,
                "total_bought": 0.0,
                "total_sold": 0.0,
            })
            row["order_count"] += 1
            if o.order_type == OrderType.BUY:
                row["total_bought"] += o.amount
            else:
                row["total_sold"] += o.amount
        return [by_asset[symbol] for symbol in sorted(by_asset)]

    async def get_global_stats(self) -> Dict[str, Any]:
        """Platform-wide aggregates, shaped like Database.get_global_stats()."""
        orders = self._state.orders
        traded: Dict[str, Dict[str, Any]] = {}
        volume_by_user: Dict[int, Dict[str, Any]] = {
            uid: {"id": uid, "username": user["username"], "total_orders": 0, "total_volume": 0.0}
            for uid, user in self._state.users.items()
        }
        for o in orders:
            value = o.amount * o.price_at_transaction
            row = traded.setdefault(o.asset_symbol, {
                "asset_symbol": o.asset_symbol,
                "trade_count": 0,
                "total_amount": 0.0,
                "total_value": 0.0,
            })
            row["trade_count"] += 1
            row["total_amount"] += o.amount
            row["total_value"] += value
            if o.user_id in volume_by_user:
                volume_by_user[o.user_id]["total_orders"] += 1
                volume_by_user[o.user_id]["total_volume"] += value

        cutoff = (datetime.now(timezone.utc) - timedelta(days=7)).date()
        activity: Dict[date, Dict[str, Any]] = {}
        for o in orders:
            day = o.timestamp.date()
            if day < cutoff:
                continue
            row = activity.setdefault(day, {"date": day.isoformat(), "order_count": 0, "buy_count": 0, "sell_count": 0})
            row["order_count"] += 1
            row["buy_count" if o.order_type == OrderType.BUY else "sell_count"] += 1

        holders: Dict[str, Dict[str, Any]] = {}
        for (uid, symbol), amount in self._state.portfolio.items():
            row = holders.setdefault(symbol, {"asset_symbol": symbol, "holders": 0, "total_held": 0.0})
            row["holders"] += 1
            row["total_held"] += amount

        buys = sum(1 for o in orders if o.order_type == OrderType.BUY)
        return {
            "users": {
                "total": len(self._state.users),
                "total_balance": sum(u["balance"] for u in self._state.users.values()),
            },
            "orders": {
                "total": len(orders),
                "buy_orders": buys,
                "sell_orders": len(orders) - buys,
                "total_volume": sum(o.amount * o.price_at_transaction for o in orders),
            },
            "most_traded_assets": sorted(traded.values(), key=lambda r: -r["trade_count"])[:10],
            "recent_activity": [activity[day] for day in sorted(activity)],
            "top_traders": sorted(volume_by_user.values(), key=lambda r: -r["total_volume"])[:10],
            "asset_distribution": sorted(holders.values(), key=lambda r: -r["holders"]),
        }

    async def get_db_stats(self) -> Dict[str, Any]:
        return {
            "total_users": len(self._state.users),
            "total_orders": len(self._state.orders),
            "active_assets": len(await self.get_active_symbols()),
            "database_type": "memory",
        }
