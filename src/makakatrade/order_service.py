"""
Order execution service - the only component that mutates the ledger.

Each order reads the price cache, validates funds or holdings, and applies
the balance change, the holding change and the order record as one ledger
transaction. Orders for the same user are additionally serialized by a
per-user lock so concurrent requests cannot double-spend.

Lifecycle of one request:
    RECEIVED -> PRICE_RESOLVED -> VALIDATED -> LEDGER_UPDATED -> RECORDED -> COMPLETE
with an early exit to REJECTED when no price is available or the funds or
holdings are insufficient.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .database import LedgerError
from .models import OrderRecord, OrderRequest, OrderResult, OrderType
from .price_cache import PriceCache
from .symbols import DEFAULT_QUOTE, to_base_symbol, to_trading_pair

logger = logging.getLogger(__name__)

# Holdings at or below this are float residue and are deleted like empty ones
DUST_THRESHOLD = 1e-9


class OrderState(str, Enum):
    RECEIVED = "RECEIVED"
    PRICE_RESOLVED = "PRICE_RESOLVED"
    VALIDATED = "VALIDATED"
    LEDGER_UPDATED = "LEDGER_UPDATED"
    RECORDED = "RECORDED"
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"


class OrderError(Exception):
    """Base class for order failures, carrying an HTTP-style status code."""
    status_code = 400
    kind = "client_error"
    error_code = "order_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "error": self.error_code}


class InvalidOrderError(OrderError):
    error_code = "invalid_order"


class PriceUnavailableError(OrderError):
    """No cached price yet; the caller should retry once the ingester publishes one."""
    error_code = "price_unavailable"
    retryable = True


class InsufficientBalanceError(OrderError):
    error_code = "insufficient_balance"


class InsufficientHoldingsError(OrderError):
    error_code = "insufficient_holdings"


class OrderExecutionError(OrderError):
    """Persistence fault. The ledger was rolled back and the order may be retried."""
    status_code = 500
    kind = "server_fault"
    error_code = "execution_failed"
    retryable = True


class OrderExecutor:
    """Prices and executes BUY/SELL orders against the ledger."""

    def __init__(self, ledger, price_cache: PriceCache, quote_asset: str = DEFAULT_QUOTE):
        """
        Args:
            ledger: Database or MemoryLedger providing transaction()
            price_cache: Source of current prices, keyed by base symbol
            quote_asset: Quote currency suffix used for trading pairs
        """
        self.ledger = ledger
        self.price_cache = price_cache
        self.quote_asset = quote_asset
        # user_id -> (lock, number of orders holding or waiting for it)
        self._user_locks: Dict[int, Tuple[asyncio.Lock, int]] = {}

        self.stats = {
            "orders_received": 0,
            "orders_completed": 0,
            "orders_rejected": 0,
            "execution_failures": 0,
        }

    @asynccontextmanager
    async def _user_lock(self, user_id: int):
        """Serialize orders for one user. The lock is dropped once no order needs it."""
        lock, users = self._user_locks.get(user_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._user_locks[user_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._user_locks[user_id]
            if users <= 1:
                del self._user_locks[user_id]
            else:
                self._user_locks[user_id] = (lock, users - 1)

    def _validate(self, asset_symbol, amount, order_type) -> OrderRequest:
        if not asset_symbol or amount is None or not order_type:
            raise InvalidOrderError("Asset symbol, amount, and order type are required.")

        try:
            return OrderRequest(asset_symbol=asset_symbol, amount=amount, order_type=order_type)
        except ValidationError as e:
            fields = {err["loc"][0] for err in e.errors() if err.get("loc")}
            if "order_type" in fields:
                raise InvalidOrderError("Invalid order type. Use 'BUY' or 'SELL'.")
            if "amount" in fields:
                raise InvalidOrderError("Amount must be a positive number.")
            raise InvalidOrderError(f"Invalid asset symbol: {asset_symbol!r}")

    async def place_order(
        self,
        user_id: int,
        asset_symbol: Optional[str],
        amount: Any,
        order_type: Optional[str],
    ) -> OrderResult:
        """
        Execute a market order at the current cached price.

        Returns:
            OrderResult with the executed pair, price and total

        Raises:
            InvalidOrderError: Missing or malformed input
            PriceUnavailableError: No positive cached price for the symbol
            InsufficientBalanceError: BUY cost exceeds the balance
            InsufficientHoldingsError: SELL amount exceeds the holding
            OrderExecutionError: Ledger fault; nothing was applied
        """
        self.stats["orders_received"] += 1
        state = OrderState.RECEIVED

        try:
            request = self._validate(asset_symbol, amount, order_type)
            pair = to_trading_pair(request.asset_symbol, self.quote_asset)

            price = self.price_cache.get(to_base_symbol(pair, self.quote_asset))
            if not price or price <= 0:
                raise PriceUnavailableError(f"Price unavailable for {pair}. Please try again later.")
            state = OrderState.PRICE_RESOLVED

            amount = request.amount
            total = amount * price

            async with self._user_lock(user_id):
                async with self.ledger.transaction() as tx:
                    if request.order_type == OrderType.BUY:
                        balance = await tx.get_balance(user_id)
                        if balance is None or balance < total:
                            raise InsufficientBalanceError("Insufficient balance (USD).")
                        state = OrderState.VALIDATED

                        await tx.adjust_balance(user_id, -total)
                        await tx.ensure_asset(pair)
                        await tx.upsert_holding(user_id, pair, amount)
                    else:
                        holding = await tx.get_holding(user_id, pair)
                        if holding is None or holding.amount < amount - DUST_THRESHOLD:
                            raise InsufficientHoldingsError("Insufficient asset amount to sell.")
                        state = OrderState.VALIDATED

                        # Never credit more units than are actually held
                        amount = min(amount, holding.amount)
                        total = amount * price
                        await tx.adjust_balance(user_id, total)
                        remaining = await tx.upsert_holding(user_id, pair, -amount)
                        if remaining <= DUST_THRESHOLD:
                            await tx.delete_holding(user_id, pair)
                    state = OrderState.LEDGER_UPDATED

                    order_id = await tx.insert_order(OrderRecord(
                        user_id=user_id,
                        asset_symbol=pair,
                        order_type=request.order_type,
                        amount=amount,
                        price_at_transaction=price,
                    ))
                    state = OrderState.RECORDED

        except OrderError as e:
            self.stats["orders_rejected"] += 1
            logger.info(f"Order rejected for user {user_id} after {state.value}: {e.message}")
            raise
        except LedgerError as e:
            self.stats["execution_failures"] += 1
            logger.error(f"Order for user {user_id} failed after {state.value}, ledger rolled back: {e}")
            raise OrderExecutionError("Internal server error.") from e

        state = OrderState.COMPLETE
        self.stats["orders_completed"] += 1
        logger.info(
            f"Order {order_id} {state.value}: user {user_id} {request.order_type.value} "
            f"{amount} {pair} @ {price} (total {total:.2f})"
        )

        return OrderResult(
            asset=pair,
            price=price,
            total=total,
            order_type=request.order_type,
            amount=amount,
            order_id=order_id,
        )

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
