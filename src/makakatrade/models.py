"""
Pydantic models for price bus messages, realtime events and ledger records.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Literal

from pydantic import BaseModel, Field, field_validator


def _require_finite_number(v, field_name: str):
    """Reject booleans, non-numeric values, NaN and infinities."""
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"{field_name} must be a number, got {type(v).__name__}")
    if not math.isfinite(v):
        raise ValueError(f"{field_name} must be finite, got {v}")
    return v


class PriceMessage(BaseModel):
    """Payload published on <namespace>/market/<symbol>."""
    price: float = Field(..., description="Last traded price in quote currency")

    @field_validator('price', mode='before')
    @classmethod
    def validate_price(cls, v):
        """Ensure the price is a positive finite number."""
        v = _require_finite_number(v, "price")
        if v <= 0:
            raise ValueError(f"price must be positive, got {v}")
        return v


class PriceUpdateMessage(BaseModel):
    """Realtime event pushed to every connected session."""
    type: Literal["PRICE_UPDATE"] = "PRICE_UPDATE"
    symbol: str = Field(..., description="Base symbol, e.g. BTC")
    price: float = Field(..., description="Price in quote currency")


class WelcomeMessage(BaseModel):
    """One-time greeting sent when a session connects."""
    message: str = "Welcome to MakakaTrade"


class OrderType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderRequest(BaseModel):
    """Order placement request from the API layer."""
    asset_symbol: str = Field(..., min_length=1, description="Asset symbol, with or without quote suffix")
    amount: float = Field(..., description="Quantity to buy or sell")
    order_type: OrderType = Field(..., description="BUY or SELL")

    @field_validator('asset_symbol')
    @classmethod
    def validate_symbol(cls, v):
        """Symbols are alphanumeric tickers."""
        v = v.strip()
        if not v or not v.isalnum():
            raise ValueError(f"Invalid asset symbol: {v!r}")
        return v

    @field_validator('amount', mode='before')
    @classmethod
    def validate_amount(cls, v):
        """Ensure amount is a positive number."""
        v = _require_finite_number(v, "amount")
        if v <= 0:
            raise ValueError(f"amount must be positive, got {v}")
        return v


class OrderResult(BaseModel):
    """Successful execution summary returned to the caller."""
    asset: str = Field(..., description="Trading pair the order executed on")
    price: float = Field(..., description="Execution price")
    total: float = Field(..., description="amount * price")
    order_type: OrderType
    amount: float
    order_id: Optional[int] = None


class Holding(BaseModel):
    """Portfolio row. Amount is always positive; empty holdings are deleted."""
    user_id: int
    asset_symbol: str
    amount: float


class OrderRecord(BaseModel):
    """Append-only trade history entry."""
    id: Optional[int] = None
    user_id: int
    asset_symbol: str
    order_type: OrderType
    amount: float
    price_at_transaction: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionStatus(BaseModel):
    """Price bus connection status information."""
    connected: bool = Field(..., description="Whether connection is active")
    last_connected: Optional[datetime] = Field(None, description="Last successful connection time")
    reconnect_attempts: int = Field(default=0, description="Number of reconnection attempts")
    error_message: Optional[str] = Field(None, description="Last error message if any")
