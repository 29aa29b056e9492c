"""
Portfolio statistics valued at current cached prices, per user and platform-wide.
"""

import logging
from typing import Any, Dict

from .price_cache import PriceCache
from .symbols import DEFAULT_QUOTE, to_base_symbol

logger = logging.getLogger(__name__)


def _cents(value: float) -> float:
    return round(value * 100) / 100


class PortfolioStatsService:
    """Combines order history, holdings and live prices into a performance summary."""

    def __init__(self, ledger, price_cache: PriceCache, initial_balance: float = 10000.0,
                 quote_asset: str = DEFAULT_QUOTE):
        self.ledger = ledger
        self.price_cache = price_cache
        self.initial_balance = initial_balance
        self.quote_asset = quote_asset

    async def get_user_stats(self, user_id: int) -> Dict[str, Any]:
        """
        Build order, portfolio and performance statistics for one user.

        Holdings without a cached price are reported with current_price 0 and
        contribute nothing to the portfolio value.
        """
        summary = await self.ledger.get_order_summary(user_id)
        holdings = await self.ledger.get_portfolio(user_id)
        balance = await self.ledger.get_balance(user_id) or 0.0

        portfolio_value = 0.0
        assets = []
        for holding in holdings:
            current_price = self.price_cache.get(to_base_symbol(holding.asset_symbol, self.quote_asset))
            value = current_price * holding.amount
            portfolio_value += value
            assets.append({
                "symbol": holding.asset_symbol,
                "amount": holding.amount,
                "current_price": current_price,
                "value": _cents(value),
            })

        total_assets = portfolio_value + balance
        profit_loss = total_assets - self.initial_balance
        profit_loss_percent = (profit_loss / self.initial_balance * 100) if self.initial_balance else 0.0

        return {
            "orders": {
                "total": summary["total_orders"],
                "buy_orders": summary["buy_orders"],
                "sell_orders": summary["sell_orders"],
                "total_spent": _cents(summary["total_spent"]),
                "total_earned": _cents(summary["total_earned"]),
            },
            "portfolio": {
                "assets": assets,
                "total_value": _cents(portfolio_value),
                "balance": _cents(balance),
                "total_assets": _cents(total_assets),
            },
            "performance": {
                "profit_loss": _cents(profit_loss),
                "profit_loss_percent": _cents(profit_loss_percent),
            },
            "orders_by_asset": await self.ledger.get_orders_by_asset(user_id),
        }

    async def get_global_stats(self) -> Dict[str, Any]:
        """Platform-wide totals with monetary fields rounded to cents."""
        stats = await self.ledger.get_global_stats()
        stats["users"]["total_balance"] = _cents(stats["users"]["total_balance"])
        stats["orders"]["total_volume"] = _cents(stats["orders"]["total_volume"])
        for row in stats["most_traded_assets"]:
            row["total_value"] = _cents(row["total_value"])
        for row in stats["top_traders"]:
            row["total_volume"] = _cents(row["total_volume"])
        return stats
