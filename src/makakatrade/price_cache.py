"""
In-memory price cache fed by the price bus.

Holds the last known price per base symbol (BTC, not BTCUSDT) and notifies
registered observers on every update. Lookups are synchronous and never
suspend; the cache performs no symbol normalization.
"""

import logging
import time
from typing import Dict, Any

from .observers import UpdateObservers, PriceCallback

logger = logging.getLogger(__name__)

# Returned by get() for unknown symbols. Callers must treat it as "price unavailable".
PRICE_UNAVAILABLE = 0.0


class PriceCache:
    """Last-write-wins mapping from base symbol to price."""

    def __init__(self):
        self._prices: Dict[str, float] = {}
        self._observers = UpdateObservers(name="price_cache")
        self.stats = {
            "updates": 0,
            "last_update_time": None,
        }

    def update(self, symbol: str, price: float) -> None:
        """Overwrite the entry for symbol and notify observers with the same pair."""
        self._prices[symbol] = price
        self.stats["updates"] += 1
        self.stats["last_update_time"] = time.time()
        self._observers.notify(symbol, price)

    def get(self, symbol: str) -> float:
        """Return the last price, or PRICE_UNAVAILABLE if the symbol has never been seen."""
        return self._prices.get(symbol, PRICE_UNAVAILABLE)

    def get_all(self) -> Dict[str, float]:
        """Snapshot copy of every known price."""
        return dict(self._prices)

    def subscribe(self, callback: PriceCallback) -> PriceCallback:
        return self._observers.add(callback)

    def unsubscribe(self, callback: PriceCallback) -> bool:
        return self._observers.remove(callback)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._prices

    def __len__(self) -> int:
        return len(self._prices)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "symbols": len(self._prices),
            "observers": len(self._observers),
            "observer_errors": self._observers.callback_errors,
        }

