"""
Ordered observer list for (symbol, price) updates.

Every registered callback receives every update; a failing callback is
logged and does not stop the remaining ones.
"""

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

PriceCallback = Callable[[str, float], None]


class UpdateObservers:
    """Callbacks invoked in registration order."""

    def __init__(self, name: str = "observers"):
        self.name = name
        self._callbacks: List[PriceCallback] = []
        self.callback_errors = 0

    def add(self, callback: PriceCallback) -> PriceCallback:
        """Register a callback. Returns it so this can be used as a decorator."""
        self._callbacks.append(callback)
        return callback

    def remove(self, callback: PriceCallback) -> bool:
        try:
            self._callbacks.remove(callback)
            return True
        except ValueError:
            return False

    def notify(self, symbol: str, price: float) -> int:
        """
        Invoke every callback with (symbol, price).

        Returns:
            Number of callbacks that completed without raising
        """
        delivered = 0
        for callback in list(self._callbacks):
            try:
                callback(symbol, price)
                delivered += 1
            except Exception as e:
                self.callback_errors += 1
                logger.error(f"{self.name}: callback {getattr(callback, '__name__', callback)!r} failed for {symbol}: {e}")
        return delivered

    def __len__(self) -> int:
        return len(self._callbacks)
