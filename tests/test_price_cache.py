"""
Unit tests for the in-memory price cache and its observers.
"""

import pytest
from unittest.mock import MagicMock

from makakatrade.price_cache import PriceCache, PRICE_UNAVAILABLE
from makakatrade.observers import UpdateObservers


class TestPriceCacheLookups:
    """Test update/get/get_all semantics."""

    def test_last_update_wins(self):
        """get() returns exactly the last value passed to update()."""
        cache = PriceCache()
        for price in [100.0, 101.5, 99.25, 42.0]:
            cache.update("BTC", price)

        assert cache.get("BTC") == 42.0

    def test_unknown_symbol_returns_sentinel(self):
        cache = PriceCache()
        assert cache.get("NOSUCHSYMBOL") == 0
        assert cache.get("NOSUCHSYMBOL") == PRICE_UNAVAILABLE

    def test_symbols_are_independent(self):
        cache = PriceCache()
        cache.update("BTC", 50000.0)
        cache.update("ETH", 3000.0)

        assert cache.get("BTC") == 50000.0
        assert cache.get("ETH") == 3000.0
        assert len(cache) == 2

    def test_get_all_returns_snapshot(self):
        """Mutating the returned mapping must not affect the cache."""
        cache = PriceCache()
        cache.update("BTC", 50000.0)

        snapshot = cache.get_all()
        snapshot["BTC"] = 1.0
        snapshot["ETH"] = 2.0
        del snapshot["BTC"]

        assert cache.get("BTC") == 50000.0
        assert cache.get("ETH") == 0
        assert cache.get_all() == {"BTC": 50000.0}

    def test_no_symbol_normalization(self):
        """The cache stores keys exactly as given; stripping suffixes is the caller's job."""
        cache = PriceCache()
        cache.update("BTCUSDT", 50000.0)

        assert cache.get("BTC") == 0
        assert cache.get("BTCUSDT") == 50000.0

    def test_instances_do_not_share_state(self):
        first = PriceCache()
        second = PriceCache()
        first.update("BTC", 1.0)

        assert second.get("BTC") == 0


class TestPriceCacheObservers:
    """Test observer notification on update."""

    def test_observer_receives_same_pair(self):
        cache = PriceCache()
        observer = MagicMock()
        cache.subscribe(observer)

        cache.update("BTC", 42.5)

        observer.assert_called_once_with("BTC", 42.5)

    def test_all_observers_notified_in_order(self):
        cache = PriceCache()
        calls = []
        cache.subscribe(lambda s, p: calls.append(("first", s, p)))
        cache.subscribe(lambda s, p: calls.append(("second", s, p)))

        cache.update("ETH", 3000.0)

        assert calls == [("first", "ETH", 3000.0), ("second", "ETH", 3000.0)]

    def test_failing_observer_is_isolated(self):
        """An exception in one observer must not stop later observers or the update."""
        cache = PriceCache()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        cache.subscribe(failing)
        cache.subscribe(healthy)

        cache.update("BTC", 10.0)

        healthy.assert_called_once_with("BTC", 10.0)
        assert cache.get("BTC") == 10.0
        assert cache.get_stats()["observer_errors"] == 1

    def test_unsubscribe(self):
        cache = PriceCache()
        observer = MagicMock()
        cache.subscribe(observer)

        assert cache.unsubscribe(observer) is True
        cache.update("BTC", 1.0)

        observer.assert_not_called()
        assert cache.unsubscribe(observer) is False

    def test_stats_track_updates(self):
        cache = PriceCache()
        cache.update("BTC", 1.0)
        cache.update("BTC", 2.0)

        stats = cache.get_stats()
        assert stats["updates"] == 2
        assert stats["symbols"] == 1
        assert stats["last_update_time"] is not None


class TestUpdateObservers:
    """Test the observer list used by the cache and the bus client."""

    def test_add_works_as_decorator(self):
        observers = UpdateObservers()

        @observers.add
        def handler(symbol, price):
            pass

        assert handler is not None
        assert len(observers) == 1

    def test_notify_counts_successful_callbacks(self):
        observers = UpdateObservers()
        observers.add(MagicMock())
        observers.add(MagicMock(side_effect=ValueError("bad")))
        observers.add(MagicMock())

        assert observers.notify("BTC", 1.0) == 2
        assert observers.callback_errors == 1
