"""
Unit tests for the price bus client.
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from makakatrade.price_bus import PriceBusClient, PriceBusError
from makakatrade.price_cache import PriceCache
from makakatrade.models import ConnectionStatus


@pytest.fixture
def bus_client():
    return PriceBusClient("redis://localhost:6379/0", namespace="vacetmax", reconnect_delay=0.01)


@pytest.fixture
def wired_cache(bus_client):
    """Cache fed by the bus client, with a recording fanout observer."""
    cache = PriceCache()
    events = []
    cache.subscribe(lambda symbol, price: events.append({"type": "PRICE_UPDATE", "symbol": symbol, "price": price}))
    bus_client.on_update(cache.update)
    return cache, events


class FakePubSub:
    """Minimal stand-in for redis.asyncio PubSub."""

    def __init__(self, messages):
        self.messages = messages
        self.psubscribe = AsyncMock()
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


class TestMessageHandling:
    """Test parsing of inbound bus messages."""

    def test_valid_message_updates_cache_and_fanout(self, bus_client, wired_cache):
        cache, events = wired_cache

        delivered = bus_client.handle_message("vacetmax/market/BTC", json.dumps({"price": 42.5}))

        assert delivered is True
        assert cache.get("BTC") == 42.5
        assert events == [{"type": "PRICE_UPDATE", "symbol": "BTC", "price": 42.5}]

    def test_bytes_topic_and_payload(self, bus_client, wired_cache):
        cache, _ = wired_cache

        bus_client.handle_message(b"vacetmax/market/ETH", b'{"price": 3000}')

        assert cache.get("ETH") == 3000.0

    def test_non_json_payload_dropped(self, bus_client, wired_cache):
        cache, events = wired_cache
        cache.update("BTC", 10.0)
        events.clear()

        assert bus_client.handle_message("vacetmax/market/BTC", "not json") is False

        assert cache.get("BTC") == 10.0
        assert events == []
        assert bus_client.stats["messages_dropped"] == 1

    @pytest.mark.parametrize("payload", [
        '{}',
        '{"value": 10}',
        '{"price": "abc"}',
        '{"price": "42.5"}',
        '{"price": null}',
        '{"price": true}',
        '{"price": 0}',
        '{"price": -5}',
        '[1, 2]',
        '42',
    ])
    def test_invalid_price_payloads_dropped(self, bus_client, wired_cache, payload):
        cache, events = wired_cache

        assert bus_client.handle_message("vacetmax/market/BTC", payload) is False
        assert cache.get("BTC") == 0
        assert events == []

    def test_invalid_utf8_dropped(self, bus_client, wired_cache):
        cache, _ = wired_cache

        assert bus_client.handle_message(b"vacetmax/market/BTC", b"\xff\xfe") is False
        assert cache.get("BTC") == 0

    @pytest.mark.parametrize("topic", [
        "vacetmax/market/",
        "vacetmax/market/BTC/extra",
        "other/market/BTC",
        "vacetmax/prices/BTC",
    ])
    def test_non_matching_topics_dropped(self, bus_client, wired_cache, topic):
        cache, _ = wired_cache

        assert bus_client.handle_message(topic, '{"price": 1.0}') is False
        assert cache.get_all() == {}

    def test_extra_payload_fields_ignored(self, bus_client, wired_cache):
        cache, _ = wired_cache

        bus_client.handle_message("vacetmax/market/XRP", '{"price": 0.5, "source": "binance"}')

        assert cache.get("XRP") == 0.5

    def test_multiple_observers_all_notified(self, bus_client):
        first = MagicMock()
        second = MagicMock()
        bus_client.on_update(first)
        bus_client.on_update(second)

        bus_client.handle_message("vacetmax/market/LTC", '{"price": 70.1}')

        first.assert_called_once_with("LTC", 70.1)
        second.assert_called_once_with("LTC", 70.1)

    def test_failing_observer_does_not_break_handler(self, bus_client):
        healthy = MagicMock()
        bus_client.on_update(MagicMock(side_effect=RuntimeError("boom")))
        bus_client.on_update(healthy)

        assert bus_client.handle_message("vacetmax/market/BTC", '{"price": 1.5}') is True
        healthy.assert_called_once_with("BTC", 1.5)


class TestConnection:
    """Test subscription and listening against a mocked broker."""

    @pytest.mark.asyncio
    async def test_connect_subscribes_to_wildcard(self, bus_client):
        pubsub = FakePubSub([])
        redis_client = MagicMock()
        redis_client.ping = AsyncMock(return_value=True)
        redis_client.pubsub.return_value = pubsub
        statuses = []
        bus_client.on_connection_change = statuses.append

        with patch("makakatrade.price_bus.redis.from_url", return_value=redis_client):
            result = await bus_client.connect()

        assert result is True
        assert bus_client.is_connected is True
        pubsub.psubscribe.assert_awaited_once_with("vacetmax/market/*")
        assert isinstance(statuses[-1], ConnectionStatus)
        assert statuses[-1].connected is True

    @pytest.mark.asyncio
    async def test_connect_failure_is_logged_not_raised(self, bus_client):
        redis_client = MagicMock()
        redis_client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch("makakatrade.price_bus.redis.from_url", return_value=redis_client):
            result = await bus_client.connect()

        assert result is False
        assert bus_client.is_connected is False
        assert bus_client.stats["connection_errors"] == 1

    @pytest.mark.asyncio
    async def test_listen_dispatches_pmessages_only(self, bus_client):
        cache = PriceCache()
        bus_client.on_update(cache.update)
        bus_client._pubsub = FakePubSub([
            {"type": "psubscribe", "pattern": None, "channel": b"vacetmax/market/*", "data": 1},
            {"type": "pmessage", "pattern": b"vacetmax/market/*", "channel": b"vacetmax/market/BTC", "data": b'{"price": 42.5}'},
            {"type": "pmessage", "pattern": b"vacetmax/market/*", "channel": b"vacetmax/market/ETH", "data": b"garbage"},
            {"type": "pmessage", "pattern": b"vacetmax/market/*", "channel": b"vacetmax/market/BTC", "data": b'{"price": 43.0}'},
        ])
        bus_client.is_connected = True

        await bus_client.listen()

        assert cache.get("BTC") == 43.0
        assert cache.get("ETH") == 0
        assert bus_client.stats["messages_received"] == 3
        assert bus_client.is_connected is False

    @pytest.mark.asyncio
    async def test_listen_survives_connection_loss(self, bus_client):
        class BrokenPubSub(FakePubSub):
            async def listen(self):
                yield {"type": "pmessage", "channel": b"vacetmax/market/BTC", "data": b'{"price": 1.0}'}
                raise RedisConnectionError("connection reset")

        cache = PriceCache()
        bus_client.on_update(cache.update)
        bus_client._pubsub = BrokenPubSub([])

        await bus_client.listen()

        assert cache.get("BTC") == 1.0
        assert bus_client.stats["connection_errors"] == 1


class TestPublish:
    """Test publishing for the ingester."""

    @pytest.mark.asyncio
    async def test_publish_topic_and_payload(self, bus_client):
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(return_value=1)

        with patch("makakatrade.price_bus.redis.from_url", return_value=redis_client):
            receivers = await bus_client.publish("BTC", 42.5)

        assert receivers == 1
        topic, payload = redis_client.publish.call_args[0]
        assert topic == "vacetmax/market/BTC"
        assert json.loads(payload) == {"price": 42.5}

    @pytest.mark.asyncio
    async def test_publish_error_raises_bus_error(self, bus_client):
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(side_effect=RedisConnectionError("down"))

        with patch("makakatrade.price_bus.redis.from_url", return_value=redis_client):
            with pytest.raises(PriceBusError):
                await bus_client.publish("BTC", 1.0)

    @pytest.mark.asyncio
    async def test_published_payload_round_trips_through_handler(self, bus_client):
        """What the publisher sends is exactly what the subscriber accepts."""
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(return_value=1)
        cache = PriceCache()
        bus_client.on_update(cache.update)

        with patch("makakatrade.price_bus.redis.from_url", return_value=redis_client):
            await bus_client.publish("BTC", 42.5)

        topic, payload = redis_client.publish.call_args[0]
        bus_client.handle_message(topic, payload)
        assert cache.get("BTC") == 42.5


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_closes_subscription_and_client(self, bus_client):
        pubsub = FakePubSub([])
        redis_client = MagicMock()
        redis_client.aclose = AsyncMock()
        bus_client._pubsub = pubsub
        bus_client._client = redis_client
        bus_client.should_run = True

        await bus_client.stop()

        pubsub.punsubscribe.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()
        redis_client.aclose.assert_awaited_once()
        assert bus_client.should_run is False
        assert bus_client._client is None

    def test_from_config(self):
        config = MagicMock(redis_url="redis://broker:6379/1", bus_namespace="ns", bus_reconnect_delay=2.0)

        client = PriceBusClient.from_config(config)

        assert client.redis_url == "redis://broker:6379/1"
        assert client.pattern == "ns/market/*"
        assert client.reconnect_delay == 2.0
