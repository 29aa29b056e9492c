"""
Price bus client over Redis pattern pub/sub.

Subscribes to <namespace>/market/* and turns each inbound message into a
(symbol, price) update for the registered observers. The ingester uses the
same client to publish.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable, Union

import redis.asyncio as redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from redis.retry import Retry
from pydantic import ValidationError

from .models import PriceMessage, ConnectionStatus
from .observers import UpdateObservers, PriceCallback
from .symbols import price_topic, subscription_pattern, symbol_from_topic

logger = logging.getLogger(__name__)


class PriceBusError(Exception):
    """Raised when the bus cannot be used for publishing."""
    pass


class PriceBusClient:
    """
    Redis pub/sub client for per-symbol price messages.

    Features:
    - Wildcard subscription to every tracked symbol
    - Synchronous message handling (parse, validate, notify)
    - Multiple independent update observers
    - Reconnection through the redis client's built-in retry and backoff
    """

    def __init__(
        self,
        redis_url: str,
        namespace: str = "vacetmax",
        reconnect_delay: float = 5.0,
        retries: int = 5,
        on_connection_change: Optional[Callable[[ConnectionStatus], None]] = None,
    ):
        """
        Initialize the price bus client.

        Args:
            redis_url: Broker URL (e.g., redis://localhost:6379/0)
            namespace: Topic namespace; topics are <namespace>/market/<symbol>
            reconnect_delay: Seconds to wait before resubscribing once the client's retries are exhausted
            retries: Retry budget handed to the redis client
            on_connection_change: Callback function for connection status changes
        """
        self.redis_url = redis_url
        self.namespace = namespace
        self.reconnect_delay = reconnect_delay
        self.retries = retries
        self.on_connection_change = on_connection_change

        self._observers = UpdateObservers(name="price_bus")
        self._client: Optional[redis.Redis] = None
        self._pubsub = None
        self.is_connected = False
        self.should_run = False
        self.reconnect_attempts = 0
        self.last_connected: Optional[datetime] = None

        self.stats = {
            "messages_received": 0,
            "messages_dropped": 0,
            "updates_delivered": 0,
            "messages_published": 0,
            "connection_errors": 0,
        }

        logger.info(f"Initialized price bus client for {redis_url} (namespace={namespace})")

    @property
    def pattern(self) -> str:
        return subscription_pattern(self.namespace)

    def on_update(self, callback: PriceCallback) -> PriceCallback:
        """Register an observer for every valid (symbol, price) update."""
        return self._observers.add(callback)

    def remove_listener(self, callback: PriceCallback) -> bool:
        return self._observers.remove(callback)

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                retry=Retry(ExponentialBackoff(), self.retries),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
                health_check_interval=30,
            )
        return self._client

    async def connect(self) -> bool:
        """
        Connect to the broker and subscribe to every symbol topic.

        Returns:
            True if the subscription is active, False otherwise
        """
        try:
            logger.info(f"Connecting to price bus: {self.redis_url}")
            client = self._get_client()
            await client.ping()

            self._pubsub = client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.psubscribe(self.pattern)

            self.is_connected = True
            self.reconnect_attempts = 0
            self.last_connected = datetime.now()
            logger.info(f"Subscribed to {self.pattern}")
            self._notify_connection_status(connected=True)
            return True

        except RedisError as e:
            logger.error(f"Failed to connect to price bus: {e}")
            self.stats["connection_errors"] += 1
            self.is_connected = False
            self._notify_connection_status(connected=False, error_message=str(e))
            return False

    def handle_message(self, topic: Union[str, bytes], payload: Union[str, bytes]) -> bool:
        """
        Handle one inbound bus message.

        Malformed topics or payloads are logged and dropped; they never raise.

        Args:
            topic: Channel the message arrived on
            payload: Raw message body, expected to be {"price": <number>}

        Returns:
            True if the update was delivered to observers
        """
        self.stats["messages_received"] += 1
        try:
            if isinstance(topic, bytes):
                topic = topic.decode("utf-8")
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")

            symbol = symbol_from_topic(self.namespace, topic)
            if symbol is None:
                logger.debug(f"Ignoring message on unexpected topic: {topic}")
                self.stats["messages_dropped"] += 1
                return False

            message = PriceMessage.model_validate_json(payload)

        except (UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Dropping malformed price message on {topic!r}: {e}")
            self.stats["messages_dropped"] += 1
            return False

        self._observers.notify(symbol, message.price)
        self.stats["updates_delivered"] += 1
        logger.debug(f"Price update: {symbol} = {message.price}")
        return True

    async def listen(self) -> None:
        """Listen for incoming bus messages until the connection is lost or stopped."""
        try:
            logger.info("Starting price bus listener")

            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                self.handle_message(message["channel"], message["data"])

        except RedisError as e:
            logger.error(f"Price bus connection lost: {e}")
            self.stats["connection_errors"] += 1
        finally:
            self.is_connected = False
            self._notify_connection_status(connected=False)

    async def publish(self, symbol: str, price: float) -> int:
        """
        Publish a price for a base symbol.

        Returns:
            Number of subscribers that received the message

        Raises:
            PriceBusError: If the broker rejects or cannot receive the message
        """
        topic = price_topic(self.namespace, symbol)
        payload = json.dumps({"price": price})
        try:
            receivers = await self._get_client().publish(topic, payload)
        except RedisError as e:
            raise PriceBusError(f"Failed to publish {topic}: {e}") from e

        self.stats["messages_published"] += 1
        logger.debug(f"Published {topic}: {payload}")
        return receivers

    async def start(self) -> None:
        """
        Run the subscriber until stopped.

        The redis client retries dropped connections on its own; this loop only
        resubscribes after those retries are exhausted.
        """
        logger.info("Starting price bus client")
        self.should_run = True

        while self.should_run:
            if await self.connect():
                await self.listen()

            if self.should_run:
                self.reconnect_attempts += 1
                logger.info(f"Price bus unavailable, resubscribing in {self.reconnect_delay:.1f} seconds")
                await asyncio.sleep(self.reconnect_delay)

    async def stop(self) -> None:
        """Unsubscribe and close the connection."""
        logger.info("Stopping price bus client")
        self.should_run = False
        self.is_connected = False

        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Error closing price bus subscription: {e}")
            self._pubsub = None

        if self._client is not None:
            await self._client.aclose()
            self._client = None

        logger.info("Price bus client stopped")

    def _notify_connection_status(self, connected: bool, error_message: Optional[str] = None) -> None:
        if self.on_connection_change:
            status = ConnectionStatus(
                connected=connected,
                last_connected=self.last_connected,
                reconnect_attempts=self.reconnect_attempts,
                error_message=error_message,
            )
            self.on_connection_change(status)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "connected": self.is_connected,
            "pattern": self.pattern,
            "reconnect_attempts": self.reconnect_attempts,
            "observers": len(self._observers),
        }

    @classmethod
    def from_config(cls, config) -> "PriceBusClient":
        """Create a client from a TradeConfig."""
        return cls(
            redis_url=config.redis_url,
            namespace=config.bus_namespace,
            reconnect_delay=config.bus_reconnect_delay,
        )
