"""
WebSocket handler for pushing live prices to frontend clients.

Provides the /ws endpoint. Every price cache update becomes one
PRICE_UPDATE event sent to each connected session; new sessions get a
welcome message and no replay of earlier prices.
"""

import json
import asyncio
import logging
from typing import Set, Dict, Any, Optional
from starlette.websockets import WebSocket, WebSocketState
from starlette.endpoints import WebSocketEndpoint

from .models import PriceUpdateMessage, WelcomeMessage


logger = logging.getLogger(__name__)


class PriceBroadcaster:
    """Manages WebSocket sessions and fans price updates out to them."""

    def __init__(self, queue_size: int = 10000):
        """Initialize the broadcaster."""
        self.connections: Set[WebSocket] = set()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sender_task: Optional[asyncio.Task] = None

        # Statistics
        self.stats = {
            "active_connections": 0,
            "total_connections": 0,
            "messages_sent": 0,
            "sessions_skipped": 0,
            "broadcast_errors": 0,
            "updates_dropped": 0,
        }

    async def start(self):
        """Start the background sender that drains queued updates in order."""
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._sender_loop())
            logger.info("Price broadcaster started")

    async def stop(self):
        if self._sender_task:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None
            logger.info("Price broadcaster stopped")

    async def connect(self, websocket: WebSocket):
        """Accept a new session and greet it."""
        await websocket.accept()
        self.connections.add(websocket)
        self.stats["active_connections"] = len(self.connections)
        self.stats["total_connections"] += 1

        logger.info(f"WebSocket connected. Active connections: {len(self.connections)}")

        try:
            await websocket.send_text(WelcomeMessage().model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to send welcome message: {e}")

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        self.connections.discard(websocket)
        self.stats["active_connections"] = len(self.connections)
        logger.info(f"WebSocket disconnected. Active connections: {len(self.connections)}")

    def on_price_update(self, symbol: str, price: float) -> None:
        """
        Price cache observer. Never blocks: the event is queued for the sender task.
        """
        message = PriceUpdateMessage(symbol=symbol, price=price).model_dump()
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.stats["updates_dropped"] += 1
            logger.warning(f"Broadcast queue full, dropping update for {symbol}")

    @staticmethod
    def _is_ready(websocket: WebSocket) -> bool:
        return (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        )

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """
        Send a message to every ready session.

        Sessions that are not connected are skipped; a session whose send fails
        is dropped. Nothing is queued for disconnected sessions.

        Returns:
            Number of sessions the message was sent to
        """
        if not self.connections:
            return 0

        message_json = json.dumps(message)
        disconnected = set()
        sent = 0

        for connection in self.connections.copy():
            if not self._is_ready(connection):
                self.stats["sessions_skipped"] += 1
                continue
            try:
                await connection.send_text(message_json)
                self.stats["messages_sent"] += 1
                sent += 1
            except Exception as e:
                logger.warning(f"Failed to send message to client: {e}")
                disconnected.add(connection)
                self.stats["broadcast_errors"] += 1

        for connection in disconnected:
            self.disconnect(connection)

        return sent

    async def _sender_loop(self):
        while True:
            message = await self._queue.get()
            try:
                await self.broadcast(message)
            except Exception as e:
                logger.error(f"Error broadcasting price update: {e}")
            finally:
                self._queue.task_done()

    def get_stats(self) -> Dict[str, Any]:
        """Get broadcaster statistics."""
        return {**self.stats, "queued_updates": self._queue.qsize()}


class PriceStreamEndpoint(WebSocketEndpoint):
    """WebSocket endpoint streaming price updates to the frontend."""

    encoding = "text"

    def __init__(self, scope, receive, send):
        super().__init__(scope, receive, send)
        self.broadcaster: PriceBroadcaster = scope["app"].state.broadcaster

    async def on_connect(self, websocket: WebSocket):
        """Handle new WebSocket connection."""
        await self.broadcaster.connect(websocket)

    async def on_disconnect(self, websocket: WebSocket, close_code: int):
        """Handle WebSocket disconnection."""
        self.broadcaster.disconnect(websocket)

    async def on_receive(self, websocket: WebSocket, data: str):
        """Handle incoming messages from client."""
        try:
            message = json.loads(data)
            logger.debug(f"Received WebSocket message: {message}")

            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong", "timestamp": asyncio.get_event_loop().time()}))
            else:
                logger.debug(f"Ignoring client message: {message}")

        except json.JSONDecodeError:
            logger.error(f"Invalid JSON received: {data}")
