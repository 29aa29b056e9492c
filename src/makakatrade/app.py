"""Main Starlette application: order placement API and realtime price stream"""

import asyncio
import logging
import json
from contextlib import asynccontextmanager
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .config import TradeConfig
from .database_factory import DatabaseFactory
from .market_ingester import MarketIngester
from .order_service import OrderExecutor, OrderError
from .price_bus import PriceBusClient
from .price_cache import PriceCache
from .stats_service import PortfolioStatsService
from .symbols import to_base_symbol
from .websocket_handler import PriceBroadcaster, PriceStreamEndpoint

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def custom_json_response(data, status_code=200):
    """Create a JSONResponse with custom serialization for Decimal and datetime objects"""
    def custom_encoder(obj):
        if isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        raise TypeError(repr(obj) + " is not JSON serializable")

    json_str = json.dumps(data, default=custom_encoder)
    return Response(json_str, media_type="application/json", status_code=status_code)


def _get_user_id(request: Request) -> Optional[int]:
    """Authenticated user id forwarded by the gateway, or None."""
    raw = request.headers.get(USER_ID_HEADER)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _unauthorized():
    return custom_json_response({"message": "Authentication required."}, status_code=401)


async def health_check(request):
    """Health check endpoint to verify the server is running"""
    return JSONResponse({
        "status": "healthy",
        "service": "makakatrade-backend",
        "version": "0.1.0"
    })


async def health_ready(request):
    """Ready once the ledger is initialized; reports price bus connectivity"""
    state = request.app.state
    bus_client = state.bus_client
    if state.ready:
        return JSONResponse({
            "status": "ready",
            "service": "makakatrade-backend",
            "price_bus_connected": bool(bus_client and bus_client.is_connected),
            "symbols_priced": len(state.price_cache),
        })
    return JSONResponse({
        "status": "not_ready",
        "service": "makakatrade-backend",
        "message": "Startup in progress"
    }, status_code=503)


async def get_prices(request):
    """Snapshot of every cached price"""
    prices = request.app.state.price_cache.get_all()
    return custom_json_response({
        "prices": prices,
        "count": len(prices),
        "timestamp": datetime.now().isoformat()
    })


async def get_price(request):
    """Current price for one symbol; accepts BTC or BTCUSDT"""
    state = request.app.state
    symbol = to_base_symbol(request.path_params["symbol"], state.config.quote_asset)
    price = state.price_cache.get(symbol)
    if price <= 0:
        return custom_json_response({"message": f"Price unavailable for {symbol}."}, status_code=404)
    return custom_json_response({"symbol": symbol, "price": price})


async def place_order(request):
    """POST /api/orders/place - place a BUY or SELL market order"""
    user_id = _get_user_id(request)
    if user_id is None:
        return _unauthorized()

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return custom_json_response({"message": "Request body must be valid JSON."}, status_code=400)
    if not isinstance(body, dict):
        return custom_json_response({"message": "Request body must be a JSON object."}, status_code=400)

    executor: OrderExecutor = request.app.state.executor
    try:
        result = await executor.place_order(
            user_id,
            body.get("asset_symbol"),
            body.get("amount"),
            body.get("order_type"),
        )
    except OrderError as e:
        return custom_json_response(e.to_dict(), status_code=e.status_code)

    return custom_json_response({
        "message": "Order placed successfully.",
        "asset": result.asset,
        "price": result.price,
        "total": result.total,
        "order_id": result.order_id,
    })


async def get_order_history(request):
    """Most recent orders for the authenticated user"""
    user_id = _get_user_id(request)
    if user_id is None:
        return _unauthorized()

    try:
        limit = min(max(int(request.query_params.get("limit", "100")), 1), 1000)
    except ValueError:
        limit = 100

    try:
        orders = await request.app.state.ledger.get_orders(user_id, limit=limit)
        return custom_json_response({
            "orders": [order.model_dump(mode="json") for order in orders],
            "count": len(orders),
        })
    except Exception as e:
        logger.error(f"Error fetching orders for user {user_id}: {e}")
        return custom_json_response({"message": "Internal server error."}, status_code=500)


async def get_order(request):
    """A single order owned by the authenticated user"""
    user_id = _get_user_id(request)
    if user_id is None:
        return _unauthorized()

    order_id = request.path_params["order_id"]
    try:
        order = await request.app.state.ledger.get_order(user_id, order_id)
    except Exception as e:
        logger.error(f"Error fetching order {order_id} for user {user_id}: {e}")
        return custom_json_response({"message": "Internal server error."}, status_code=500)

    if order is None:
        return custom_json_response({"message": "Order not found."}, status_code=404)
    return custom_json_response({"order": order.model_dump(mode="json")})


async def get_portfolio(request):
    """Holdings and cash balance for the authenticated user"""
    user_id = _get_user_id(request)
    if user_id is None:
        return _unauthorized()

    ledger = request.app.state.ledger
    try:
        holdings = await ledger.get_portfolio(user_id)
        balance = await ledger.get_balance(user_id)
    except Exception as e:
        logger.error(f"Error fetching portfolio for user {user_id}: {e}")
        return custom_json_response({"message": "Internal server error."}, status_code=500)

    if balance is None:
        return custom_json_response({"message": "User not found."}, status_code=404)

    return custom_json_response({
        "balance": balance,
        "holdings": [holding.model_dump() for holding in holdings],
    })


async def get_user_stats(request):
    """Portfolio performance valued at current prices"""
    user_id = _get_user_id(request)
    if user_id is None:
        return _unauthorized()

    try:
        stats = await request.app.state.stats_service.get_user_stats(user_id)
        return custom_json_response(stats)
    except Exception as e:
        logger.error(f"Error fetching user statistics for {user_id}: {e}")
        return custom_json_response({"message": "Internal server error."}, status_code=500)


async def get_global_stats(request):
    """Platform-wide user, order and holding statistics"""
    if _get_user_id(request) is None:
        return _unauthorized()

    try:
        stats = await request.app.state.stats_service.get_global_stats()
        return custom_json_response(stats)
    except Exception as e:
        logger.error(f"Error fetching statistics: {e}")
        return custom_json_response({"message": "Internal server error."}, status_code=500)


async def get_system_stats(request):
    """Get system statistics for debugging"""
    state = request.app.state
    stats = {
        "price_cache": state.price_cache.get_stats(),
        "websocket": state.broadcaster.get_stats(),
        "orders": state.executor.get_stats() if state.executor else {"status": "not_initialized"},
        "timestamp": datetime.now().isoformat()
    }

    stats["price_bus"] = state.bus_client.get_stats() if state.bus_client else {"status": "disabled"}
    stats["ingester"] = state.ingester.get_stats() if state.ingester else {"status": "disabled"}

    # Try to get database stats, but don't fail if it errors
    try:
        stats["database"] = await state.ledger.get_db_stats()
    except Exception as db_error:
        stats["database"] = {"error": str(db_error)}

    return custom_json_response(stats)


routes = [
    Route("/health", health_check, methods=["GET"]),
    Route("/health/ready", health_ready, methods=["GET"]),
    Route("/api/prices", get_prices, methods=["GET"]),
    Route("/api/prices/{symbol}", get_price, methods=["GET"]),
    Route("/api/orders/place", place_order, methods=["POST"]),
    Route("/api/orders/history", get_order_history, methods=["GET"]),
    Route("/api/orders/{order_id:int}", get_order, methods=["GET"]),
    Route("/api/portfolio", get_portfolio, methods=["GET"]),
    Route("/api/stats/user", get_user_stats, methods=["GET"]),
    Route("/api/stats", get_global_stats, methods=["GET"]),
    Route("/api/stats/system", get_system_stats, methods=["GET"]),
    WebSocketRoute("/ws", PriceStreamEndpoint),
]


async def startup(state):
    """Initialize services: ledger, cache observers, price bus, optional ingester"""
    config: TradeConfig = state.config
    logger.info("Starting MakakaTrade backend services...")

    if state.ledger is None:
        state.ledger = await DatabaseFactory.create_database_async(config)
    else:
        await state.ledger.initialize()

    await state.broadcaster.start()
    state.price_cache.subscribe(state.broadcaster.on_price_update)

    state.executor = OrderExecutor(state.ledger, state.price_cache, quote_asset=config.quote_asset)
    state.stats_service = PortfolioStatsService(
        state.ledger,
        state.price_cache,
        initial_balance=config.initial_balance,
        quote_asset=config.quote_asset,
    )

    if config.price_bus_enabled:
        state.bus_client = PriceBusClient.from_config(config)
        state.bus_client.on_update(state.price_cache.update)

        bus_task = asyncio.create_task(state.bus_client.start())
        state.background_tasks.add(bus_task)
        bus_task.add_done_callback(state.background_tasks.discard)
    else:
        logger.info("Price bus disabled - cache will only change through direct updates")

    if config.ingester_enabled:
        publisher = state.bus_client
        if publisher is None:
            # Publish-only client owned by the ingester
            publisher = state.ingester_publisher = PriceBusClient.from_config(config)
        state.ingester = MarketIngester.from_config(config, publisher, state.ledger)
        await state.ingester.start()

    state.ready = True
    logger.info("All services started successfully - ready to accept connections")


async def shutdown(state):
    """Clean up services on application shutdown"""
    logger.info("Shutting down MakakaTrade backend services...")
    state.ready = False

    try:
        if state.ingester:
            await state.ingester.stop()

        if state.ingester_publisher:
            await state.ingester_publisher.stop()

        if state.bus_client:
            await state.bus_client.stop()

        for task in state.background_tasks:
            task.cancel()
        if state.background_tasks:
            await asyncio.gather(*state.background_tasks, return_exceptions=True)

        state.price_cache.unsubscribe(state.broadcaster.on_price_update)
        await state.broadcaster.stop()

        try:
            await state.ledger.close()
            logger.info("Ledger connection closed")
        except Exception as e:
            logger.warning(f"Error closing ledger: {e}")

        logger.info("All services shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


def create_app(config: Optional[TradeConfig] = None, ledger=None,
               price_cache: Optional[PriceCache] = None) -> Starlette:
    """
    Build the application. Components not passed in are created from config at startup.
    """
    @asynccontextmanager
    async def lifespan(app):
        await startup(app.state)
        yield
        await shutdown(app.state)

    app = Starlette(routes=routes, lifespan=lifespan)

    app.state.config = config or TradeConfig.from_env()
    app.state.ledger = ledger
    app.state.price_cache = price_cache or PriceCache()
    app.state.broadcaster = PriceBroadcaster()
    app.state.bus_client = None
    app.state.ingester = None
    app.state.ingester_publisher = None
    app.state.executor = None
    app.state.stats_service = None
    app.state.background_tasks = set()
    app.state.ready = False

    # Add CORS middleware to allow frontend connections
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    return app


app = create_app()
