"""
Market ingester: polls the exchange ticker snapshot and republishes prices on the bus.

One REST call per cycle fetches every ticker. The configured tracked symbols
and every asset flagged active in the ledger are published, each under its
base-symbol topic. A failed fetch aborts that cycle only, and the timer keeps
running.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import aiohttp
from dotenv import load_dotenv

from .price_bus import PriceBusClient, PriceBusError
from .symbols import DEFAULT_QUOTE, to_base_symbol, to_trading_pair

logger = logging.getLogger(__name__)


class IngestFetchError(Exception):
    """Raised when the ticker snapshot cannot be fetched."""
    pass


class BinanceTickerAPI:
    """REST client for the exchange's all-tickers price endpoint."""

    def __init__(self, ticker_url: str, timeout: float = 5.0):
        """
        Args:
            ticker_url: Full URL of the ticker price endpoint
            timeout: Total request timeout in seconds; a timeout counts as a failed fetch
        """
        self.ticker_url = ticker_url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=10, limit_per_host=5)
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
        return self._session

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch_all_prices(self) -> Dict[str, str]:
        """
        Fetch the full ticker snapshot.

        Returns:
            Mapping of trading pair (e.g. BTCUSDT) to its raw price string

        Raises:
            IngestFetchError: On network errors, timeouts, non-200 status or an unexpected body
        """
        try:
            session = await self._get_session()
            async with session.get(self.ticker_url, headers={"Accept": "application/json"}) as response:
                if response.status != 200:
                    raise IngestFetchError(f"Ticker endpoint returned HTTP {response.status}")
                data = await response.json()

        except asyncio.TimeoutError:
            raise IngestFetchError(f"Ticker fetch timed out after {self.timeout}s")
        except (aiohttp.ClientError, ValueError) as e:
            raise IngestFetchError(f"Ticker fetch failed: {e}") from e

        if not isinstance(data, list):
            raise IngestFetchError(f"Unexpected ticker payload type: {type(data).__name__}")

        return {
            item["symbol"]: item["price"]
            for item in data
            if isinstance(item, dict) and "symbol" in item and "price" in item
        }


@dataclass
class CycleResult:
    """Outcome of one ingest cycle."""
    published: Dict[str, float] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class MarketIngester:
    """Fixed-interval poller that publishes active symbols' prices to the bus."""

    def __init__(
        self,
        ticker_api: BinanceTickerAPI,
        publisher: PriceBusClient,
        ledger,
        interval: float = 1.0,
        quote_asset: str = DEFAULT_QUOTE,
        tracked_symbols: Optional[List[str]] = None,
    ):
        """
        Args:
            ticker_api: Source of the ticker snapshot
            publisher: Bus client used to publish prices
            ledger: Provides get_active_symbols()
            interval: Seconds between cycle starts
            quote_asset: Quote suffix stripped from pairs for topics
            tracked_symbols: Base symbols published on every cycle alongside the ledger's active assets
        """
        self.ticker_api = ticker_api
        self.publisher = publisher
        self.ledger = ledger
        self.interval = interval
        self.quote_asset = quote_asset
        self.tracked_symbols = tracked_symbols or []

        self._cycle_lock = asyncio.Lock()
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_tasks = set()

        self.stats = {
            "cycles_completed": 0,
            "cycles_failed": 0,
            "cycles_skipped": 0,
            "prices_published": 0,
            "missing_tickers": 0,
            "publish_errors": 0,
        }

    async def _resolve_active_pairs(self) -> List[str]:
        """Tracked symbols plus every asset the ledger flags active."""
        pairs = set(await self.ledger.get_active_symbols())
        pairs.update(to_trading_pair(s, self.quote_asset) for s in self.tracked_symbols)
        return sorted(pairs)

    async def run_cycle(self) -> Optional[CycleResult]:
        """
        Fetch once and publish every active symbol found in the snapshot.

        Returns:
            CycleResult, or None if the cycle was skipped or aborted
        """
        if self._cycle_lock.locked():
            self.stats["cycles_skipped"] += 1
            logger.warning("Previous ingest cycle still running, skipping this tick")
            return None

        async with self._cycle_lock:
            try:
                pairs = await self._resolve_active_pairs()
                snapshot = await self.ticker_api.fetch_all_prices()
            except IngestFetchError as e:
                self.stats["cycles_failed"] += 1
                logger.error(f"Ingest cycle aborted: {e}")
                return None
            except Exception as e:
                self.stats["cycles_failed"] += 1
                logger.error(f"Ingest cycle aborted while resolving active symbols: {e}")
                return None

            result = CycleResult()
            for pair in pairs:
                raw_price = snapshot.get(pair)
                if raw_price is None:
                    logger.warning(f"No ticker found for {pair}, skipping")
                    result.missing.append(pair)
                    self.stats["missing_tickers"] += 1
                    continue

                try:
                    price = float(raw_price)
                except (TypeError, ValueError):
                    logger.warning(f"Unparsable price for {pair}: {raw_price!r}, skipping")
                    result.failed.append(pair)
                    continue

                symbol = to_base_symbol(pair, self.quote_asset)
                try:
                    await self.publisher.publish(symbol, price)
                except PriceBusError as e:
                    logger.error(f"Failed to publish {symbol}: {e}")
                    result.failed.append(pair)
                    self.stats["publish_errors"] += 1
                    continue

                result.published[symbol] = price
                self.stats["prices_published"] += 1
                logger.debug(f"Sent to {symbol}: {price}")

            self.stats["cycles_completed"] += 1
            return result

    async def _timer_loop(self):
        while self._running:
            task = asyncio.create_task(self.run_cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(self.interval)

    async def start(self):
        """Start polling on a fixed interval."""
        if self._running:
            return

        logger.info(f"Starting market ingester (interval={self.interval}s)")
        self._running = True
        self._timer_task = asyncio.create_task(self._timer_loop())

    async def stop(self):
        """Stop the timer and wait for any in-flight cycle."""
        if not self._running:
            return

        logger.info("Stopping market ingester...")
        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

        await self.ticker_api.close()
        logger.info("Market ingester stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "running": self._running}

    @classmethod
    def from_config(cls, config, publisher: PriceBusClient, ledger) -> "MarketIngester":
        return cls(
            ticker_api=BinanceTickerAPI(config.ticker_url, timeout=config.ingest_timeout),
            publisher=publisher,
            ledger=ledger,
            interval=config.ingest_interval,
            quote_asset=config.quote_asset,
            tracked_symbols=config.tracked_symbols,
        )


async def run_standalone() -> None:
    """Run the ingester as its own process until interrupted."""
    from .config import TradeConfig
    from .database_factory import DatabaseFactory

    config = TradeConfig.from_env()
    ledger = await DatabaseFactory.create_database_async(config)
    publisher = PriceBusClient.from_config(config)
    ingester = MarketIngester.from_config(config, publisher, ledger)

    await ingester.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await ingester.stop()
        await publisher.stop()
        await ledger.close()


def main() -> None:
    """Entry point for the makakatrade-ingester command."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(run_standalone())
    except KeyboardInterrupt:
        logger.info("Market ingester interrupted")


if __name__ == "__main__":
    main()
