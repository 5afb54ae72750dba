"""
Live Chart Feed — Main Orchestrator.
Ties the quote stream, history refresh and series aggregation together
and pushes a fresh chart snapshot to listeners on every change.
"""

from __future__ import annotations
import asyncio
import sys
import signal
from typing import Callable, List, Optional, Sequence
import logging

# Load .env file before anything else
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv not installed, rely on real env vars

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

from config import ChartConfig
from exchange.models import Bar, ChartSnapshot, ConnectionState, Quote, TimeframeSelection
from exchange.kraken_rest import KrakenRestClient
from exchange.kraken_ws import QuoteConnection
from data.historical import HistoryFetcher
from core.series import SeriesAggregator
from core.timeframe_view import TimeframeView

SnapshotListener = Callable[[ChartSnapshot], None]


class ChartFeed:
    """Owns the current selection and routes data between components."""

    def __init__(
        self,
        config: ChartConfig,
        connection: Optional[QuoteConnection] = None,
        client: Optional[KrakenRestClient] = None,
    ):
        self.config = config
        self.selection: TimeframeSelection = config.default_selection
        self._running = False
        self._stopped: Optional[asyncio.Event] = None
        self._listeners: List[SnapshotListener] = []

        self.client = client or KrakenRestClient(
            base_url=config.history.base_url,
            timeout=config.history.request_timeout,
        )
        self.connection = connection or QuoteConnection(
            url=config.feed.ws_url,
            pair=config.feed.pair,
            reconnect_delay=config.feed.reconnect_delay,
            ping_interval=config.feed.ping_interval,
            close_timeout=config.feed.close_timeout,
        )
        self.history = HistoryFetcher(
            client=self.client,
            pair=config.history.rest_pair,
            refresh_interval=config.history.refresh_interval,
            max_bars=config.series.max_points,
        )
        self.aggregator = SeriesAggregator(
            bucket_seconds=config.series.bucket_seconds,
            max_len=config.series.max_points,
            price_field=config.series.price_field,
        )
        self.view = TimeframeView(self.aggregator, self.connection, self.history)

        self.connection.on_quote(self._on_quote)
        self.connection.on_state(self._on_state)
        self.history.on_bars(self._on_bars)
        self.history.on_error(self._on_history_error)

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, listener: SnapshotListener):
        self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self, selection: Optional[TimeframeSelection] = None) -> ChartSnapshot:
        return self.view.query(selection or self.selection)

    async def start(self):
        """Start history refresh and the quote stream."""
        if self._running:
            return

        logger.info("=" * 60)
        logger.info(f"   LIVE CHART FEED — {self.config.feed.pair} (proxy for USDC/EURC)")
        logger.info("=" * 60)

        self._running = True
        self._stopped = asyncio.Event()
        await self.history.start(self.selection)
        await self.connection.start()
        logger.info("[FEED] Running.")

    async def stop(self):
        """Graceful shutdown. Safe to call more than once."""
        if not self._running:
            return
        logger.info("[FEED] Stopping...")
        self._running = False

        await self.connection.stop()
        await self.history.stop()
        await self.client.close()

        if self._stopped is not None:
            self._stopped.set()
        logger.info("[FEED] Stopped.")

    async def wait_stopped(self):
        if self._stopped is not None:
            await self._stopped.wait()

    async def set_selection(self, selection: TimeframeSelection):
        """
        Apply a new selection. Timeframe or orientation changes invalidate
        the loaded history; a chart-kind change only republishes.
        """
        previous, self.selection = self.selection, selection

        if (previous.timeframe, previous.orientation) != (selection.timeframe, selection.orientation):
            logger.info(
                f"[FEED] Selection: {selection.timeframe.value} {selection.orientation.value}"
            )
            self.aggregator.clear()
            if self._running:
                await self.history.reselect(selection)

        self._publish()

    # ==================== Component Handlers ====================

    def _on_quote(self, quote: Quote):
        self.aggregator.fold_quote(quote, self.selection.orientation)
        self._publish()

    def _on_state(self, state: ConnectionState):
        self._publish()

    def _on_bars(self, bars: Sequence[Bar]):
        self.aggregator.seed(bars)
        self._publish()

    def _on_history_error(self, message: str):
        self._publish()

    def _publish(self):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"[FEED] Listener error: {e}", exc_info=True)


async def main():
    """Entry point."""
    config = ChartConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())

    feed = ChartFeed(config)

    dashboard = None
    if config.dashboard.enabled:
        from dashboard import Dashboard
        dashboard = Dashboard(feed, host=config.dashboard.host, port=config.dashboard.port)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(feed.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await feed.start()
        if dashboard:
            await dashboard.start()
        await feed.wait_stopped()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
    finally:
        await feed.stop()
        if dashboard:
            await dashboard.stop()


if __name__ == "__main__":
    asyncio.run(main())
