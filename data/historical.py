"""
Historical Data Module

Responsibilities:
- Fetch OHLC history for the selected timeframe via REST
- Normalize rows into Bars (dropping bad rows one by one)
- Refresh every `refresh_interval` seconds and on selection change
- Discard results that belong to an older selection
"""

from __future__ import annotations
import asyncio
import math
import time
from typing import Any, Callable, List, Optional, Sequence, TYPE_CHECKING
import aiohttp
import logging

from exchange.kraken_rest import KrakenAPIError
from exchange.models import Bar, Orientation, Timeframe, TimeframeSelection

if TYPE_CHECKING:
    from exchange.kraken_rest import KrakenRestClient

logger = logging.getLogger(__name__)

BarsCallback = Callable[[List[Bar]], None]
ErrorCallback = Callable[[str], None]


def parse_row(row: Any) -> Optional[Bar]:
    """[time, open, high, low, close, ...] -> Bar, or None if unusable."""
    if not isinstance(row, (list, tuple)) or len(row) < 5:
        return None
    try:
        values = [float(v) for v in row[:5]]
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) and v > 0 for v in values):
        return None

    ts, open_, high, low, close = values
    bar = Bar(time=int(ts), open=open_, high=high, low=low, close=close)
    if not bar.is_consistent:
        return None
    return bar


def normalize_rows(
    rows: Sequence[Any],
    orientation: Orientation = Orientation.DIRECT,
    max_len: Optional[int] = None,
) -> List[Bar]:
    """
    Parse raw OHLC rows into time-ordered Bars, one per timestamp.
    Inverted orientation replaces each bar with its reciprocal.
    """
    by_time = {}
    dropped = 0

    for row in rows:
        bar = parse_row(row)
        if bar is None:
            dropped += 1
            continue
        if orientation is Orientation.INVERTED:
            bar = bar.inverted()
        by_time[bar.time] = bar

    if dropped:
        logger.warning(f"[HISTORY] Dropped {dropped} malformed row(s)")

    bars = [by_time[t] for t in sorted(by_time)]
    if max_len:
        bars = bars[-max_len:]
    return bars


class HistoryFetcher:
    """
    Periodically loads a bounded window of bars for the current selection.
    Each selection gets a generation number; results tagged with an older
    generation are never delivered.
    """

    def __init__(
        self,
        client: "KrakenRestClient",
        pair: str,
        refresh_interval: float = 60,
        max_bars: int = 800,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.pair = pair
        self.refresh_interval = refresh_interval
        self.max_bars = max_bars
        self._clock = clock

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._selection: Optional[TimeframeSelection] = None

        self._bars_callbacks: List[BarsCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        self.last_error: Optional[str] = None
        self.last_success: Optional[float] = None
        # True until the first fetch of the current generation completes
        self.loading = False

    def on_bars(self, callback: BarsCallback):
        self._bars_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback):
        self._error_callbacks.append(callback)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def selection(self) -> Optional[TimeframeSelection]:
        return self._selection

    async def fetch(self, timeframe: Timeframe, orientation: Orientation) -> List[Bar]:
        """Fetch and normalize bars for one timeframe. Raises on failure."""
        window = timeframe.window_seconds
        since = 0 if window is None else int(self._clock()) - window

        rows = await self.client.get_ohlc(
            pair=self.pair,
            interval=timeframe.granularity_minutes,
            since=since,
        )
        bars = normalize_rows(rows, orientation, self.max_bars)
        if not bars:
            raise KrakenAPIError(f"No usable OHLC rows for {self.pair} {timeframe.value}")
        return bars

    async def start(self, selection: TimeframeSelection):
        """Start the refresh loop. No-op if already running."""
        if self._task is not None and not self._task.done():
            return
        self._selection = selection
        self.loading = True
        self._task = asyncio.create_task(
            self._refresh_loop(self._generation, selection),
            name="history-refresh",
        )
        logger.info(
            f"[HISTORY] Refresh loop started: {selection.timeframe.value} "
            f"{selection.orientation.value}, every {self.refresh_interval:g}s"
        )

    async def reselect(self, selection: TimeframeSelection):
        """Abandon the current selection (and any in-flight request) and refresh now."""
        generation = self._generation = self._generation + 1
        await self._cancel()
        if generation != self._generation:
            # A later reselect or stop took over while we were cancelling
            return

        self._selection = selection
        self.last_error = None
        self.loading = True
        self._task = asyncio.create_task(
            self._refresh_loop(generation, selection),
            name="history-refresh",
        )
        logger.info(
            f"[HISTORY] Reselected: {selection.timeframe.value} "
            f"{selection.orientation.value} (generation {generation})"
        )

    async def stop(self):
        self._generation += 1
        self.loading = False
        await self._cancel()

    async def refresh(self, generation: int, selection: TimeframeSelection) -> bool:
        """
        One fetch cycle. Returns True if bars were delivered.
        Failures keep the previously delivered series and are reported as errors.
        """
        try:
            bars = await self.fetch(selection.timeframe, selection.orientation)
        except (KrakenAPIError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._report_error(generation, e)
            return False

        if generation != self._generation:
            logger.debug(f"[HISTORY] Discarding stale result (generation {generation})")
            return False

        self.last_error = None
        self.last_success = self._clock()
        self.loading = False
        logger.info(f"[HISTORY] Loaded {len(bars)} bars for {selection.timeframe.value}")

        for cb in list(self._bars_callbacks):
            try:
                cb(bars)
            except Exception as e:
                logger.error(f"[HISTORY] Bars callback failed: {e}", exc_info=True)
        return True

    async def _refresh_loop(self, generation: int, selection: TimeframeSelection):
        while generation == self._generation:
            try:
                await self.refresh(generation, selection)
            except Exception as e:
                logger.error(f"[HISTORY] Refresh error: {e}", exc_info=True)
                self._report_error(generation, e)

            await asyncio.sleep(self.refresh_interval)

    def _report_error(self, generation: int, error: Exception):
        if generation != self._generation:
            return
        self.last_error = f"Unable to fetch rates: {str(error) or type(error).__name__}"
        self.loading = False
        logger.warning(f"[HISTORY] {self.last_error}")
        for cb in list(self._error_callbacks):
            try:
                cb(self.last_error)
            except Exception as cb_err:
                logger.error(f"[HISTORY] Error callback failed: {cb_err}", exc_info=True)

    async def _cancel(self):
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
