"""
Timeframe View — read-side transform for the presentation layer.
Windows the aggregated series to the selected timeframe and picks
the value shown next to the chart.
"""

from __future__ import annotations
import time
from typing import Callable, Optional, TYPE_CHECKING
from exchange.models import (
    ChartKind,
    ChartSnapshot,
    ConnectionState,
    Quote,
    Series,
    TimeframeSelection,
)
from core.series import display_price

if TYPE_CHECKING:
    from core.series import SeriesAggregator
    from exchange.kraken_ws import QuoteConnection
    from data.historical import HistoryFetcher


def build_snapshot(
    series: Series,
    selection: TimeframeSelection,
    now: float,
    status: ConnectionState,
    last_quote: Optional[Quote] = None,
    price_field: str = "last",
    error: Optional[str] = None,
    loading: bool = False,
) -> ChartSnapshot:
    """
    Pure: filter bars/points to `time >= now - window` (no cutoff for ALL).
    Latest value is the last live quote if there is one, otherwise the
    last close/value of the series for the selected chart kind.
    """
    window = selection.timeframe.window_seconds
    if window is None:
        candles, line = series.bars, series.line
    else:
        cutoff = now - window
        candles = tuple(b for b in series.bars if b.time >= cutoff)
        line = tuple(p for p in series.line if p.time >= cutoff)

    latest_value: Optional[float] = None
    if last_quote is not None:
        latest_value = display_price(last_quote, selection.orientation, price_field)
    elif selection.chart_kind is ChartKind.CANDLES and candles:
        latest_value = candles[-1].close
    elif line:
        latest_value = line[-1].value

    return ChartSnapshot(
        selection=selection,
        connection_status=status,
        line=line,
        candles=candles,
        latest_value=latest_value,
        error=error,
        quote=last_quote,
        loading=loading,
        generated_at=now,
    )


class TimeframeView:
    """Reads the current state of the feed components; performs no I/O."""

    def __init__(
        self,
        aggregator: "SeriesAggregator",
        connection: "QuoteConnection",
        history: Optional["HistoryFetcher"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.aggregator = aggregator
        self.connection = connection
        self.history = history
        self._clock = clock

    def query(self, selection: TimeframeSelection) -> ChartSnapshot:
        return build_snapshot(
            series=self.aggregator.snapshot(),
            selection=selection,
            now=self._clock(),
            status=self.connection.state,
            last_quote=self.aggregator.last_quote,
            price_field=self.aggregator.price_field,
            error=self.history.last_error if self.history else None,
            loading=self.history.loading if self.history else False,
        )
