"""
Series Aggregator — Single owner of the merged bar/line series.
Historical bars seed it; live quotes fold into the current bucket.
"""

from __future__ import annotations
import math
from typing import Optional, Sequence
from exchange.models import Bar, LinePoint, Orientation, Quote, Series
import logging

logger = logging.getLogger(__name__)


def bucket_start(ts: float, bucket_seconds: int) -> int:
    """Align a timestamp to the start of its bucket."""
    return int(math.floor(ts / bucket_seconds) * bucket_seconds)


def display_price(quote: Quote, orientation: Orientation, price_field: str = "last") -> float:
    price = quote.price(price_field)
    return 1 / price if orientation is Orientation.INVERTED else price


def fold_price(
    series: Series,
    price: float,
    ts: float,
    bucket_seconds: int = 60,
    max_len: int = 800,
) -> Series:
    """
    Fold one price observed at `ts` into `series`, returning a new Series.

    Same bucket as the last bar -> last bar updated (close, high, low).
    Later bucket -> new bar with open=high=low=close=price.
    Late ticks (older than the last bar) update the last bar so the
    series stays ordered.
    The line gets one point per tick, except that ticks within the same
    second replace the previous point: chart time is whole seconds and
    must be strictly increasing, so only the newest tick of a second is kept.
    """
    bars = list(series.bars)
    start = bucket_start(ts, bucket_seconds)

    if bars and ts - bars[-1].time < bucket_seconds:
        bars[-1] = bars[-1].with_price(price)
    else:
        bars.append(Bar(time=start, open=price, high=price, low=price, close=price))

    line = list(series.line)
    point_time = int(ts)
    if line and point_time <= line[-1].time:
        line[-1] = LinePoint(time=line[-1].time, value=price)
    else:
        line.append(LinePoint(time=point_time, value=price))

    return Series(bars=tuple(bars[-max_len:]), line=tuple(line[-max_len:]))


class SeriesAggregator:
    """
    Holds the current Series. Every write swaps in a new immutable
    snapshot, so readers never see a half-updated bar.
    """

    def __init__(self, bucket_seconds: int = 60, max_len: int = 800, price_field: str = "last"):
        self.bucket_seconds = bucket_seconds
        self.max_len = max_len
        self.price_field = price_field
        self._series = Series()
        self.last_quote: Optional[Quote] = None

    def snapshot(self) -> Series:
        return self._series

    def __len__(self) -> int:
        return len(self._series.bars)

    def seed(self, bars: Sequence[Bar]):
        """Replace the series with freshly loaded historical bars (oldest first)."""
        kept = tuple(bars[-self.max_len:])
        self._series = Series(
            bars=kept,
            line=tuple(LinePoint(time=b.time, value=b.close) for b in kept),
        )
        logger.debug(f"[SERIES] Seeded with {len(kept)} bars")

    def fold_quote(
        self,
        quote: Quote,
        orientation: Orientation,
        price_field: Optional[str] = None,
    ) -> Series:
        """Fold a live quote into the series and return the new snapshot."""
        price = display_price(quote, orientation, price_field or self.price_field)
        self._series = fold_price(
            self._series,
            price,
            quote.observed_at,
            self.bucket_seconds,
            self.max_len,
        )
        self.last_quote = quote
        return self._series

    def clear(self):
        """Drop all bars and points. The last quote is kept for the latest-value readout."""
        self._series = Series()
