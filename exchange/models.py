"""
Data models for the live chart feed.
Prices are plain floats; reciprocal inversion and display rounding
do not need Decimal precision.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"      # Socket open, no priced message yet
    LIVE = "live"                # At least one quote this attempt
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Orientation(Enum):
    DIRECT = "direct"
    INVERTED = "inverted"


class ChartKind(Enum):
    LINE = "line"
    CANDLES = "candles"


class Timeframe(Enum):
    H1 = "1H"
    D1 = "1D"
    W1 = "1W"
    M1 = "1M"
    M6 = "6M"
    Y1 = "1Y"
    ALL = "ALL"

    @property
    def window_seconds(self) -> Optional[int]:
        """Lookback window, None for all-time."""
        return _WINDOWS[self]

    @property
    def granularity_minutes(self) -> int:
        """OHLC sampling interval used when fetching history."""
        return _GRANULARITY[self]


_DAY = 86400

_WINDOWS = {
    Timeframe.H1: 3600,
    Timeframe.D1: _DAY,
    Timeframe.W1: 7 * _DAY,
    Timeframe.M1: 30 * _DAY,
    Timeframe.M6: 182 * _DAY,
    Timeframe.Y1: 365 * _DAY,
    Timeframe.ALL: None,
}

# Kraken OHLC intervals (minutes). Responses are capped at 720 rows,
# so 1D uses 5m to cover the whole day.
_GRANULARITY = {
    Timeframe.H1: 1,
    Timeframe.D1: 5,
    Timeframe.W1: 60,
    Timeframe.M1: 240,
    Timeframe.M6: 1440,
    Timeframe.Y1: 1440,
    Timeframe.ALL: 1440,
}

PRICE_FIELDS = ("bid", "ask", "last", "mid")


@dataclass(frozen=True)
class Quote:
    """One parsed ticker update."""
    bid: float
    ask: float
    last: float
    mid: float
    observed_at: float      # Unix seconds

    @classmethod
    def from_prices(cls, bid: float, ask: float, last: float, observed_at: float) -> "Quote":
        return cls(bid=bid, ask=ask, last=last, mid=(bid + ask) / 2, observed_at=observed_at)

    def price(self, field_name: str = "last") -> float:
        if field_name not in PRICE_FIELDS:
            raise ValueError(f"Unknown price field: {field_name}")
        return getattr(self, field_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid": self.bid,
            "ask": self.ask,
            "last": self.last,
            "mid": self.mid,
            "observedAt": self.observed_at,
        }


@dataclass(frozen=True)
class Bar:
    """OHLC bar. `time` is the bucket start in unix seconds."""
    time: int
    open: float
    high: float
    low: float
    close: float

    @property
    def is_consistent(self) -> bool:
        return self.low <= min(self.open, self.close) and max(self.open, self.close) <= self.high

    def inverted(self) -> "Bar":
        """
        Reciprocal bar. Inversion reverses ordering,
        so the new high comes from the old low and vice versa.
        """
        return Bar(
            time=self.time,
            open=1 / self.open,
            high=1 / self.low,
            low=1 / self.high,
            close=1 / self.close,
        )

    def with_price(self, price: float) -> "Bar":
        """Copy updated with a new tick."""
        return replace(
            self,
            high=max(self.high, price),
            low=min(self.low, price),
            close=price,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


@dataclass(frozen=True)
class LinePoint:
    time: int
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "value": self.value}


@dataclass(frozen=True)
class Series:
    """Immutable snapshot of the merged bar and line series."""
    bars: Tuple[Bar, ...] = ()
    line: Tuple[LinePoint, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.bars and not self.line


@dataclass(frozen=True)
class TimeframeSelection:
    orientation: Orientation = Orientation.DIRECT
    timeframe: Timeframe = Timeframe.D1
    chart_kind: ChartKind = ChartKind.LINE

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["TimeframeSelection"] = None) -> "TimeframeSelection":
        """
        Build a selection from a JSON-ish dict.
        Missing keys fall back to `base`. Raises ValueError on unknown values.
        """
        base = base or cls()
        return cls(
            orientation=Orientation(data.get("orientation", base.orientation.value)),
            timeframe=Timeframe(data.get("timeframe", base.timeframe.value)),
            chart_kind=ChartKind(data.get("chartKind", data.get("kind", base.chart_kind.value))),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "orientation": self.orientation.value,
            "timeframe": self.timeframe.value,
            "chartKind": self.chart_kind.value,
        }


@dataclass
class ChartSnapshot:
    """What the presentation layer receives on every change."""
    selection: TimeframeSelection
    connection_status: ConnectionState
    line: Tuple[LinePoint, ...] = ()
    candles: Tuple[Bar, ...] = ()
    latest_value: Optional[float] = None
    error: Optional[str] = None
    quote: Optional[Quote] = None        # Raw ticker, not reoriented
    loading: bool = False
    generated_at: float = field(default=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": [p.to_dict() for p in self.line],
            "candles": [b.to_dict() for b in self.candles],
            "latestValue": self.latest_value,
            "quote": self.quote.to_dict() if self.quote else None,
            "loading": self.loading,
            "connectionStatus": self.connection_status.value,
            "error": self.error,
            **self.selection.to_dict(),
        }
