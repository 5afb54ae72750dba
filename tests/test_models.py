"""Model invariants: inversion, quotes, selections."""
import pytest

from exchange.models import (
    Bar,
    ChartKind,
    ChartSnapshot,
    ConnectionState,
    LinePoint,
    Orientation,
    Quote,
    Timeframe,
    TimeframeSelection,
)


@pytest.mark.parametrize("bar", [
    Bar(time=0, open=1.0, high=1.1, low=0.9, close=1.05),
    Bar(time=60, open=1.0802, high=1.0805, low=1.08, close=1.0801),
    Bar(time=120, open=42000.0, high=42500.0, low=41000.0, close=41800.0),
])
def test_inverting_twice_round_trips_and_preserves_order(bar):
    inverted = bar.inverted()
    assert inverted.is_consistent
    assert inverted.low <= inverted.high
    assert inverted.high == pytest.approx(1 / bar.low)
    assert inverted.low == pytest.approx(1 / bar.high)

    back = inverted.inverted()
    assert back.time == bar.time
    assert back.open == pytest.approx(bar.open)
    assert back.high == pytest.approx(bar.high)
    assert back.low == pytest.approx(bar.low)
    assert back.close == pytest.approx(bar.close)


def test_with_price_extends_range():
    bar = Bar(time=0, open=1.0, high=1.0, low=1.0, close=1.0)
    updated = bar.with_price(1.2).with_price(0.8).with_price(1.1)
    assert (updated.open, updated.high, updated.low, updated.close) == (1.0, 1.2, 0.8, 1.1)
    assert bar.close == 1.0


def test_quote_mid_and_price_fields():
    quote = Quote.from_prices(bid=1.08, ask=1.0805, last=1.0802, observed_at=0)
    assert quote.mid == (1.08 + 1.0805) / 2
    assert quote.price("bid") == 1.08
    assert quote.price("ask") == 1.0805
    assert quote.price() == 1.0802
    with pytest.raises(ValueError):
        quote.price("volume")


def test_timeframe_windows():
    assert Timeframe.H1.window_seconds == 3600
    assert Timeframe.W1.window_seconds == 7 * 86400
    assert Timeframe.ALL.window_seconds is None
    assert Timeframe.H1.granularity_minutes == 1
    assert Timeframe.Y1.granularity_minutes == 1440


def test_selection_from_dict():
    base = TimeframeSelection(Orientation.DIRECT, Timeframe.D1, ChartKind.LINE)
    sel = TimeframeSelection.from_dict({"timeframe": "1W", "chartKind": "candles"}, base=base)
    assert sel == TimeframeSelection(Orientation.DIRECT, Timeframe.W1, ChartKind.CANDLES)
    assert TimeframeSelection.from_dict({"kind": "candles"}).chart_kind is ChartKind.CANDLES
    with pytest.raises(ValueError):
        TimeframeSelection.from_dict({"timeframe": "2H"})
    with pytest.raises(ValueError):
        TimeframeSelection.from_dict({"orientation": "sideways"})


def test_snapshot_wire_shape():
    snap = ChartSnapshot(
        selection=TimeframeSelection(),
        connection_status=ConnectionState.LIVE,
        line=(LinePoint(time=60, value=1.08),),
        candles=(Bar(time=60, open=1.08, high=1.08, low=1.08, close=1.08),),
        latest_value=1.08,
    )
    data = snap.to_dict()
    assert data["line"] == [{"time": 60, "value": 1.08}]
    assert data["candles"][0]["close"] == 1.08
    assert data["latestValue"] == 1.08
    assert data["connectionStatus"] == "live"
    assert data["error"] is None
    assert data["quote"] is None
    assert data["loading"] is False
    assert data["timeframe"] == "1D"
    assert data["orientation"] == "direct"
    assert data["chartKind"] == "line"
