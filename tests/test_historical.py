"""History normalization, refresh loop and stale-result guarding."""
import asyncio

import aiohttp
import pytest

from data.historical import HistoryFetcher, normalize_rows, parse_row
from exchange.kraken_rest import KrakenAPIError
from exchange.models import Orientation, Timeframe, TimeframeSelection
from fakes import FakeRestClient, wait_for

NOW = 10_000_000


def _fetcher(client, interval=60):
    return HistoryFetcher(client, pair="USDCEUR", refresh_interval=interval, clock=lambda: NOW)


def test_parse_row_accepts_kraken_strings():
    bar = parse_row([1700000000, "1.0800", "1.0810", "1.0790", "1.0805", "1.08", "1200.5", 12])
    assert bar.time == 1700000000
    assert bar.high == 1.081


@pytest.mark.parametrize("row", [
    ["bad"],
    None,
    [1000, "x", 1.1, 0.9, 1.05],
    [1000, 1, 1.1, 0, 1.05],
    [1000, 1, 1.1, -0.9, 1.05],
    [1000, 1, "inf", 0.9, 1.05],
    [1000, 1, 0.95, 0.9, 1.05],
    [0, 1, 1.1, 0.9, 1.05],
])
def test_parse_row_rejects_bad_rows(row):
    assert parse_row(row) is None


def test_normalize_sorts_dedupes_and_bounds():
    rows = [
        [180, 1, 1.1, 0.9, 1.0],
        [60, 1, 1.1, 0.9, 1.0],
        [120, 1, 1.1, 0.9, 1.0],
        [120, 1, 1.2, 0.9, 1.1],
    ]
    bars = normalize_rows(rows, max_len=2)
    assert [b.time for b in bars] == [120, 180]
    assert bars[0].close == 1.1


def test_normalize_inverted_swaps_high_and_low():
    bars = normalize_rows([[1000, 1, 1.25, 0.8, 1.0]], Orientation.INVERTED)
    bar = bars[0]
    assert bar.high == pytest.approx(1.25)
    assert bar.low == pytest.approx(0.8)
    assert bar.low <= bar.open <= bar.high
    assert bar.is_consistent


def test_fetch_week_drops_malformed_row():
    client = FakeRestClient([[[1000, 1, 1.1, 0.9, 1.05], ["bad"]]])
    bars = asyncio.run(_fetcher(client).fetch(Timeframe.W1, Orientation.DIRECT))

    assert len(bars) == 1
    assert bars[0].low == 0.9
    assert bars[0].high == 1.1
    assert bars[0].low <= bars[0].high
    assert client.calls == [{"pair": "USDCEUR", "interval": 60, "since": NOW - 7 * 86400}]


def test_fetch_all_uses_daily_bars_from_epoch():
    client = FakeRestClient()
    asyncio.run(_fetcher(client).fetch(Timeframe.ALL, Orientation.DIRECT))
    assert client.calls[0]["interval"] == 1440
    assert client.calls[0]["since"] == 0


def test_fetch_with_no_usable_rows_raises():
    client = FakeRestClient([[["bad"], ["worse"]]])
    with pytest.raises(KrakenAPIError):
        asyncio.run(_fetcher(client).fetch(Timeframe.H1, Orientation.DIRECT))


@pytest.mark.parametrize("error", [
    KrakenAPIError("EQuery:Unknown asset pair"),
    aiohttp.ClientConnectionError("connection refused"),
    asyncio.TimeoutError(),
])
def test_failed_refresh_reports_error_and_delivers_nothing(error):
    async def run():
        fetcher = _fetcher(FakeRestClient([error]))
        bars, errors = [], []
        fetcher.on_bars(bars.append)
        fetcher.on_error(errors.append)
        ok = await fetcher.refresh(fetcher.generation, TimeframeSelection())
        return ok, bars, errors, fetcher

    ok, bars, errors, fetcher = asyncio.run(run())
    assert ok is False
    assert bars == []
    assert len(errors) == 1
    assert errors[0].startswith("Unable to fetch rates")
    assert fetcher.last_error == errors[0]


def test_refresh_loop_recovers_after_failure():
    async def run():
        client = FakeRestClient([KrakenAPIError("EService:Unavailable"), [[1000, 1, 1.1, 0.9, 1.05]]])
        fetcher = _fetcher(client, interval=0.01)
        bars, errors = [], []
        fetcher.on_bars(bars.append)
        fetcher.on_error(errors.append)
        await fetcher.start(TimeframeSelection())
        await wait_for(lambda: bars)
        await fetcher.stop()
        return bars, errors, fetcher

    bars, errors, fetcher = asyncio.run(run())
    assert len(errors) == 1
    assert len(bars[0]) == 1
    assert fetcher.last_error is None
    assert fetcher.last_success == NOW


def test_stale_result_is_discarded():
    async def run():
        gate = asyncio.Event()
        fetcher = _fetcher(FakeRestClient([(gate, [[1000, 1, 1.1, 0.9, 1.05]])]))
        bars = []
        fetcher.on_bars(bars.append)

        pending = asyncio.create_task(fetcher.refresh(fetcher.generation, TimeframeSelection()))
        await asyncio.sleep(0.01)
        await fetcher.stop()
        gate.set()
        return await pending, bars

    ok, bars = asyncio.run(run())
    assert ok is False
    assert bars == []


def test_reselect_abandons_in_flight_request():
    async def run():
        gate = asyncio.Event()
        client = FakeRestClient([
            (gate, [[1000, 1, 1.1, 0.9, 1.05]]),
            [[2000, 2, 2.2, 1.8, 2.1]],
        ])
        fetcher = _fetcher(client)
        bars = []
        fetcher.on_bars(bars.append)

        await fetcher.start(TimeframeSelection(timeframe=Timeframe.D1))
        await wait_for(lambda: len(client.calls) == 1)
        generation = fetcher.generation
        await fetcher.reselect(TimeframeSelection(timeframe=Timeframe.H1))
        gate.set()
        await wait_for(lambda: bars)
        await asyncio.sleep(0.02)
        await fetcher.stop()
        return bars, client, generation, fetcher

    bars, client, generation, fetcher = asyncio.run(run())
    assert len(bars) == 1
    assert bars[0][0].time == 2000
    assert client.calls[1]["interval"] == 1
    assert fetcher.generation > generation + 1
    assert fetcher.selection.timeframe is Timeframe.H1


def test_overlapping_reselects_keep_only_the_latest():
    async def run():
        client = FakeRestClient([(asyncio.Event(), [[1000, 1, 1.1, 0.9, 1.05]])])
        fetcher = _fetcher(client)
        bars = []
        fetcher.on_bars(bars.append)

        await fetcher.start(TimeframeSelection(timeframe=Timeframe.D1))
        await wait_for(lambda: len(client.calls) == 1)
        await asyncio.gather(
            fetcher.reselect(TimeframeSelection(orientation=Orientation.INVERTED, timeframe=Timeframe.W1)),
            fetcher.reselect(TimeframeSelection(timeframe=Timeframe.H1)),
        )
        await wait_for(lambda: bars)
        await asyncio.sleep(0.02)
        await fetcher.stop()
        return bars, client, fetcher

    bars, client, fetcher = asyncio.run(run())
    assert [c["interval"] for c in client.calls[1:]] == [1]
    assert len(bars) == 1
    assert fetcher.selection == TimeframeSelection(timeframe=Timeframe.H1)


def test_refresh_loop_survives_unexpected_exception():
    async def run():
        client = FakeRestClient([AttributeError("'list' object has no attribute 'items'")])
        fetcher = _fetcher(client, interval=0.01)
        bars, errors = [], []
        fetcher.on_bars(bars.append)
        fetcher.on_error(errors.append)
        await fetcher.start(TimeframeSelection())
        await wait_for(lambda: bars)
        await fetcher.stop()
        return bars, errors, client

    bars, errors, client = asyncio.run(run())
    assert len(errors) == 1
    assert "no attribute" in errors[0]
    assert len(client.calls) >= 2
    assert len(bars[0]) == 1


def test_loading_until_first_fetch_of_selection_completes():
    async def run():
        gate = asyncio.Event()
        client = FakeRestClient([(gate, [[1000, 1, 1.1, 0.9, 1.05]])])
        fetcher = _fetcher(client)
        assert not fetcher.loading

        await fetcher.start(TimeframeSelection())
        await wait_for(lambda: len(client.calls) == 1)
        during = fetcher.loading
        gate.set()
        await wait_for(lambda: fetcher.last_success is not None)
        after = fetcher.loading

        await fetcher.reselect(TimeframeSelection(timeframe=Timeframe.H1))
        reselected = fetcher.loading
        await wait_for(lambda: not fetcher.loading)
        await fetcher.stop()
        return during, after, reselected

    during, after, reselected = asyncio.run(run())
    assert during is True
    assert after is False
    assert reselected is True
