"""
Kraken WebSocket v1 Ticker Connection.
Holds one ticker subscription, turns priced frames into Quotes,
and reconnects on a fixed delay until stopped.
"""

from __future__ import annotations
import asyncio
import json
import math
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import websockets
import logging

from exchange.models import ConnectionState, Quote

logger = logging.getLogger(__name__)

QuoteCallback = Callable[[Quote], None]
StateCallback = Callable[[ConnectionState], None]


class FeedEvent(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    QUOTE = "quote"
    PROTOCOL_ERROR = "protocol_error"
    CLOSE = "close"
    STOP = "stop"


_EVENT_STATES = {
    FeedEvent.CONNECTING: ConnectionState.CONNECTING,
    FeedEvent.OPEN: ConnectionState.CONNECTED,
    FeedEvent.QUOTE: ConnectionState.LIVE,
    FeedEvent.PROTOCOL_ERROR: ConnectionState.ERROR,
    FeedEvent.STOP: ConnectionState.IDLE,
}


def next_state(event: FeedEvent, has_data: bool) -> ConnectionState:
    """
    Connection state after `event`.
    A close is a plain disconnect only if this attempt produced a quote.
    """
    if event is FeedEvent.CLOSE:
        return ConnectionState.DISCONNECTED if has_data else ConnectionState.ERROR
    return _EVENT_STATES[event]


def _first_price(payload: Dict[str, Any], key: str) -> Optional[float]:
    values = payload.get(key)
    if not isinstance(values, list) or not values:
        return None
    try:
        price = float(values[0])
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


def parse_ticker_frame(
    msg: Any,
    pair: str,
    channel_id: Optional[int] = None,
    observed_at: Optional[float] = None,
) -> Optional[Quote]:
    """
    Parse a Kraken v1 ticker frame into a Quote.

    Accepts [channelId, payload, label] and [channelId, payload, "ticker", pair].
    payload.b / payload.a / payload.c are arrays whose first element is the price string.
    Returns None for anything that doesn't look like a priced ticker for `pair`.
    """
    if not isinstance(msg, list) or len(msg) < 3:
        return None

    chan, payload = msg[0], msg[1]
    if not isinstance(payload, dict):
        return None
    if channel_id is not None and chan != channel_id:
        return None

    if len(msg) >= 4:
        if msg[2] != "ticker" or msg[3] != pair:
            return None
    elif msg[2] not in ("ticker", pair):
        return None

    bid = _first_price(payload, "b")
    ask = _first_price(payload, "a")
    last = _first_price(payload, "c")
    if bid is None or ask is None or last is None:
        return None

    return Quote.from_prices(
        bid=bid,
        ask=ask,
        last=last,
        observed_at=time.time() if observed_at is None else observed_at,
    )


class QuoteConnection:
    """Manages the Kraken ticker WebSocket for a single pair."""

    def __init__(
        self,
        url: str,
        pair: str,
        reconnect_delay: float = 3.0,
        ping_interval: int = 20,
        close_timeout: int = 5,
        connect: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.pair = pair
        self.reconnect_delay = reconnect_delay
        self._ping_interval = ping_interval
        self._close_timeout = close_timeout
        self._connect = connect or websockets.connect
        self._clock = clock

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._has_data = False
        self._channel_id: Optional[int] = None

        self._quote_callbacks: List[QuoteCallback] = []
        self._state_callbacks: List[StateCallback] = []

        self.state = ConnectionState.IDLE
        self.last_quote: Optional[Quote] = None
        self._quotes_received = 0
        self._reconnect_attempts = 0

    def on_quote(self, callback: QuoteCallback):
        self._quote_callbacks.append(callback)

    def on_state(self, callback: StateCallback):
        self._state_callbacks.append(callback)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Begin connecting. No-op if already connecting or connected."""
        if self.is_running:
            logger.debug("[WS] Already running, ignoring start()")
            return

        self._running = True
        self._task = asyncio.create_task(self._run(), name="kraken-ticker")

    async def stop(self):
        """
        Close the transport and cancel any pending reconnect.
        Idempotent; safe before start() and while still connecting.
        """
        self._running = False

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"[WS] Error closing transport: {e}")

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._transition(FeedEvent.STOP)

    async def resubscribe(self, pair: str):
        """Switch the tracked instrument on the open transport."""
        if pair == self.pair:
            return

        old_pair, self.pair = self.pair, pair
        self._channel_id = None
        self._has_data = False
        self.last_quote = None

        ws = self._ws
        if ws is None:
            # Picked up by the subscribe on next open
            return

        try:
            await ws.send(json.dumps(self._subscription("unsubscribe", old_pair)))
            await ws.send(json.dumps(self._subscription("subscribe", pair)))
        except websockets.ConnectionClosed as e:
            logger.warning(f"[WS] Resubscribe failed, connection closed: {e}")
            return

        logger.info(f"[WS] Resubscribed: {old_pair} -> {pair}")
        self._transition(FeedEvent.OPEN)

    @property
    def stats(self) -> dict:
        return {
            "running": self._running,
            "state": self.state.value,
            "pair": self.pair,
            "quotes_received": self._quotes_received,
            "reconnect_attempts": self._reconnect_attempts,
            "last_quote_at": self.last_quote.observed_at if self.last_quote else None,
        }

    # ==================== Internal Connection Management ====================

    async def _run(self):
        """Connect, listen, and reconnect after a fixed delay until stopped."""
        while self._running:
            self._has_data = False
            self._channel_id = None
            self._transition(FeedEvent.CONNECTING)

            try:
                async with self._connect(
                    self.url,
                    ping_interval=self._ping_interval,
                    ping_timeout=10,
                    close_timeout=self._close_timeout,
                ) as ws:
                    self._ws = ws
                    logger.info(f"[WS] Connected to {self.url}")
                    await self._handle_open(ws)

                    async for raw in ws:
                        if not self._running:
                            break
                        self._handle_message(raw)

            except websockets.ConnectionClosed as e:
                logger.warning(f"[WS] Connection closed: {e}")
            except Exception as e:
                logger.error(f"[WS] Transport error: {e}")
            finally:
                self._ws = None

            if not self._running:
                break

            self._transition(FeedEvent.CLOSE)
            self._reconnect_attempts += 1
            logger.info(
                f"[WS] Reconnecting in {self.reconnect_delay:g}s "
                f"(attempt #{self._reconnect_attempts})"
            )
            await asyncio.sleep(self.reconnect_delay)

    def _subscription(self, event: str, pair: str) -> dict:
        return {
            "event": event,
            "pair": [pair],
            "subscription": {"name": "ticker"},
        }

    async def _handle_open(self, ws):
        await ws.send(json.dumps(self._subscription("subscribe", self.pair)))
        logger.info(f"[WS] Subscribing: ticker {self.pair}")
        self._transition(FeedEvent.OPEN)

    def _handle_message(self, raw):
        """Route one inbound frame. Never raises."""
        if not self._running:
            return

        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[WS] Invalid JSON: {str(raw)[:100]}")
            return

        if isinstance(msg, dict):
            self._handle_control(msg)
            return

        quote = parse_ticker_frame(msg, self.pair, self._channel_id, self._clock())
        if quote is None:
            logger.debug(f"[WS] Dropped frame: {str(raw)[:100]}")
            return

        self._has_data = True
        self.last_quote = quote
        self._quotes_received += 1
        self._transition(FeedEvent.QUOTE)

        for cb in list(self._quote_callbacks):
            try:
                cb(quote)
            except Exception as e:
                logger.error(f"[WS] Quote callback error: {e}", exc_info=True)

    def _handle_control(self, msg: Dict[str, Any]):
        """Object frames only matter when they report an error."""
        event = msg.get("event")

        if event == "subscriptionStatus":
            status = msg.get("status")
            if status == "error":
                logger.error(f"[WS] Subscription error: {msg.get('errorMessage')}")
                self._transition(FeedEvent.PROTOCOL_ERROR)
            elif status == "subscribed" and msg.get("pair", self.pair) == self.pair:
                chan = msg.get("channelID")
                if isinstance(chan, int):
                    self._channel_id = chan
                logger.info(f"[WS] Subscribed: {self.pair} (channel {chan})")
            return

        if event in ("heartbeat", "systemStatus", "pong"):
            return

        if "error" in msg:
            logger.error(f"[WS] Error frame: {msg}")
            self._transition(FeedEvent.PROTOCOL_ERROR)

    def _transition(self, event: FeedEvent):
        new_state = next_state(event, self._has_data)
        if new_state is self.state:
            return

        old_state, self.state = self.state, new_state
        logger.info(f"[WS] State: {old_state.value} -> {new_state.value}")

        for cb in list(self._state_callbacks):
            try:
                cb(new_state)
            except Exception as e:
                logger.error(f"[WS] State callback error: {e}", exc_info=True)
