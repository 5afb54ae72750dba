"""
Dashboard — Lightweight web server exposing the chart feed.
Uses aiohttp.web to serve JSON snapshots and push updates over a WebSocket
to whatever draws the chart.
"""

from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Optional, Set
from aiohttp import web, WSMsgType
import logging

from exchange.models import ChartSnapshot, TimeframeSelection

if TYPE_CHECKING:
    from main import ChartFeed

logger = logging.getLogger(__name__)


def json_response(data, status=200):
    return web.json_response(data, status=status)


class Dashboard:
    """Web API server for the chart feed."""

    def __init__(self, feed: "ChartFeed", host: str = "0.0.0.0", port: int = 8080):
        self.feed = feed
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner: Optional[web.AppRunner] = None
        # One single-slot queue per WS client; a newer snapshot replaces an unsent one
        self._clients: Set[asyncio.Queue] = set()
        self._setup_routes()
        self.feed.subscribe(self._on_snapshot)

    def _setup_routes(self):
        self.app.router.add_get("/api/chart", self._api_chart)
        self.app.router.add_post("/api/selection", self._api_selection)
        self.app.router.add_get("/api/status", self._api_status)
        self.app.router.add_get("/ws", self._ws_stream)

    async def start(self):
        """Start the dashboard web server."""
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"[DASHBOARD] Running on http://{self.host}:{self.port}")

    async def stop(self):
        self.feed.unsubscribe(self._on_snapshot)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ─── Push ───

    def _on_snapshot(self, snapshot: ChartSnapshot):
        payload = snapshot.to_dict()
        for queue in list(self._clients):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(payload)

    # ─── Routes ───

    async def _api_chart(self, request: web.Request) -> web.Response:
        """Snapshot for the current selection, or for query-string overrides."""
        try:
            selection = TimeframeSelection.from_dict(dict(request.query), base=self.feed.selection)
        except ValueError as e:
            return json_response({"error": str(e)}, status=400)
        return json_response(self.feed.snapshot(selection).to_dict())

    async def _api_selection(self, request: web.Request) -> web.Response:
        """Change the active selection. Body: {timeframe, orientation, chartKind}."""
        try:
            body = await request.json()
            if not isinstance(body, dict):
                raise ValueError("Body must be a JSON object")
            selection = TimeframeSelection.from_dict(body, base=self.feed.selection)
        except ValueError as e:
            return json_response({"error": str(e)}, status=400)

        await self.feed.set_selection(selection)
        return json_response(selection.to_dict())

    async def _api_status(self, request: web.Request) -> web.Response:
        history = self.feed.history
        return json_response({
            "connection": self.feed.connection.stats,
            "history": {
                "error": history.last_error,
                "last_success": history.last_success,
                "generation": history.generation,
                "loading": history.loading,
            },
            "selection": self.feed.selection.to_dict(),
            "bars": len(self.feed.aggregator),
        })

    async def _ws_stream(self, request: web.Request) -> web.WebSocketResponse:
        """Send the current snapshot, then every published one."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._clients.add(queue)
        logger.info(f"[DASHBOARD] WS client connected ({len(self._clients)} total)")

        async def reader():
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    break

        read_task = asyncio.create_task(reader())
        try:
            await ws.send_json(self.feed.snapshot().to_dict())
            while not ws.closed and not read_task.done():
                get_task = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {get_task, read_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if get_task not in done:
                    get_task.cancel()
                    break
                await ws.send_json(get_task.result())
        except ConnectionResetError as e:
            logger.warning(f"[DASHBOARD] WS client dropped: {e}")
        finally:
            self._clients.discard(queue)
            read_task.cancel()
            await ws.close()
            logger.info(f"[DASHBOARD] WS client disconnected ({len(self._clients)} total)")

        return ws
