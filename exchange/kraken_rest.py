"""
Kraken Public REST API Client.
Only the OHLC endpoint is needed; no authentication.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional
import aiohttp
import logging

logger = logging.getLogger(__name__)


class KrakenAPIError(Exception):
    """Non-success HTTP status or a Kraken error envelope."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, status: Optional[int] = None):
        super().__init__(message)
        self.errors = errors or []
        self.status = status


class KrakenRestClient:
    """Async Kraken public REST wrapper."""

    def __init__(self, base_url: str = "https://api.kraken.com", timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a public endpoint and unwrap the {error, result} envelope."""
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"

        try:
            async with session.get(url, params=params) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise KrakenAPIError(
                        f"GET {endpoint} returned HTTP {resp.status}: {text[:200]}",
                        status=resp.status,
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[REST] GET {endpoint} Exception: {e}")
            raise

        if not isinstance(data, dict):
            raise KrakenAPIError(f"GET {endpoint} returned a non-object payload")

        errors = data.get("error") or []
        if errors:
            logger.error(f"[REST] GET {endpoint} Error: {errors}")
            raise KrakenAPIError(f"GET {endpoint} failed: {', '.join(map(str, errors))}", errors=errors)

        result = data.get("result")
        if not result:
            raise KrakenAPIError(f"GET {endpoint} returned an empty result")
        if not isinstance(result, dict):
            raise KrakenAPIError(f"GET {endpoint} returned a non-object result")
        return result

    # ==================== Market Endpoints ====================

    async def get_ohlc(self, pair: str, interval: int, since: Optional[int] = None) -> List[List[Any]]:
        """
        Get OHLC rows, oldest first.
        Row format: [time, open, high, low, close, vwap, volume, count]
        Interval (minutes): 1, 5, 15, 30, 60, 240, 1440, 10080, 21600
        Kraken returns at most 720 rows regardless of `since`.
        """
        params: Dict[str, Any] = {"pair": pair, "interval": interval}
        if since:
            params["since"] = int(since)

        result = await self._request("/0/public/OHLC", params)

        # Result is keyed by Kraken's own pair name (e.g. "USDCEUR"), plus "last"
        for key, rows in result.items():
            if key != "last":
                if not isinstance(rows, list):
                    raise KrakenAPIError(f"OHLC rows for {key} are not a list")
                return rows

        raise KrakenAPIError(f"OHLC result has no rows for {pair}")
