"""
Live Chart Feed — Configuration
All tunable parameters in one place.
"""

import os
from dataclasses import dataclass, field

from exchange.models import ChartKind, Orientation, Timeframe, TimeframeSelection


@dataclass
class FeedConfig:
    ws_url: str = "wss://ws.kraken.com"
    # USDC/EUR is tracked as a live proxy for USDC/EURC
    pair: str = "USDC/EUR"
    reconnect_delay: float = 3.0        # Fixed, no backoff growth
    ping_interval: int = 20             # Seconds
    close_timeout: int = 5


@dataclass
class HistoryConfig:
    base_url: str = "https://api.kraken.com"
    rest_pair: str = "USDCEUR"
    refresh_interval: int = 60          # Seconds
    request_timeout: int = 10


@dataclass
class SeriesConfig:
    bucket_seconds: int = 60
    max_points: int = 800               # Sliding window, oldest dropped first
    price_field: str = "last"           # bid | ask | last | mid


@dataclass
class DashboardConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class ChartConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    series: SeriesConfig = field(default_factory=SeriesConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    default_selection: TimeframeSelection = field(default_factory=TimeframeSelection)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ChartConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.feed.ws_url = os.getenv("KRAKEN_WS_URL", config.feed.ws_url)
        config.feed.pair = os.getenv("KRAKEN_WS_PAIR", config.feed.pair)
        config.history.base_url = os.getenv("KRAKEN_REST_URL", config.history.base_url)
        config.history.rest_pair = os.getenv("KRAKEN_REST_PAIR", config.history.rest_pair)
        config.history.refresh_interval = int(
            os.getenv("HISTORY_REFRESH_SECONDS", str(config.history.refresh_interval))
        )
        config.series.price_field = os.getenv("SERIES_PRICE_FIELD", config.series.price_field)
        config.dashboard.enabled = os.getenv("DASHBOARD_ENABLED", "true").lower() == "true"
        config.dashboard.port = int(os.getenv("DASHBOARD_PORT", str(config.dashboard.port)))
        config.default_selection = TimeframeSelection(
            orientation=Orientation(os.getenv("DEFAULT_ORIENTATION", "direct")),
            timeframe=Timeframe(os.getenv("DEFAULT_TIMEFRAME", "1D")),
            chart_kind=ChartKind(os.getenv("DEFAULT_CHART_KIND", "line")),
        )
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        return config
