from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(slots=True)
class MarketFeedConfig:
    option_ws_url: str
    spot_ws_url: str
    linear_ws_url: str
    rest_base_url: str
    base_coin: str
    reconnect_floor_seconds: float
    reconnect_factor: float
    reconnect_ceiling_seconds: float
    ping_interval_seconds: float
    capture_timeout_seconds: float
    instrument_refresh_seconds: float
    default_hv_pct: float
    http_timeout_seconds: float


def load_feed_environment(env_file: str = ".env") -> MarketFeedConfig:
    load_dotenv(env_file, override=False)

    return MarketFeedConfig(
        option_ws_url=os.getenv("BYBIT_WS_OPTION_URL", "wss://stream.bybit.com/v5/public/option"),
        spot_ws_url=os.getenv("BYBIT_WS_SPOT_URL", "wss://stream.bybit.com/v5/public/spot"),
        linear_ws_url=os.getenv("BYBIT_WS_LINEAR_URL", "wss://stream.bybit.com/v5/public/linear"),
        rest_base_url=os.getenv("BYBIT_REST_URL", "https://api.bybit.com"),
        base_coin=os.getenv("BYBIT_BASE_COIN", "ETH").upper(),
        reconnect_floor_seconds=float(os.getenv("FEED_RECONNECT_FLOOR_SECONDS", "1.0")),
        reconnect_factor=float(os.getenv("FEED_RECONNECT_FACTOR", "1.7")),
        reconnect_ceiling_seconds=float(os.getenv("FEED_RECONNECT_CEILING_SECONDS", "15.0")),
        ping_interval_seconds=float(os.getenv("FEED_PING_INTERVAL_SECONDS", "20.0")),
        capture_timeout_seconds=float(os.getenv("FEED_CAPTURE_TIMEOUT_SECONDS", "0.5")),
        instrument_refresh_seconds=float(os.getenv("INSTRUMENT_REFRESH_SECONDS", "600")),
        default_hv_pct=float(os.getenv("DEFAULT_HV_PCT", "60")),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "8")),
    )
