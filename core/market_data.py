"""core/market_data.py - Read-only REST collaborators for the public Bybit v5 API.

Provides the slow-moving inputs the streaming layer does not carry:

  Instruments: /v5/market/instruments-info (paginated, cursor-based)
  Option tickers: /v5/market/tickers?category=option  (bulk snapshot, used to
                  backfill fields a websocket has not delivered yet)
  Spot ticker: /v5/market/tickers?category=spot
  HV30: /v5/market/historical-volatility (fallback vol for pricing)
  Delivery price: /v5/market/delivery-price (settlement of expired contracts)

SAFETY NOTE: This module is READ-ONLY.  No orders are placed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

import requests

from core.quote_store import QuoteSnapshotStore
from core.symbols import parse_option_symbol
from feed_config import MarketFeedConfig
from models.market import Instrument, OptionType, finite_or_none

logger = logging.getLogger(__name__)

_MAX_INSTRUMENT_PAGES = 10
_INSTRUMENT_PAGE_LIMIT = 1000

# Values at or below this magnitude are taken to be fractions (0.65) rather than
# percentages (65.0).  A genuine IV above 300% is therefore misread as 3%-ish;
# accepted as a known edge case.
IV_FRACTION_THRESHOLD = 3.0


def normalize_iv_percent(raw: Any) -> Optional[float]:
    """Return implied/historical vol in percent, guessing the unit from magnitude."""
    value = finite_or_none(raw)
    if value is None:
        return None
    return value * 100.0 if abs(value) <= IV_FRACTION_THRESHOLD else value


def _first_present(payload: dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = _parse_price(payload.get(key))
        if value is not None:
            return value
    return None


def normalize_ticker_fields(payload: dict[str, Any]) -> dict[str, float]:
    """Map a raw ticker payload (REST list item or websocket data) onto Quote field names.

    Absent or non-numeric values are omitted so the caller can merge the
    result without erasing last-known-good data.
    """
    fields: dict[str, Optional[float]] = {
        "bid": _first_present(payload, "bid1Price", "bestBidPrice", "bidPrice"),
        "ask": _first_present(payload, "ask1Price", "bestAskPrice", "askPrice"),
        "mark_price": _first_present(payload, "markPrice", "lastPrice"),
        "last_price": _first_present(payload, "lastPrice"),
        "change_24h": _first_present(payload, "price24hPcnt", "change24h"),
        "mark_iv": normalize_iv_percent(payload.get("markIv", payload.get("iv"))),
        "index_price": _first_present(payload, "underlyingPrice", "indexPrice"),
        "delta": _first_present(payload, "delta"),
        "gamma": _first_present(payload, "gamma"),
        "vega": _first_present(payload, "vega"),
        "theta": _first_present(payload, "theta"),
        "open_interest": _first_present(payload, "openInterest"),
    }
    return {name: value for name, value in fields.items() if value is not None}


def parse_instrument(item: dict[str, Any]) -> Optional[Instrument]:
    symbol = str(item.get("symbol") or "").strip()
    if not symbol:
        return None
    parsed = parse_option_symbol(symbol) or {}
    strike = parsed.get("strike")
    if strike is None:
        return None
    option_raw = item.get("optionsType") or item.get("optionType") or parsed.get("option_type")
    option_type = option_raw if isinstance(option_raw, OptionType) else OptionType.parse(option_raw)
    expiry = finite_or_none(item.get("deliveryTime") or item.get("deliveryDate"))
    expiry_ms = int(expiry) if expiry else (parsed.get("expiry_ms") or 0)
    return Instrument(
        symbol=symbol,
        strike=float(strike),
        option_type=option_type,
        expiry_ms=expiry_ms,
        settle_coin=str(item.get("settleCoin") or parsed.get("settle_coin") or "USDT").upper(),
        status=item.get("status"),
    )


class BybitMarketData:
    """Thin synchronous client over the public market endpoints.

    Every public method returns ``None`` / empty collections on failure
    (never raises); the streaming feed is the primary source and REST only
    fills gaps.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://api.bybit.com",
        base_coin: str = "ETH",
        session: requests.Session | None = None,
        timeout: float = 8.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.base_coin = base_coin.upper()
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: MarketFeedConfig, session: requests.Session | None = None) -> "BybitMarketData":
        return cls(
            base_url=config.rest_base_url,
            base_coin=config.base_coin,
            session=session,
            timeout=config.http_timeout_seconds,
        )

    def _get_list(self, path: str, params: dict[str, Any]) -> tuple[list[Any], Optional[str]]:
        resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        if resp.status_code != 200:
            raise requests.HTTPError(f"HTTP {resp.status_code} for {path}")
        body = resp.json() or {}
        result = body.get("result") or {}
        items = result.get("list") or []
        return (items if isinstance(items, list) else []), result.get("nextPageCursor")

    # ------------------------------------------------------------------
    # Instruments
    # ------------------------------------------------------------------

    def fetch_instruments(self) -> list[Instrument]:
        collected: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        try:
            for _ in range(_MAX_INSTRUMENT_PAGES):
                params: dict[str, Any] = {
                    "category": "option",
                    "baseCoin": self.base_coin,
                    "limit": _INSTRUMENT_PAGE_LIMIT,
                }
                if cursor:
                    params["cursor"] = cursor
                items, next_cursor = self._get_list("/v5/market/instruments-info", params)
                collected.extend(items)
                if not next_cursor or next_cursor == cursor:
                    break
                cursor = next_cursor
        except Exception as exc:
            logger.debug("fetch_instruments paginated request failed: %s", exc)

        if not collected:
            try:
                items, _ = self._get_list(
                    "/v5/market/instruments-info", {"category": "option", "baseCoin": self.base_coin}
                )
                collected.extend(items)
            except Exception as exc:
                logger.debug("fetch_instruments fallback request failed: %s", exc)
                return []

        instruments = [parse_instrument(item) for item in collected if isinstance(item, dict)]
        return [inst for inst in instruments if inst is not None]

    # ------------------------------------------------------------------
    # Tickers
    # ------------------------------------------------------------------

    def fetch_option_tickers(self) -> dict[str, dict[str, float]]:
        """Bulk option ticker snapshot: ``{symbol: quote fields}``."""
        try:
            items, _ = self._get_list("/v5/market/tickers", {"category": "option", "baseCoin": self.base_coin})
        except Exception as exc:
            logger.debug("fetch_option_tickers failed: %s", exc)
            return {}
        snapshot: dict[str, dict[str, float]] = {}
        for item in items:
            if not isinstance(item, dict) or not item.get("symbol"):
                continue
            snapshot[str(item["symbol"])] = normalize_ticker_fields(item)
        return snapshot

    def fetch_spot_ticker(self, symbol: str) -> Optional[dict[str, float]]:
        """Spot last price plus 24h change in percent."""
        try:
            items, _ = self._get_list("/v5/market/tickers", {"category": "spot", "symbol": symbol})
        except Exception as exc:
            logger.debug("fetch_spot_ticker(%s) failed: %s", symbol, exc)
            return None
        if not items or not isinstance(items[0], dict):
            return None
        item = items[0]
        last = _parse_price(item.get("lastPrice"))
        if last is None:
            return None
        prev = _parse_price(item.get("prevPrice24h"))
        result = {"price": last}
        if prev:
            result["change_24h_pct"] = (last - prev) / prev * 100.0
        return result

    def backfill_store(self, store: QuoteSnapshotStore, symbols: Iterable[str]) -> int:
        """Fill fields the stream has not delivered yet; returns the number of symbols touched."""
        wanted = set(symbols)
        if not wanted:
            return 0
        snapshot = self.fetch_option_tickers()
        touched = 0
        for symbol in wanted:
            fields = snapshot.get(symbol)
            if fields and store.backfill(symbol, fields):
                touched += 1
        return touched

    # ------------------------------------------------------------------
    # Volatility / settlement
    # ------------------------------------------------------------------

    def fetch_hv30(self) -> Optional[float]:
        """Latest 30-day historical volatility, in percent."""
        try:
            items, _ = self._get_list(
                "/v5/market/historical-volatility",
                {"category": "option", "baseCoin": self.base_coin, "period": 30},
            )
        except Exception as exc:
            logger.debug("fetch_hv30 failed: %s", exc)
            return None

        values: list[float] = []
        for item in items:
            if isinstance(item, (list, tuple)) and len(item) >= 2:
                value = finite_or_none(item[1])
                if value is None:
                    value = finite_or_none(item[0])
            elif isinstance(item, dict):
                value = finite_or_none(item.get("value", item.get("hv")))
            else:
                value = None
            if value is not None:
                values.append(value)
        if not values:
            return None
        return normalize_iv_percent(values[-1])

    def fetch_delivery_price(self, symbol: str) -> Optional[float]:
        """Settlement (delivery) price of an expired option contract."""
        try:
            items, _ = self._get_list(
                "/v5/market/delivery-price",
                {"category": "option", "baseCoin": self.base_coin, "symbol": symbol},
            )
        except Exception as exc:
            logger.debug("fetch_delivery_price(%s) failed: %s", symbol, exc)
            return None
        for item in items:
            if isinstance(item, dict) and item.get("symbol") in (None, symbol):
                price = _parse_price(item.get("deliveryPrice"))
                if price is not None and price > 0:
                    return price
        return None


class InstrumentCatalog:
    """Periodically refreshed view of the listed option instruments."""

    def __init__(self, client: BybitMarketData, refresh_seconds: float = 600.0) -> None:
        self.client = client
        self.refresh_seconds = refresh_seconds
        self._instruments: dict[str, Instrument] = {}
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: MarketFeedConfig,
        client: BybitMarketData | None = None,
        session: requests.Session | None = None,
    ) -> "InstrumentCatalog":
        return cls(
            client or BybitMarketData.from_config(config, session=session),
            refresh_seconds=config.instrument_refresh_seconds,
        )

    def __len__(self) -> int:
        return len(self._instruments)

    def get(self, symbol: str) -> Optional[Instrument]:
        return self._instruments.get(symbol)

    def instruments(self, *, expiry_ms: int | None = None) -> list[Instrument]:
        items = self._instruments.values()
        if expiry_ms is not None:
            items = [inst for inst in items if inst.expiry_ms == expiry_ms]
        return sorted(items, key=lambda inst: (inst.expiry_ms, inst.strike, inst.option_type.value))

    def expiries(self) -> list[int]:
        return sorted({inst.expiry_ms for inst in self._instruments.values()})

    def refresh(self) -> int:
        fetched = self.client.fetch_instruments()
        if not fetched:
            logger.debug("Instrument refresh returned nothing; keeping %d cached", len(self._instruments))
            return 0
        self._instruments = {inst.symbol: inst for inst in fetched}
        return len(self._instruments)

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        while not self._stop_event.is_set():
            count = await asyncio.to_thread(self.refresh)
            logger.debug("Instrument catalog refreshed (%d instruments)", count)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.refresh_seconds)
            except asyncio.TimeoutError:
                continue


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _parse_price(raw) -> Optional[float]:
    """Convert a REST/WS string field to float, or None if unavailable."""
    if raw is None or raw == "":
        return None
    try:
        return finite_or_none(str(raw).replace(",", "").strip())
    except (ValueError, TypeError):
        return None
