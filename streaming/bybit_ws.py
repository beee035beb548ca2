"""streaming/bybit_ws.py - Pooled Bybit public websocket feeds.

One ``ChannelConnection`` per channel class (option / spot / linear).  Each
connection owns the ref-count table ``symbol -> {callbacks}`` for its class,
re-subscribes every tracked symbol after a reconnect and fans parsed ticks out
to the shared ``QuoteSnapshotStore`` and to direct subscribers.

Control protocol::

    {"op": "subscribe",   "args": ["tickers.<symbol>", "orderbook.1.<symbol>"]}
    {"op": "unsubscribe", "args": [...]}
    {"op": "ping"}
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import websockets

from core.market_data import _parse_price, normalize_ticker_fields
from core.quote_store import QuoteSnapshotStore
from feed_config import MarketFeedConfig
from logging_config import get_stream_logger
from models.market import TickerUpdate


LOGGER = get_stream_logger()

TickCallback = Callable[[TickerUpdate], None]


class ChannelClass(str, Enum):
    OPTION = "option"
    SPOT = "spot"
    LINEAR = "linear"


@dataclass(slots=True)
class StreamSessionState:
    channel: str
    status: str = "disconnected"
    last_heartbeat_at: datetime | None = None
    last_message_at: datetime | None = None
    reconnect_attempt: int = 0
    subscription_count: int = 0
    last_error: str | None = None


def topics_for(symbol: str) -> list[str]:
    return [f"tickers.{symbol}", f"orderbook.1.{symbol}"]


def build_control_frame(op: str, symbols: Iterable[str]) -> dict[str, Any]:
    args: list[str] = []
    for symbol in symbols:
        args.extend(topics_for(symbol))
    return {"op": op, "args": args}


def _best_level(levels: Any) -> Optional[float]:
    if not isinstance(levels, list):
        return None
    for level in levels:
        if not isinstance(level, (list, tuple)) or not level:
            continue
        price = _parse_price(level[0])
        size = _parse_price(level[1]) if len(level) > 1 else None
        if price is not None and price > 0 and (size is None or size > 0):
            return price
    return None


def parse_frame(raw: str | bytes | dict[str, Any]) -> list[TickerUpdate]:
    """Turn one push frame into zero or more normalised updates.

    Control acknowledgements, pongs and malformed frames yield ``[]``.
    """
    if isinstance(raw, dict):
        payload = raw
    else:
        text = raw.decode("utf-8", errors="ignore") if isinstance(raw, bytes) else raw
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            LOGGER.debug("Skipping non-JSON frame: %.120s", text)
            return []
    if not isinstance(payload, dict):
        return []

    topic = str(payload.get("topic") or "")
    data = payload.get("data")

    if topic.startswith("tickers."):
        topic_symbol = topic.split(".", 1)[1]
        items = data if isinstance(data, list) else [data]
        updates: list[TickerUpdate] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            symbol = str(item.get("symbol") or topic_symbol).strip()
            fields = normalize_ticker_fields(item)
            if symbol and fields:
                updates.append(TickerUpdate(symbol=symbol, kind="ticker", fields=fields))
        return updates

    if topic.startswith("orderbook.1."):
        symbol = topic.split(".", 2)[2].strip()
        if not symbol or not isinstance(data, dict):
            return []
        fields: dict[str, float] = {}
        bid = _best_level(data.get("b"))
        ask = _best_level(data.get("a"))
        if bid is not None:
            fields["ob_bid"] = bid
        if ask is not None:
            fields["ob_ask"] = ask
        return [TickerUpdate(symbol=symbol, kind="orderbook", fields=fields)] if fields else []

    return []


class ChannelConnection:
    """Single pooled websocket for one channel class."""

    def __init__(
        self,
        channel: ChannelClass,
        *,
        url: str,
        store: QuoteSnapshotStore | None = None,
        reconnect_floor_seconds: float = 1.0,
        reconnect_factor: float = 1.7,
        reconnect_ceiling_seconds: float = 15.0,
        ping_interval_seconds: float = 20.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.channel = channel
        self.url = url
        self.store = store
        self.reconnect_floor_seconds = reconnect_floor_seconds
        self.reconnect_factor = reconnect_factor
        self.reconnect_ceiling_seconds = reconnect_ceiling_seconds
        self.ping_interval_seconds = ping_interval_seconds
        self._connect = connect
        self._subscribers: dict[str, set[TickCallback]] = {}
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._pending_sends: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._attempt = 0
        self.state = StreamSessionState(channel=channel.value)

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def symbols(self) -> list[str]:
        return list(self._subscribers.keys())

    def subscriber_count(self, symbol: str) -> int:
        return len(self._subscribers.get(symbol, ()))

    def compute_backoff_seconds(self, attempt: int) -> float:
        delay = self.reconnect_floor_seconds * self.reconnect_factor ** max(0, attempt - 1)
        return min(delay, self.reconnect_ceiling_seconds)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, symbol: str, callback: TickCallback) -> Callable[[], None]:
        """Register *callback* for *symbol*; must be called on the event-loop thread."""
        bucket = self._subscribers.setdefault(symbol, set())
        bucket.add(callback)
        self.state.subscription_count = len(self._subscribers)
        self._ensure_running()
        if self.is_open:
            self._schedule_send(build_control_frame("subscribe", [symbol]))

        active = True

        def unsubscribe() -> None:
            nonlocal active
            if not active:
                return
            active = False
            self._remove(symbol, callback)

        return unsubscribe

    def _remove(self, symbol: str, callback: TickCallback) -> None:
        bucket = self._subscribers.get(symbol)
        if bucket is None:
            return
        bucket.discard(callback)
        if bucket:
            return
        del self._subscribers[symbol]
        self.state.subscription_count = len(self._subscribers)
        if self.is_open:
            self._schedule_send(build_control_frame("unsubscribe", [symbol]))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self.run(), name=f"bybit-{self.channel.value}-stream")

    async def close(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._pending_sends):
            pending.cancel()
        self._ws = None
        self.state.status = "disconnected"

    async def run(self) -> None:
        self.state.status = "connecting"
        while not self._stop_event.is_set():
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.state.last_error = str(exc)
                LOGGER.warning("%s stream error: %s", self.channel.value, exc)

            if self._stop_event.is_set():
                break
            self._attempt += 1
            delay = self.compute_backoff_seconds(self._attempt)
            self.state.status = "degraded"
            self.state.reconnect_attempt = self._attempt
            LOGGER.info("%s stream closed; reconnecting in %.1fs", self.channel.value, delay)
            await self._wait_before_reconnect(delay)

        self.state.status = "disconnected"

    async def _wait_before_reconnect(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _connect_and_stream(self) -> None:
        async with self._connect(self.url, ping_interval=None) as websocket:
            self._ws = websocket
            self._attempt = 0
            self.state.status = "connected"
            self.state.reconnect_attempt = 0
            LOGGER.info("%s stream connected (%d symbols)", self.channel.value, len(self._subscribers))

            heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(websocket), name=f"bybit-{self.channel.value}-heartbeat"
            )
            try:
                if self._subscribers:
                    await self._send(build_control_frame("subscribe", list(self._subscribers)))
                async for raw_message in websocket:
                    if self._stop_event.is_set():
                        break
                    self._handle_message(raw_message)
            finally:
                self._ws = None
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass

    async def _heartbeat_loop(self, websocket: Any) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.ping_interval_seconds)
            try:
                await websocket.send(json.dumps({"op": "ping"}))
            except Exception as exc:
                LOGGER.debug("%s ping failed: %s", self.channel.value, exc)
                return
            self.state.last_heartbeat_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Wire I/O
    # ------------------------------------------------------------------

    def _schedule_send(self, payload: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._send(payload))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, payload: dict[str, Any]) -> None:
        websocket = self._ws
        if websocket is None:
            return
        try:
            await websocket.send(json.dumps(payload))
        except Exception as exc:
            LOGGER.debug("%s send of %s failed: %s", self.channel.value, payload.get("op"), exc)

    def _handle_message(self, raw_message: str | bytes) -> None:
        self.state.last_message_at = datetime.now(timezone.utc)
        for update in parse_frame(raw_message):
            self.deliver(update)

    def deliver(self, update: TickerUpdate) -> None:
        bucket = self._subscribers.get(update.symbol)
        if not bucket:
            return
        if self.store is not None:
            self.store.merge(update.symbol, update.fields)
        for callback in list(bucket):
            try:
                callback(update)
            except Exception as exc:
                LOGGER.warning("Tick callback for %s failed: %s", update.symbol, exc)


class MarketDataMultiplexer:
    """Routes subscriptions to one ``ChannelConnection`` per channel class."""

    def __init__(
        self,
        urls: dict[ChannelClass, str],
        *,
        store: QuoteSnapshotStore | None = None,
        connect: Callable[..., Any] = websockets.connect,
        capture_timeout_seconds: float = 0.5,
        **connection_options: Any,
    ) -> None:
        self.urls = dict(urls)
        self.store = store
        self.capture_timeout_seconds = capture_timeout_seconds
        self._connect = connect
        self._connection_options = connection_options
        self._connections: dict[ChannelClass, ChannelConnection] = {}

    @classmethod
    def from_config(
        cls,
        config: MarketFeedConfig,
        *,
        store: QuoteSnapshotStore | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> "MarketDataMultiplexer":
        return cls(
            {
                ChannelClass.OPTION: config.option_ws_url,
                ChannelClass.SPOT: config.spot_ws_url,
                ChannelClass.LINEAR: config.linear_ws_url,
            },
            store=store,
            connect=connect,
            capture_timeout_seconds=config.capture_timeout_seconds,
            reconnect_floor_seconds=config.reconnect_floor_seconds,
            reconnect_factor=config.reconnect_factor,
            reconnect_ceiling_seconds=config.reconnect_ceiling_seconds,
            ping_interval_seconds=config.ping_interval_seconds,
        )

    def connection(self, channel: ChannelClass) -> ChannelConnection:
        channel = ChannelClass(channel)
        conn = self._connections.get(channel)
        if conn is None:
            conn = ChannelConnection(
                channel,
                url=self.urls[channel],
                store=self.store,
                connect=self._connect,
                **self._connection_options,
            )
            self._connections[channel] = conn
        return conn

    def subscribe(self, channel: ChannelClass, symbol: str, callback: TickCallback) -> Callable[[], None]:
        return self.connection(channel).subscribe(symbol, callback)

    async def capture_latest_tick(
        self, channel: ChannelClass, symbol: str, timeout: float | None = None
    ) -> Optional[TickerUpdate]:
        """Wait for the next tick on *symbol*, or ``None`` after *timeout* seconds (default: the configured capture timeout)."""
        if timeout is None:
            timeout = self.capture_timeout_seconds
        future: asyncio.Future[TickerUpdate] = asyncio.get_running_loop().create_future()

        def on_tick(update: TickerUpdate) -> None:
            if not future.done():
                future.set_result(update)

        unsubscribe = self.subscribe(channel, symbol, on_tick)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            unsubscribe()

    def get_stream_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "channel": conn.state.channel,
                "status": conn.state.status,
                "lastHeartbeatAt": conn.state.last_heartbeat_at.isoformat() if conn.state.last_heartbeat_at else None,
                "lastMessageAt": conn.state.last_message_at.isoformat() if conn.state.last_message_at else None,
                "reconnectAttempt": conn.state.reconnect_attempt,
                "subscriptionCount": conn.state.subscription_count,
                "lastError": conn.state.last_error,
            }
            for conn in self._connections.values()
        ]

    async def close(self) -> None:
        for conn in list(self._connections.values()):
            await conn.close()
