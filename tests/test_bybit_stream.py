from __future__ import annotations

import asyncio
from typing import Any

import pytest

from core.market_data import normalize_iv_percent
from core.quote_store import QuoteSnapshotStore
from models.market import TickerUpdate
from streaming.bybit_ws import (
    ChannelClass,
    ChannelConnection,
    MarketDataMultiplexer,
    build_control_frame,
    parse_frame,
    topics_for,
)
from tests.factories import FakeConnect, FakeConnection, FakeWebSocket, settle

SYM = "ETH-29DEC23-2000-C-USDT"
OTHER = "ETH-29DEC23-2100-C-USDT"
URLS = {
    ChannelClass.OPTION: "wss://example.test/v5/public/option",
    ChannelClass.SPOT: "wss://example.test/v5/public/spot",
    ChannelClass.LINEAR: "wss://example.test/v5/public/linear",
}


def _ticker_frame(symbol: str = SYM, **fields: Any) -> dict[str, Any]:
    data = {"symbol": symbol, "bid1Price": "10.5", "ask1Price": "11.5", "markPrice": "11", "markIv": "0.65"}
    data.update(fields)
    return {"topic": f"tickers.{symbol}", "type": "snapshot", "data": data}


class _FlakyConnect:
    def __init__(self, websocket: FakeWebSocket, failures: int) -> None:
        self.websocket = websocket
        self.failures = failures

    def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        return FakeConnection(self.websocket)


class _RecordingConnection(ChannelConnection):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.delays: list[float] = []

    async def _wait_before_reconnect(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) >= 3:
            self._stop_event.set()
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Frame parsing
# ---------------------------------------------------------------------------


class TestParseFrame:
    def test_ticker_frame_normalises_fields(self) -> None:
        updates = parse_frame(
            _ticker_frame(underlyingPrice="2000", delta="0.45", openInterest="120", price24hPcnt="-0.02")
        )

        assert len(updates) == 1
        update = updates[0]
        assert update.symbol == SYM
        assert update.kind == "ticker"
        assert update.fields["bid"] == 10.5
        assert update.fields["ask"] == 11.5
        assert update.fields["mark_iv"] == pytest.approx(65.0)
        assert update.fields["index_price"] == 2000.0
        assert update.fields["delta"] == 0.45
        assert update.fields["open_interest"] == 120.0
        assert update.fields["change_24h"] == -0.02

    def test_ticker_symbol_falls_back_to_topic(self) -> None:
        frame = {"topic": f"tickers.{SYM}", "data": {"markPrice": "3.0"}}

        updates = parse_frame(frame)

        assert updates[0].symbol == SYM
        assert updates[0].fields == {"mark_price": 3.0}

    def test_orderbook_frame_yields_best_levels_only(self) -> None:
        frame = {
            "topic": f"orderbook.1.{SYM}",
            "type": "snapshot",
            "data": {"s": SYM, "b": [["10.0", "5"]], "a": [["12.0", "3"]], "u": 10},
        }

        updates = parse_frame(frame)

        assert len(updates) == 1
        assert updates[0].symbol == SYM
        assert updates[0].kind == "orderbook"
        assert updates[0].fields == {"ob_bid": 10.0, "ob_ask": 12.0}

    def test_orderbook_skips_empty_sides(self) -> None:
        frame = {"topic": f"orderbook.1.{SYM}", "data": {"b": [], "a": [["12.0", "3"]]}}

        assert parse_frame(frame)[0].fields == {"ob_ask": 12.0}

    @pytest.mark.parametrize(
        "raw",
        ["not json", b"\xff\xfe", '{"op": "pong"}', '{"success": true, "op": "subscribe"}', "[1, 2]",
         '{"topic": "tickers.X", "data": "garbage"}'],
    )
    def test_malformed_or_control_frames_are_dropped(self, raw: Any) -> None:
        assert parse_frame(raw) == []


class TestIvNormalisation:
    def test_fraction_is_scaled_to_percent(self) -> None:
        assert normalize_iv_percent("0.65") == pytest.approx(65.0)
        assert normalize_iv_percent(3.0) == pytest.approx(300.0)

    def test_percent_passes_through(self) -> None:
        assert normalize_iv_percent(65) == 65.0

    def test_values_above_threshold_are_read_as_percent(self) -> None:
        # a genuine 350% IV delivered as a fraction is indistinguishable from 3.5%
        assert normalize_iv_percent(3.5) == 3.5

    def test_garbage_is_none(self) -> None:
        assert normalize_iv_percent(None) is None
        assert normalize_iv_percent("n/a") is None


def test_control_frame_lists_ticker_and_top_of_book_topics() -> None:
    assert build_control_frame("subscribe", [SYM]) == {
        "op": "subscribe",
        "args": [f"tickers.{SYM}", f"orderbook.1.{SYM}"],
    }


def test_backoff_is_monotonic_and_capped() -> None:
    conn = ChannelConnection(ChannelClass.OPTION, url=URLS[ChannelClass.OPTION])

    delays = [conn.compute_backoff_seconds(attempt) for attempt in range(1, 15)]

    assert delays[0] == 1.0
    assert delays[1] == pytest.approx(1.7)
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 15.0
    assert delays[-1] == 15.0


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reconnect_delays_grow_then_reset_after_open() -> None:
    websocket = FakeWebSocket()
    conn = _RecordingConnection(ChannelClass.OPTION, url=URLS[ChannelClass.OPTION], connect=_FlakyConnect(websocket, 2))

    conn.subscribe(SYM, lambda update: None)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    await settle()

    assert conn.state.status == "connected"
    assert conn.state.reconnect_attempt == 0
    assert websocket.ops("subscribe") == [{"op": "subscribe", "args": topics_for(SYM)}]

    websocket.push(None)
    await asyncio.wait_for(conn._task, timeout=1)

    assert conn.delays == [1.0, pytest.approx(1.7), 1.0]
    assert conn.state.status == "disconnected"


@pytest.mark.asyncio
async def test_reconnect_resubscribes_only_live_symbols() -> None:
    first_ws, second_ws = FakeWebSocket(), FakeWebSocket()
    conn = ChannelConnection(
        ChannelClass.OPTION,
        url=URLS[ChannelClass.OPTION],
        connect=FakeConnect(first_ws, second_ws),
        reconnect_floor_seconds=0.05,
    )

    unsubscribe_sym = conn.subscribe(SYM, lambda update: None)
    await asyncio.wait_for(first_ws.opened.wait(), timeout=1)
    await settle()

    first_ws.push(None)
    await settle()
    assert conn.is_open is False

    unsubscribe_sym()
    conn.subscribe(OTHER, lambda update: None)
    await asyncio.wait_for(second_ws.opened.wait(), timeout=1)
    await settle()

    assert first_ws.ops("unsubscribe") == []
    assert second_ws.ops("subscribe") == [{"op": "subscribe", "args": topics_for(OTHER)}]
    assert conn.symbols == [OTHER]

    await conn.close()


@pytest.mark.asyncio
async def test_refcounted_unsubscribe_waits_for_last_callback(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket))
    first: list[TickerUpdate] = []
    second: list[TickerUpdate] = []

    unsubscribe_first = mux.subscribe(ChannelClass.OPTION, SYM, first.append)
    unsubscribe_second = mux.subscribe(ChannelClass.OPTION, SYM, second.append)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    await settle()

    websocket.push(_ticker_frame())
    await settle()
    assert len(first) == 1
    assert len(second) == 1
    assert store.get(SYM).bid == 10.5

    unsubscribe_first()
    await settle()
    assert websocket.ops("unsubscribe") == []

    websocket.push(_ticker_frame(bid1Price="10.7"))
    await settle()
    assert len(first) == 1
    assert len(second) == 2

    unsubscribe_second()
    unsubscribe_second()
    await settle()
    assert websocket.ops("unsubscribe") == [{"op": "unsubscribe", "args": topics_for(SYM)}]
    assert mux.connection(ChannelClass.OPTION).symbols == []

    await mux.close()


@pytest.mark.asyncio
async def test_subscribe_while_open_sends_control_frame(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket))

    mux.subscribe(ChannelClass.OPTION, SYM, lambda update: None)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    await settle()
    mux.subscribe(ChannelClass.OPTION, OTHER, lambda update: None)
    await settle()

    assert [frame["args"] for frame in websocket.ops("subscribe")] == [topics_for(SYM), topics_for(OTHER)]

    await mux.close()


@pytest.mark.asyncio
async def test_frames_without_subscribers_are_dropped(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket))

    mux.subscribe(ChannelClass.OPTION, SYM, lambda update: None)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    websocket.push(_ticker_frame(symbol=OTHER))
    websocket.push({"op": "pong"})
    await settle()

    assert OTHER not in store

    await mux.close()


@pytest.mark.asyncio
async def test_failing_callback_does_not_starve_others(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket))
    received: list[TickerUpdate] = []

    def broken(update: TickerUpdate) -> None:
        raise ValueError("consumer bug")

    mux.subscribe(ChannelClass.OPTION, SYM, broken)
    mux.subscribe(ChannelClass.OPTION, SYM, received.append)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    websocket.push(_ticker_frame())
    await settle()

    assert len(received) == 1

    await mux.close()


@pytest.mark.asyncio
async def test_channel_classes_never_share_a_connection(store: QuoteSnapshotStore) -> None:
    option_ws, linear_ws = FakeWebSocket(), FakeWebSocket()
    connect = FakeConnect(option_ws, linear_ws)
    mux = MarketDataMultiplexer(URLS, store=store, connect=connect)

    unsubscribe_option = mux.subscribe(ChannelClass.OPTION, "ETHUSDT", lambda update: None)
    await asyncio.wait_for(option_ws.opened.wait(), timeout=1)
    mux.subscribe(ChannelClass.LINEAR, "ETHUSDT", lambda update: None)
    await asyncio.wait_for(linear_ws.opened.wait(), timeout=1)
    await settle()

    assert connect.urls == [URLS[ChannelClass.OPTION], URLS[ChannelClass.LINEAR]]
    assert mux.connection(ChannelClass.OPTION) is not mux.connection(ChannelClass.LINEAR)

    unsubscribe_option()
    await settle()
    assert option_ws.ops("unsubscribe") == [{"op": "unsubscribe", "args": topics_for("ETHUSDT")}]
    assert linear_ws.ops("unsubscribe") == []
    assert mux.connection(ChannelClass.LINEAR).subscriber_count("ETHUSDT") == 1

    await mux.close()


@pytest.mark.asyncio
async def test_heartbeat_sends_ping_and_session_state_is_reported(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket), ping_interval_seconds=0.01)

    mux.subscribe(ChannelClass.SPOT, "ETHUSDT", lambda update: None)
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    await asyncio.sleep(0.05)

    assert websocket.ops("ping")
    sessions = mux.get_stream_sessions()
    assert sessions[0]["channel"] == "spot"
    assert sessions[0]["status"] == "connected"
    assert sessions[0]["subscriptionCount"] == 1
    assert sessions[0]["lastHeartbeatAt"] is not None

    await mux.close()
    assert mux.get_stream_sessions()[0]["status"] == "disconnected"


# ---------------------------------------------------------------------------
# capture_latest_tick
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_capture_latest_tick_times_out_and_unsubscribes(store: QuoteSnapshotStore) -> None:
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(FakeWebSocket()))

    result = await mux.capture_latest_tick(ChannelClass.OPTION, SYM, timeout=0.05)

    assert result is None
    assert mux.connection(ChannelClass.OPTION).subscriber_count(SYM) == 0

    await mux.close()


@pytest.mark.asyncio
async def test_capture_latest_tick_returns_next_tick(store: QuoteSnapshotStore) -> None:
    websocket = FakeWebSocket()
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(websocket))

    capture = asyncio.create_task(mux.capture_latest_tick(ChannelClass.OPTION, SYM, timeout=1.0))
    await asyncio.wait_for(websocket.opened.wait(), timeout=1)
    await settle()
    websocket.push(_ticker_frame(markPrice="12.5"))

    result = await capture

    assert result is not None
    assert result.fields["mark_price"] == 12.5
    assert mux.connection(ChannelClass.OPTION).subscriber_count(SYM) == 0
    await settle()
    assert websocket.ops("unsubscribe") == [{"op": "unsubscribe", "args": topics_for(SYM)}]

    await mux.close()


@pytest.mark.asyncio
async def test_capture_latest_tick_defaults_to_configured_timeout(store: QuoteSnapshotStore) -> None:
    mux = MarketDataMultiplexer(URLS, store=store, connect=FakeConnect(FakeWebSocket()), capture_timeout_seconds=0.05)

    result = await asyncio.wait_for(mux.capture_latest_tick(ChannelClass.OPTION, SYM), timeout=1.0)

    assert result is None
    assert mux.connection(ChannelClass.OPTION).subscriber_count(SYM) == 0

    await mux.close()
