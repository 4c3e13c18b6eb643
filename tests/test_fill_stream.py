import asyncio
import json
from contextlib import asynccontextmanager
from types import SimpleNamespace

import aiohttp
import pytest

from hlcopy.core.models import FillEvent
from hlcopy.exchange.fill_stream import FillStream, StreamState
from hlcopy.utils.errors import WebSocketError
from hlcopy.utils.retry import BackoffPolicy

from conftest import TARGET

RAW_FILL = {
    "coin": "ETH",
    "px": "2000.50",
    "sz": "0.10",
    "side": "B",
    "dir": "Open Long",
    "startPosition": "0.0",
    "time": 1700000000000,
    "hash": "0xfeed",
    "oid": 42,
    "closedPnl": "0.0",
    "fee": "0.1",
    "crossed": True,
}


def text(payload):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload))


class FakeWS:
    def __init__(self, messages):
        self.messages = list(messages)
        self.sent = []
        self.closed = asyncio.Event()

    async def send_json(self, data):
        self.sent.append(data)

    async def receive(self):
        if self.messages:
            return self.messages.pop(0)
        await self.closed.wait()
        return SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None)

    async def close(self):
        self.closed.set()


def connector_for(ws):
    @asynccontextmanager
    async def connect():
        yield ws

    return connect


@pytest.mark.asyncio
async def test_delivers_live_fills_and_skips_snapshots(fake_sleep):
    ws = FakeWS([
        text({"channel": "subscriptionResponse", "data": {}}),
        text({"channel": "userFills", "data": {"isSnapshot": True, "user": TARGET, "fills": [RAW_FILL]}}),
        SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data="not json"),
        text({"channel": "userFills", "data": {"user": TARGET, "fills": [RAW_FILL, {"coin": "BTC"}]}}),
    ])
    received = []
    done = asyncio.Event()

    def on_fill(fill):
        received.append(fill)
        done.set()

    stream = FillStream("wss://example", ping_interval=3600, connector=connector_for(ws), sleep=fake_sleep)
    unsubscribe = await stream.subscribe(TARGET, on_fill)
    await asyncio.wait_for(done.wait(), timeout=5)

    assert ws.sent[0] == {"method": "subscribe", "subscription": {"type": "userFills", "user": TARGET}}
    assert stream.state is StreamState.SUBSCRIBED
    assert len(received) == 1
    fill = received[0]
    assert (fill.coin, fill.price, fill.size, fill.start_position) == ("ETH", "2000.5", "0.1", "0")
    assert stream.messages_dropped == 2

    await unsubscribe()
    assert stream.state is StreamState.CLOSED
    assert fake_sleep.calls == []


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_stream(fake_sleep):
    ws = FakeWS([
        text({"channel": "userFills", "data": {"user": TARGET, "fills": [RAW_FILL, dict(RAW_FILL, coin="SOL")]}}),
    ])
    seen = []
    done = asyncio.Event()

    async def on_fill(fill):
        seen.append(fill.coin)
        if fill.coin == "ETH":
            raise RuntimeError("handler bug")
        done.set()

    stream = FillStream("wss://example", ping_interval=3600, connector=connector_for(ws), sleep=fake_sleep)
    await stream.subscribe(TARGET, on_fill)
    await asyncio.wait_for(done.wait(), timeout=5)
    assert seen == ["ETH", "SOL"]
    assert stream.fills_dispatched == 1
    await stream.unsubscribe()


def test_from_wire_raises_value_error_only():
    assert FillEvent.from_wire(RAW_FILL).oid == 42
    for bad in (dict(RAW_FILL, oid={"x": 1}), dict(RAW_FILL, time=None), {"coin": "ETH"}, "fill"):
        with pytest.raises(ValueError):
            FillEvent.from_wire(bad)


@pytest.mark.asyncio
async def test_malformed_messages_keep_connection(fake_sleep):
    ws = FakeWS([
        text({"channel": "userFills", "data": {"user": TARGET, "fills": [dict(RAW_FILL, oid={"x": 1})]}}),
        text({"channel": "userFills", "data": {"user": TARGET, "fills": 5}}),
        text({"channel": "userFills", "data": {"isSnapshot": True, "user": TARGET, "fills": 5}}),
        text({"channel": "userFills", "data": "nope"}),
        text({"channel": "userFills", "data": {"user": TARGET, "fills": [RAW_FILL]}}),
    ])
    connects = []

    @asynccontextmanager
    async def connect():
        connects.append(1)
        yield ws

    received = []
    done = asyncio.Event()

    def on_fill(fill):
        received.append(fill)
        done.set()

    stream = FillStream("wss://example", ping_interval=3600, connector=connect, sleep=fake_sleep)
    await stream.subscribe(TARGET, on_fill)
    await asyncio.wait_for(done.wait(), timeout=5)

    assert len(connects) == 1
    assert fake_sleep.calls == []
    assert stream.state is StreamState.SUBSCRIBED
    assert [f.oid for f in received] == [42]
    assert stream.messages_dropped == 4
    await stream.unsubscribe()


@pytest.mark.asyncio
async def test_exhausted_reconnects_fail_once(fake_sleep):
    attempts = []

    @asynccontextmanager
    async def refuse():
        attempts.append(1)
        raise ConnectionRefusedError("nope")
        yield  # pragma: no cover

    fatal = []
    policy = BackoffPolicy(initial_delay=1.0, max_delay=30.0, multiplier=2.0, max_attempts=3)
    stream = FillStream("wss://example", policy=policy, on_fatal=fatal.append, connector=refuse, sleep=fake_sleep)
    await stream.subscribe(TARGET, lambda fill: None)
    await asyncio.wait_for(stream._task, timeout=5)

    assert stream.state is StreamState.FAILED
    assert len(fatal) == 1
    assert isinstance(fatal[0], WebSocketError)
    assert str(fatal[0]) == "Max reconnection attempts reached"
    assert fake_sleep.calls == [1.0, 2.0, 4.0]
    assert len(attempts) == 4
    await stream.unsubscribe()


@pytest.mark.asyncio
async def test_successful_subscribe_resets_attempts(fake_sleep):
    calls = []
    first = FakeWS([SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None)])
    second = FakeWS([])

    @asynccontextmanager
    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionResetError("reset")
        yield first if len(calls) == 2 else second

    stream = FillStream("wss://example", ping_interval=3600, connector=flaky, sleep=fake_sleep)
    await stream.subscribe(TARGET, lambda fill: None)
    for _ in range(100):
        if len(calls) >= 3 and stream.state is StreamState.SUBSCRIBED:
            break
        await asyncio.sleep(0)
    assert stream.attempt == 0
    assert fake_sleep.calls == [1.0, 1.0]
    await stream.unsubscribe()


@pytest.mark.asyncio
async def test_rejects_bad_url_and_double_subscribe(fake_sleep):
    with pytest.raises(WebSocketError):
        await FillStream("http://example").subscribe(TARGET, lambda fill: None)

    stream = FillStream("wss://example", ping_interval=3600, connector=connector_for(FakeWS([])), sleep=fake_sleep)
    await stream.subscribe(TARGET, lambda fill: None)
    with pytest.raises(WebSocketError):
        await stream.subscribe(TARGET, lambda fill: None)
    await stream.unsubscribe()
