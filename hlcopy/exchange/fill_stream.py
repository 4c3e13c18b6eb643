"""
Websocket subscription to one address's ``userFills`` channel.

The connection is an explicit state machine::

    DISCONNECTED -> CONNECTING -> SUBSCRIBED
    SUBSCRIBED --(close/error)--> RECONNECTING -> CONNECTING
    RECONNECTING --(attempts exhausted)--> FAILED
    any --(unsubscribe)--> CLOSED

Reconnects back off exponentially (``BackoffPolicy``).  A successful subscribe
resets the attempt counter.  Running out of attempts is fatal: ``on_fatal`` is
called exactly once and the stream stops.
"""

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable, List, Optional
from urllib.parse import urlsplit

import aiohttp
from loguru import logger

from ..core.gateway import FatalCallback, FillCallback, Unsubscribe
from ..core.models import FillEvent
from ..utils.errors import WebSocketError
from ..utils.retry import BackoffPolicy

Connector = Callable[[], AsyncContextManager[Any]]

DEFAULT_STREAM_POLICY = BackoffPolicy(initial_delay=1.0, max_delay=30.0, multiplier=2.0, max_attempts=10)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class FillStream:
    def __init__(
        self,
        url: str,
        policy: BackoffPolicy = DEFAULT_STREAM_POLICY,
        ping_interval: float = 50.0,
        on_fatal: Optional[FatalCallback] = None,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.policy = policy
        self.ping_interval = ping_interval
        self.on_fatal = on_fatal
        self._connector = connector
        self._sleep = sleep

        self.state = StreamState.DISCONNECTED
        self.attempt = 0
        self.last_delay: Optional[float] = None
        self.fatal_error: Optional[WebSocketError] = None
        self.fills_dispatched = 0
        self.messages_dropped = 0

        self._address: Optional[str] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def subscribe(self, address: str, on_fill: FillCallback) -> Unsubscribe:
        if self._task is not None or self.state is not StreamState.DISCONNECTED:
            raise WebSocketError("Fill stream already started", {"address": address, "state": self.state.value})
        if self._connector is None:
            try:
                url = urlsplit(str(self.url))
                host = url.hostname
            except ValueError as exc:
                raise WebSocketError("Invalid websocket URL", {"url": self.url, "original_error": str(exc)}) from exc
            if url.scheme not in ("ws", "wss") or not host:
                raise WebSocketError("Invalid websocket URL", {"url": self.url})
            self._session = aiohttp.ClientSession()
            session = self._session
            self._connector = lambda: session.ws_connect(self.url, heartbeat=None, autoping=True)

        self._address = address
        self._task = asyncio.create_task(self._run(address, on_fill), name=f"fill-stream-{address[:10]}")
        logger.info(f"Fill stream started for {address} ({self.url})")
        return self.unsubscribe

    async def unsubscribe(self) -> None:
        if self.state is StreamState.CLOSED:
            return
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.warning(f"Error closing websocket: {exc}")
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None
        self.state = StreamState.CLOSED
        logger.info(f"Fill stream unsubscribed for {self._address}")

    @property
    def is_connected(self) -> bool:
        return self.state is StreamState.SUBSCRIBED

    # ------------------------------------------------------------------
    # connection loop
    # ------------------------------------------------------------------
    async def _run(self, address: str, on_fill: FillCallback) -> None:
        while not self._closing:
            self.state = StreamState.CONNECTING
            try:
                async with self._connector() as ws:
                    self._ws = ws
                    await ws.send_json({"method": "subscribe", "subscription": {"type": "userFills", "user": address}})
                    self.state = StreamState.SUBSCRIBED
                    if self.attempt:
                        logger.info(f"Fill stream reconnected after {self.attempt} attempt(s)")
                    self.attempt = 0
                    await self._pump(ws, on_fill)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Fill stream connection error ({type(exc).__name__}): {exc}")
            finally:
                self._ws = None

            if self._closing:
                break

            self.attempt += 1
            if self.attempt > self.policy.max_attempts:
                await self._fail(address)
                return
            delay = self.policy.delay_for(self.attempt)
            self.last_delay = delay
            self.state = StreamState.RECONNECTING
            logger.warning(f"Reconnection attempt {self.attempt}/{self.policy.max_attempts} in {delay:.1f}s")
            await self._sleep(delay)

    async def _fail(self, address: str) -> None:
        self.state = StreamState.FAILED
        self.fatal_error = WebSocketError(
            "Max reconnection attempts reached",
            {"address": address, "attempts": self.policy.max_attempts},
        )
        logger.error(f"Fill stream failed: {self.fatal_error} after {self.policy.max_attempts} attempts")
        if self.on_fatal is None:
            return
        try:
            result = self.on_fatal(self.fatal_error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("on_fatal handler raised")

    async def _keepalive(self, ws) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            await ws.send_json({"method": "ping"})

    async def _pump(self, ws, on_fill: FillCallback) -> None:
        pinger = asyncio.create_task(self._keepalive(ws))
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_text(msg.data, on_fill)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    logger.warning(f"Fill stream closed by peer (code={getattr(ws, 'close_code', None)})")
                    return
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Fill stream error frame: {msg.data!r}")
                    return
        finally:
            pinger.cancel()
            await asyncio.gather(pinger, return_exceptions=True)

    # ------------------------------------------------------------------
    # decoding / dispatch
    # ------------------------------------------------------------------
    async def _handle_text(self, data: str, on_fill: FillCallback) -> None:
        try:
            fills = self._decode(data)
        except (TypeError, ValueError) as exc:
            self.messages_dropped += 1
            logger.error(f"Dropping malformed websocket message: {exc} data={str(data)[:200]!r}")
            return
        for fill in fills:
            await self._dispatch(on_fill, fill)

    def _decode(self, data: str) -> List[FillEvent]:
        """Live fills in one text frame. Raises TypeError/ValueError on a malformed frame."""
        message = json.loads(data)
        if not isinstance(message, dict) or message.get("channel") != "userFills":
            return []

        payload = message.get("data")
        if isinstance(payload, dict):
            fills = payload.get("fills") or []
            if not isinstance(fills, list):
                raise ValueError(f"userFills.fills is not a list: {str(fills)[:100]!r}")
            if payload.get("isSnapshot"):
                logger.info(f"Skipping snapshot of {len(fills)} historical fill(s)")
                return []
            user = payload.get("user")
            if user and self._address and str(user).lower() != self._address.lower():
                return []
        elif isinstance(payload, list):
            fills = payload
        else:
            raise ValueError(f"unexpected userFills payload: {str(payload)[:200]!r}")

        decoded: List[FillEvent] = []
        for raw in fills:
            try:
                decoded.append(FillEvent.from_wire(raw))
            except (TypeError, ValueError) as exc:
                self.messages_dropped += 1
                logger.error(f"Dropping malformed fill: {exc}")
        return decoded

    async def _dispatch(self, on_fill: FillCallback, fill: FillEvent) -> None:
        try:
            result = on_fill(fill)
            if inspect.isawaitable(result):
                await result
            self.fills_dispatched += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Error in fill callback for {fill.coin} (hash={fill.hash})")
