from typing import Dict, List, Optional

import pytest

from hlcopy.core.gateway import ExchangeGateway
from hlcopy.core.models import AccountEquity, FillEvent, OrderAck, Position, Side
from hlcopy.notifications.base import NotificationSink
from hlcopy.utils.config import Config
from hlcopy.utils.errors import NetworkError

OURS = "0x1111111111111111111111111111111111111111"
TARGET = "0x2222222222222222222222222222222222222222"
TEST_KEY = "0x" + "11" * 32


def make_fill(coin="BTC", direction="Open Long", size="1", price="50000", side=None, start="0", **kw) -> FillEvent:
    if side is None:
        side = Side.BID if direction in ("Open Long", "Close Short") else Side.ASK
    return FillEvent(
        coin=coin,
        price=price,
        size=size,
        side=side,
        direction=direction,
        start_position=start,
        timestamp=kw.pop("timestamp", 1700000000000),
        hash=kw.pop("hash", "0xabc"),
        **kw,
    )


def make_config(**overrides) -> Config:
    data = {"private_key": TEST_KEY, "target_wallet": TARGET}
    data.update(overrides)
    return Config(**data)


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class FakeGateway(ExchangeGateway):
    def __init__(self, equities: Optional[Dict[str, str]] = None, positions=None, address: str = OURS):
        self._address = address
        self.equities = equities or {}
        self.positions: Dict[str, List[Position]] = positions or {}
        self.equity_failures = 0
        self.order_results: list = []
        self.orders = []
        self.leverage_calls = []
        self.leverage_error: Optional[Exception] = None
        self.on_fill = None
        self.on_fatal = None
        self.unsubscribed = False

    @property
    def address(self) -> str:
        return self._address

    async def get_account_equity(self, address: str) -> AccountEquity:
        if self.equity_failures:
            self.equity_failures -= 1
            raise NetworkError("connection reset")
        return AccountEquity(account_value=self.equities.get(address, "0"))

    async def get_positions(self, address: str) -> List[Position]:
        return list(self.positions.get(address, []))

    async def update_leverage(self, coin: str, leverage: int, is_cross: bool = False) -> None:
        self.leverage_calls.append((coin, leverage, is_cross))
        if self.leverage_error is not None:
            raise self.leverage_error

    async def place_order(self, request) -> OrderAck:
        self.orders.append(request)
        if self.order_results:
            result = self.order_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return OrderAck(resting_oid=len(self.orders))

    async def subscribe_fills(self, address, on_fill, on_fatal=None):
        self.on_fill = on_fill
        self.on_fatal = on_fatal

        async def unsubscribe():
            self.unsubscribed = True

        return unsubscribe


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    async def startup(self, info):
        self.events.append(("startup", info))

    async def shutdown(self):
        self.events.append(("shutdown",))

    async def trade_copied(self, fill, params, result):
        self.events.append(("trade_copied", fill, params, result))

    async def error(self, message, context=None):
        self.events.append(("error", message, context))

    async def health_check(self, result):
        self.events.append(("health_check", result))

    def of(self, kind: str):
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def sink():
    return RecordingSink()
