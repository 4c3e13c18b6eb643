import pytest

from hlcopy.core.executor import DRY_RUN_ORDER_ID, OrderExecutor
from hlcopy.core.models import CopyTradeParams, OrderAck, Side
from hlcopy.utils.errors import NetworkError, TradingError

from conftest import FakeGateway


def params(**kw):
    base = {"coin": "ETH", "side": Side.BID, "size": "1.500", "leverage": 1}
    base.update(kw)
    return CopyTradeParams(**base)


@pytest.mark.asyncio
async def test_dry_run_never_touches_gateway(fake_sleep):
    gw = FakeGateway()
    result = await OrderExecutor(gw, dry_run=True, sleep=fake_sleep).execute(params(leverage=5), "2000")
    assert result.success
    assert result.order_id == DRY_RUN_ORDER_ID
    assert gw.orders == []
    assert gw.leverage_calls == []


@pytest.mark.asyncio
async def test_places_canonical_order(fake_sleep):
    gw = FakeGateway()
    gw.order_results = [OrderAck(resting_oid=77)]
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(), "2000.0")
    assert result.success and result.order_id == "77"
    request = gw.orders[0]
    assert request.size == "1.5"
    assert request.reference_price == "2000"
    assert request.time_in_force == "Gtc"
    assert gw.leverage_calls == []


@pytest.mark.asyncio
async def test_filled_branch_gives_order_id(fake_sleep):
    gw = FakeGateway()
    gw.order_results = [OrderAck(filled_oid=9, filled_size="1.5", average_price="2001")]
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(), "2000")
    assert result.order_id == "9"


@pytest.mark.asyncio
async def test_leverage_failure_does_not_block_order(fake_sleep):
    gw = FakeGateway()
    gw.leverage_error = TradingError("leverage rejected")
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(leverage=5), "2000")
    assert gw.leverage_calls == [("ETH", 5, False)]
    assert result.success


@pytest.mark.asyncio
async def test_transient_failures_are_retried(fake_sleep):
    gw = FakeGateway()
    gw.order_results = [NetworkError("timeout"), TradingError("ambiguous", retryable=True), OrderAck(resting_oid=3)]
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(), "2000")
    assert result.success and result.order_id == "3"
    assert len(gw.orders) == 3
    assert fake_sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rejection_is_not_retried(fake_sleep):
    gw = FakeGateway()
    gw.order_results = [TradingError("Order rejected: insufficient margin")]
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(), "2000")
    assert not result.success
    assert result.error == "Order rejected: insufficient margin"
    assert len(gw.orders) == 1


@pytest.mark.asyncio
async def test_missing_order_id_exhausts_retries(fake_sleep):
    gw = FakeGateway()
    gw.order_results = [OrderAck(), OrderAck(), OrderAck()]
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(), "2000")
    assert not result.success
    assert "no order id" in result.error
    assert len(gw.orders) == 3


@pytest.mark.asyncio
async def test_zero_size_fails_without_call(fake_sleep):
    gw = FakeGateway()
    result = await OrderExecutor(gw, sleep=fake_sleep).execute(params(size="0.000"), "2000")
    assert not result.success
    assert gw.orders == []
