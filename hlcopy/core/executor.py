"""
Order execution with retry/back-off and a dry-run short-circuit.

``OrderExecutor.execute`` never raises (task cancellation aside): every outcome,
including exhausted retries, comes back as a ``TradeResult``.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from ..utils.errors import TradingError, format_error, is_retryable
from ..utils.numeric import canonical_decimal, to_decimal
from ..utils.retry import BackoffPolicy, retry_async
from .gateway import ExchangeGateway
from .models import CopyTradeParams, OrderRequest, TradeResult

DRY_RUN_ORDER_ID = "dry-run-order-id"


class OrderExecutor:
    def __init__(
        self,
        gateway: ExchangeGateway,
        policy: BackoffPolicy = BackoffPolicy(),
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.policy = policy
        self.dry_run = dry_run
        self._sleep = sleep

    def _build_request(self, params: CopyTradeParams, price: Optional[str]) -> OrderRequest:
        size = canonical_decimal(params.size)
        if to_decimal(size) <= 0:
            raise TradingError("Invalid order parameters: size must be positive", retryable=False, context={"size": size})
        return OrderRequest(
            coin=params.coin,
            side=params.side,
            size=size,
            order_type=params.order_type,
            reduce_only=params.reduce_only,
            leverage=params.leverage,
            reference_price=canonical_decimal(price) if price is not None else None,
            time_in_force="Gtc",
        )

    async def _set_leverage(self, request: OrderRequest) -> None:
        try:
            await self.gateway.update_leverage(request.coin, request.leverage, is_cross=False)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # best effort: the order goes out at whatever leverage the account already has
            logger.warning(f"Failed to update leverage for {request.coin} to {request.leverage}x, continuing: {exc}")

    async def _place_once(self, request: OrderRequest) -> str:
        ack = await self.gateway.place_order(request)
        order_id = ack.order_id
        if order_id is None:
            raise TradingError(
                "Order placed but no order id in response",
                retryable=True,
                context={"coin": request.coin, "ack": ack},
            )
        return order_id

    async def execute(self, params: CopyTradeParams, price: Optional[str] = None) -> TradeResult:
        if self.dry_run:
            logger.info(
                f"DRY RUN: would place {params.order_type.value} {params.side.name} {params.size} {params.coin} "
                f"lev={params.leverage}x reduce_only={params.reduce_only} ref_px={price}"
            )
            return TradeResult(success=True, params=params, order_id=DRY_RUN_ORDER_ID)

        try:
            request = self._build_request(params, price)
        except (TradingError, ValueError) as exc:
            logger.error(f"Rejected order for {params.coin}: {exc}")
            return TradeResult(success=False, params=params, error=str(exc))

        if request.leverage > 1:
            await self._set_leverage(request)

        def on_retry(exc: BaseException, attempt: int, wait: float) -> None:
            logger.warning(
                f"Order attempt {attempt}/{self.policy.max_attempts} for {request.coin} failed: {exc} "
                f"(retry in {wait:.2f}s)"
            )

        logger.info(
            f"Placing {request.side.name} {request.size} {request.coin} reduce_only={request.reduce_only} "
            f"lev={request.leverage}x ref_px={request.reference_price}"
        )
        try:
            order_id = await retry_async(
                lambda: self._place_once(request),
                self.policy,
                is_retryable=is_retryable,
                on_retry=on_retry,
                sleep=self._sleep,
                label=f"order {request.coin}",
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Order for {request.coin} failed: {format_error(exc)}")
            return TradeResult(success=False, params=params, error=str(exc) or type(exc).__name__)

        logger.info(f"Order placed for {request.coin}: oid={order_id}")
        return TradeResult(success=True, params=params, order_id=order_id)
