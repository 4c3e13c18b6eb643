"""
Periodic drift check between our account and the target's.

Runs once immediately on ``start`` and then every ``interval`` seconds.  Each
cycle fetches both accounts' positions and equity concurrently, computes the
per-coin drift and reports it.  ``stop`` cancels the timer but lets a cycle
that is already running finish.
"""

import asyncio
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from ..notifications.base import NotificationSink, NullSink
from ..utils.errors import format_error
from ..utils.numeric import Number, canonical_decimal, to_decimal
from .gateway import ExchangeGateway
from .models import DriftEntry, HealthCheckResult, Position


def compute_drift(
    our_positions: List[Position],
    target_positions: List[Position],
    threshold: Number = Decimal("0.01"),
) -> Dict[str, DriftEntry]:
    threshold = to_decimal(threshold)
    ours = {p.coin: p.signed_size for p in our_positions}
    theirs = {p.coin for p in target_positions}
    drift: Dict[str, DriftEntry] = {}

    for pos in target_positions:
        target_size = pos.signed_size
        our_size = ours.get(pos.coin, Decimal(0))
        difference = abs(target_size - our_size)
        if difference > threshold:
            drift[pos.coin] = DriftEntry(
                our_size=canonical_decimal(our_size),
                target_size=canonical_decimal(target_size),
                difference=canonical_decimal(difference),
            )

    # positions we hold that the target does not: always reported
    for coin, our_size in ours.items():
        if coin not in theirs and our_size != 0:
            drift[coin] = DriftEntry(
                our_size=canonical_decimal(our_size),
                target_size="0",
                difference=canonical_decimal(abs(our_size)),
            )
    return drift


class HealthMonitor:
    def __init__(
        self,
        gateway: ExchangeGateway,
        our_address: str,
        target_address: str,
        interval: float = 300.0,
        drift_threshold: Number = Decimal("0.01"),
        notifier: Optional[NotificationSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.our_address = our_address
        self.target_address = target_address
        self.interval = interval
        self.drift_threshold = to_decimal(drift_threshold)
        self.notifier = notifier or NullSink()
        self._sleep = sleep
        self.last_result: Optional[HealthCheckResult] = None
        self._timer: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"Starting health checks every {self.interval / 60:g} minutes")
        self._timer = asyncio.create_task(self._loop(), name="health-monitor")

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        cycle = self._cycle
        if cycle is not None and not cycle.done():
            await asyncio.gather(cycle, return_exceptions=True)
        if timer is not None:
            logger.info("Health checks stopped")

    async def _loop(self) -> None:
        while True:
            self._cycle = asyncio.create_task(self._safe_check())
            # shield: cancelling the timer must not interrupt the cycle
            await asyncio.shield(self._cycle)
            await self._sleep(self.interval)

    async def _safe_check(self) -> Optional[HealthCheckResult]:
        try:
            return await self.check()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Health check failed: {format_error(exc)}")
            try:
                await self.notifier.error(f"Health check failed: {exc}", {"context": "health_check"})
            except Exception as notify_exc:
                logger.error(f"Failed to report health check failure: {notify_exc}")
            return None

    async def check(self) -> HealthCheckResult:
        our_positions, target_positions, our_equity, target_equity = await asyncio.gather(
            self.gateway.get_positions(self.our_address),
            self.gateway.get_positions(self.target_address),
            self.gateway.get_account_equity(self.our_address),
            self.gateway.get_account_equity(self.target_address),
        )
        drift = compute_drift(our_positions, target_positions, self.drift_threshold)
        result = HealthCheckResult(
            timestamp=int(time.time() * 1000),
            our_positions=list(our_positions),
            target_positions=list(target_positions),
            our_equity=our_equity.account_value,
            target_equity=target_equity.account_value,
            drift=drift,
        )
        self.last_result = result

        if drift:
            details = ", ".join(f"{c}: ours={d.our_size} target={d.target_size}" for c, d in sorted(drift.items()))
            logger.warning(
                f"Health check detected position drift on {len(drift)} coin(s): {details} "
                f"(our_equity={result.our_equity} target_equity={result.target_equity})"
            )
        else:
            logger.info(
                f"Health check passed: our_equity={result.our_equity} target_equity={result.target_equity} "
                f"positions={len(our_positions)}"
            )
        await self.notifier.health_check(result)
        return result
