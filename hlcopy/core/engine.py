"""
Copy engine: target fills in, mirrored orders out.

Fills arrive from the stream callback and are queued; a single consumer task
handles them one at a time, in arrival order.  That consumer is the only code
that reads account state for sizing and the only writer of the ``TradeLedger``,
so two close fills can never interleave their snapshot -> size -> ledger steps.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from ..notifications.base import NotificationSink, NullSink
from ..risk.risk_engine import RiskEngine
from ..utils.config import Config
from ..utils.errors import CopyBotError, LedgerCapacityError, WebSocketError, format_error, wrap_error
from ..utils.retry import retry_async
from .executor import OrderExecutor
from .gateway import ExchangeGateway, Unsubscribe
from .health import HealthMonitor
from .ledger import TradeLedger
from .models import AccountEquity, FillEvent, Position, TradeAction, TradeResult

Snapshot = Tuple[AccountEquity, AccountEquity, List[Position], List[Position]]


class CopyEngine:
    def __init__(
        self,
        gateway: ExchangeGateway,
        config: Config,
        notifier: Optional[NotificationSink] = None,
        ledger: Optional[TradeLedger] = None,
        risk: Optional[RiskEngine] = None,
        executor: Optional[OrderExecutor] = None,
        health: Optional[HealthMonitor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.cfg = config
        self.our_address = gateway.address
        self.target_address = config.target_wallet
        self.notifier = notifier or NullSink()
        self.risk = risk or RiskEngine(config.risk)
        self.ledger = ledger or TradeLedger(config.risk.max_concurrent_trades)
        self.executor = executor or OrderExecutor(gateway, config.retry.policy(), dry_run=config.dry_run, sleep=sleep)
        self.health = health
        self._fetch_policy = config.retry.policy()
        self._sleep = sleep

        self._queue: "asyncio.Queue[Optional[FillEvent]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._stopping = False
        self.failed = asyncio.Event()
        self.fatal_error: Optional[CopyBotError] = None
        self.stats: Dict[str, int] = {"fills": 0, "copied": 0, "failed": 0, "skipped": 0, "rejected": 0}

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        logger.info(
            f"Starting copy engine: ours={self.our_address} target={self.target_address} dry_run={self.cfg.dry_run}"
        )
        self._worker = asyncio.create_task(self._consume(), name="copy-engine-worker")
        try:
            self._unsubscribe = await self.gateway.subscribe_fills(
                self.target_address, self._on_fill, on_fatal=self._on_stream_fatal
            )
        except Exception:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
            raise
        if self.health is not None:
            self.health.start()
        logger.info("Copy engine started, monitoring fills...")

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self._unsubscribe is not None:
            await self._unsubscribe()
            self._unsubscribe = None
        if self.health is not None:
            await self.health.stop()

        dropped = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is not None:
                dropped += 1
        if dropped:
            logger.warning(f"Dropped {dropped} queued fill(s) on shutdown")

        if self._worker is not None:
            # the in-flight fill (if any) finishes, including its order retries
            self._queue.put_nowait(None)
            await self._worker
            self._worker = None
        logger.info(f"Copy engine stopped ({self.stats})")

    @property
    def active_trades(self) -> int:
        return self.ledger.count()

    # ------------------------------------------------------------------
    # stream callbacks
    # ------------------------------------------------------------------
    def _on_fill(self, fill: FillEvent) -> None:
        if self._stopping:
            logger.warning(f"Ignoring fill for {fill.coin} received during shutdown")
            return
        self._queue.put_nowait(fill)

    async def _on_stream_fatal(self, error: Exception) -> None:
        error = wrap_error(error, "Fill stream failed", WebSocketError.code)
        self.fatal_error = error
        logger.critical(f"Fill stream is down for good, no new fills will be seen: {error}")
        await self._notify("error", str(error), {"component": "fill_stream", **error.context})
        self.failed.set()

    async def _consume(self) -> None:
        while True:
            fill = await self._queue.get()
            try:
                if fill is None:
                    return
                await self.handle_fill(fill)
            except Exception:
                logger.exception(f"Unhandled error while handling fill {getattr(fill, 'hash', None)}")
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # per-fill pipeline
    # ------------------------------------------------------------------
    async def _fetch(self, label: str, operation):
        return await retry_async(operation, self._fetch_policy, sleep=self._sleep, label=label)

    async def _snapshot(self) -> Snapshot:
        return await asyncio.gather(
            self._fetch("our equity", lambda: self.gateway.get_account_equity(self.our_address)),
            self._fetch("target equity", lambda: self.gateway.get_account_equity(self.target_address)),
            self._fetch("our positions", lambda: self.gateway.get_positions(self.our_address)),
            self._fetch("target positions", lambda: self.gateway.get_positions(self.target_address)),
        )

    async def handle_fill(self, fill: FillEvent) -> Optional[TradeResult]:
        """Mirror one fill. None means the fill was skipped on purpose or for lack of data."""
        self.stats["fills"] += 1
        log = logger.bind(coin=fill.coin, hash=fill.hash)
        log.info(
            f"Received fill: {fill.coin} {fill.direction} side={fill.side.value} sz={fill.size} "
            f"px={fill.price} start={fill.start_position} hash={fill.hash}"
        )
        action = self.risk.get_trade_action(fill)
        log.debug(f"Trade action for {fill.coin}: {action.value}")

        try:
            our_equity, target_equity, our_positions, target_positions = await self._snapshot()
            our_value = our_equity.value
            target_value = target_equity.value
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.stats["skipped"] += 1
            log.error(f"Skipping fill {fill.coin}: could not read account state: {format_error(exc)}")
            await self._notify(
                "error",
                f"Failed to read account state, fill skipped: {exc}",
                {"coin": fill.coin, "direction": fill.direction, "hash": fill.hash},
            )
            return None

        target_position = next((p for p in target_positions if p.coin == fill.coin), None)
        our_position = next((p for p in our_positions if p.coin == fill.coin), None)
        log.debug(
            f"Equity ours={our_value} target={target_value}; {fill.coin} position "
            f"ours={our_position.size if our_position else 0} target={target_position.size if target_position else 0}"
        )

        params = self.risk.build_trade_params(
            fill, action, our_value, target_value, target_position, self.ledger.count()
        )
        if params is None:
            self.stats["skipped"] += 1
            log.info(f"No trade for {fill.coin} ({action.value})")
            return None

        validation = self.risk.validate(params, fill.price, our_value)
        if not validation.valid:
            self.stats["rejected"] += 1
            log.warning(f"Trade for {fill.coin} rejected: {validation.reason}")
            return TradeResult(success=False, params=params, error=validation.reason)

        result = await self.executor.execute(params, fill.price)
        if result.success:
            self.stats["copied"] += 1
            self._record(action, fill.coin)
            log.info(f"Trade copied: {fill.coin} {action.value} oid={result.order_id} active={self.ledger.count()}")
        else:
            self.stats["failed"] += 1
            log.error(f"Trade execution failed for {fill.coin}: {result.error}")
        await self._notify("trade_copied", fill, params, result)
        return result

    def _record(self, action: TradeAction, coin: str) -> None:
        if action is TradeAction.OPEN:
            try:
                self.ledger.mark_opened(coin)
            except LedgerCapacityError as exc:
                logger.error(str(exc))
        elif action is TradeAction.CLOSE:
            self.ledger.mark_closed(coin)

    async def _notify(self, hook: str, *args) -> None:
        try:
            await getattr(self.notifier, hook)(*args)
        except Exception as exc:
            logger.error(f"Notification {hook} failed: {exc}")
