from typing import Any, Iterable, List, Mapping, Optional

from loguru import logger

from ..core.models import CopyTradeParams, FillEvent, HealthCheckResult, TradeResult


class NotificationSink:
    """Outbound events of the copy engine. Every hook defaults to a no-op."""

    async def startup(self, info: Mapping[str, Any]) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    async def trade_copied(self, fill: FillEvent, params: CopyTradeParams, result: TradeResult) -> None:
        return None

    async def error(self, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        return None

    async def health_check(self, result: HealthCheckResult) -> None:
        return None


class NullSink(NotificationSink):
    pass


class CompositeSink(NotificationSink):
    """Fans every event out; a failing sink is logged and never breaks the others."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks: List[NotificationSink] = list(sinks)

    async def _fan_out(self, hook: str, *args) -> None:
        for sink in self.sinks:
            try:
                await getattr(sink, hook)(*args)
            except Exception as exc:
                logger.error(f"{type(sink).__name__}.{hook} failed: {exc}")

    async def startup(self, info: Mapping[str, Any]) -> None:
        await self._fan_out("startup", info)

    async def shutdown(self) -> None:
        await self._fan_out("shutdown")

    async def trade_copied(self, fill: FillEvent, params: CopyTradeParams, result: TradeResult) -> None:
        await self._fan_out("trade_copied", fill, params, result)

    async def error(self, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        await self._fan_out("error", message, dict(context or {}))

    async def health_check(self, result: HealthCheckResult) -> None:
        await self._fan_out("health_check", result)
