from pathlib import Path
import csv
import time
from typing import Optional

from ..core.models import CopyTradeParams, FillEvent, TradeResult
from .base import NotificationSink

HEADER = [
    "ts", "coin", "direction", "target_size", "target_price",
    "side", "size", "leverage", "reduce_only", "success", "order_id", "error",
]


class TradeJournalSink(NotificationSink):
    """Appends one CSV row per executed copy. Write-only audit trail."""

    def __init__(self, path: str = "logs/copied_trades.csv"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def _ensure_header(self):
        if not self.path.exists() or self.path.stat().st_size == 0:
            with self.path.open("w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(HEADER)

    def log_trade(self, fill: FillEvent, params: CopyTradeParams, result: TradeResult, ts: Optional[float] = None):
        with self.path.open("a", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow([
                ts or time.time(),
                params.coin,
                fill.direction,
                fill.size,
                fill.price,
                params.side.value,
                params.size,
                params.leverage,
                params.reduce_only,
                result.success,
                result.order_id or "",
                result.error or "",
            ])

    async def trade_copied(self, fill: FillEvent, params: CopyTradeParams, result: TradeResult) -> None:
        self.log_trade(fill, params, result)
