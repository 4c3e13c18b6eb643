"""
Telegram chat alerts for copied trades, errors, drift reports and lifecycle
events.  Messages are Markdown formatted and posted to the Bot API with
``requests`` from a worker thread so the event loop never blocks.
"""

import asyncio
import time
from typing import Any, List, Mapping, Optional

import requests
from loguru import logger

from ..core.models import CopyTradeParams, FillEvent, HealthCheckResult, Side, TradeResult
from .base import NotificationSink

TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_MAX_LEN = 3900  # below the 4096 hard limit


def split_long_message(text: str, max_len: int = TELEGRAM_MAX_LEN) -> List[str]:
    """Split on blank lines, then on lines, so each part fits one message."""
    s = (text or "").strip()
    if not s:
        return []
    if len(s) <= max_len:
        return [s]

    parts: List[str] = []
    buf = ""
    for chunk in s.split("\n\n"):
        cand = f"{buf}\n\n{chunk}".strip() if buf else chunk.strip()
        if len(cand) <= max_len:
            buf = cand
            continue
        if buf:
            parts.append(buf)
            buf = ""
        if len(chunk) <= max_len:
            buf = chunk.strip()
            continue
        line_buf = ""
        for line in chunk.splitlines():
            cand2 = f"{line_buf}\n{line}" if line_buf else line
            if len(cand2) <= max_len:
                line_buf = cand2
            else:
                if line_buf:
                    parts.append(line_buf)
                line_buf = line[:max_len]
        if line_buf:
            parts.append(line_buf)
    if buf:
        parts.append(buf)
    return [p for p in parts if p.strip()]


def _short(address: str) -> str:
    return f"{address[:10]}..." if len(address) > 10 else address


def format_startup(info: Mapping[str, Any]) -> str:
    blocked = info.get("blocked_assets") or []
    return (
        "🚀 *Hyperliquid Copy Trader Started*\n\n"
        "*Configuration:*\n"
        f"• Testnet: {'Yes' if info.get('testnet') else 'No'}\n"
        f"• Dry Run: {'Yes' if info.get('dry_run') else 'No'}\n"
        f"• Target Wallet: `{_short(str(info.get('target_wallet', '')))}`\n"
        f"• Size Multiplier: {info.get('size_multiplier')}x\n"
        f"• Max Leverage: {info.get('max_leverage')}x\n"
        f"• Blocked Assets: {', '.join(blocked) if blocked else 'None'}\n\n"
        "Monitoring fills and ready to copy trades."
    )


def format_shutdown() -> str:
    return "🛑 *Copy Trader Shutting Down*\n\nCopy trading has stopped.\nAll positions remain open."


def format_trade(fill: FillEvent, params: CopyTradeParams, result: TradeResult) -> str:
    icon = "✅" if result.success else "❌"
    status = "*Success*" if result.success else "*Failed*"
    side_text = "📈 Buy" if params.side is Side.BID else "📉 Sell"
    lines = [
        f"{icon} *Trade Copied*",
        "",
        "*Target Trade:*",
        f"• Coin: `{fill.coin}`",
        f"• Direction: {fill.direction}",
        f"• Size: `{fill.size}`",
        f"• Price: `{fill.price}`",
        "",
        "*Our Trade:*",
        f"• Side: *{side_text}*",
        f"• Size: `{params.size}`",
        f"• Leverage: `{params.leverage}x`",
        f"• Reduce Only: {'Yes' if params.reduce_only else 'No'}",
        f"• Order Type: {params.order_type.value}",
        "",
        f"*Status:* {status}",
    ]
    if result.order_id:
        lines.append(f"• Order ID: `{result.order_id}`")
    if result.error:
        lines.append(f"• Error: `{result.error}`")
    lines += ["", f"_Time: {time.strftime('%Y-%m-%d %H:%M:%S')}_"]
    return "\n".join(lines)


def format_error(message: str, context: Optional[Mapping[str, Any]] = None) -> str:
    text = f"❌ *Error Occurred*\n\n```\n{message}\n```"
    if context:
        text += "\n\n*Context:*\n" + "\n".join(f"• {k}: `{v}`" for k, v in context.items())
    return text


def format_health(result: HealthCheckResult) -> str:
    if result.healthy:
        return (
            "💚 *Health Check Passed*\n\n"
            f"• Our Equity: `${result.our_equity}`\n"
            f"• Target Equity: `${result.target_equity}`\n"
            f"• Positions: {len(result.our_positions)}"
        )
    lines = [
        "⚠️ *Position Drift Detected*",
        "",
        f"• Our Equity: `${result.our_equity}`",
        f"• Target Equity: `${result.target_equity}`",
        "",
        "*Drift:*",
    ]
    for coin, entry in sorted(result.drift.items()):
        lines.append(f"• `{coin}`: ours `{entry.our_size}` vs target `{entry.target_size}` (Δ `{entry.difference}`)")
    return "\n".join(lines)


class TelegramSink(NotificationSink):
    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        notify_healthy: bool = False,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout
        self.notify_healthy = notify_healthy

    def _post(self, text: str) -> bool:
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        ok = True
        for part in split_long_message(text):
            payload = {
                "chat_id": self.chat_id,
                "text": part,
                "parse_mode": "Markdown",
                "disable_web_page_preview": True,
            }
            try:
                r = self.session.post(url, json=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.error(f"Telegram send exception: {exc}")
                return False
            if r.status_code != 200:
                logger.error(f"Telegram send failed: {r.status_code} {r.text[:300]}")
                ok = False
        return ok

    async def send(self, text: str) -> bool:
        return await asyncio.to_thread(self._post, text)

    async def startup(self, info: Mapping[str, Any]) -> None:
        await self.send(format_startup(info))

    async def shutdown(self) -> None:
        await self.send(format_shutdown())

    async def trade_copied(self, fill: FillEvent, params: CopyTradeParams, result: TradeResult) -> None:
        await self.send(format_trade(fill, params, result))
        logger.debug("Telegram trade notification sent")

    async def error(self, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        await self.send(format_error(message, context))

    async def health_check(self, result: HealthCheckResult) -> None:
        if result.healthy and not self.notify_healthy:
            return
        await self.send(format_health(result))
