"""
Error taxonomy for the copy trader.

Every error carries a ``code`` and a ``retryable`` flag.  Retryable errors are
transient (network, SDK transport, rate limits, ambiguous order responses) and
may be retried locally a bounded number of times; everything else is terminal.
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Any, Dict, Optional


class CopyBotError(Exception):
    code = "COPYBOT_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context: Dict[str, Any] = dict(context or {})
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class SDKError(CopyBotError):
    code = "SDK_ERROR"
    default_retryable = True


class NetworkError(CopyBotError):
    code = "NETWORK_ERROR"
    default_retryable = True


class WebSocketError(NetworkError):
    code = "WEBSOCKET_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, context={**(context or {}), "type": "websocket"})


class RateLimitError(CopyBotError):
    code = "RATE_LIMIT_ERROR"
    default_retryable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context={**(context or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class TradingError(CopyBotError):
    """Order placement failure; ``retryable`` depends on the cause."""

    code = "TRADING_ERROR"

    def __init__(self, message: str, retryable: bool = False, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, retryable=retryable, context=context)


class ConfigError(CopyBotError):
    code = "CONFIG_ERROR"


class AccountError(CopyBotError):
    code = "ACCOUNT_ERROR"


class LedgerCapacityError(CopyBotError):
    code = "LEDGER_CAPACITY_ERROR"


# Foreign exceptions we treat as transient when they escape a library untyped.
TRANSIENT_ERROR_TYPES = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

TRANSIENT_PATTERNS = [
    "429",
    "too many requests",
    "rate limit",
    "temporarily",
    "service unavailable",
    "502",
    "503",
    "504",
    "connection reset",
    "connection refused",
    "timed out",
    "timeout",
    "network",
]


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, CopyBotError):
        return error.retryable
    if isinstance(error, TRANSIENT_ERROR_TYPES):
        return True
    text = str(error).lower()
    return any(pattern in text for pattern in TRANSIENT_PATTERNS)


def error_code(error: BaseException) -> str:
    if isinstance(error, CopyBotError):
        return error.code
    return "UNKNOWN_ERROR"


def format_error(error: BaseException, with_stack: bool = False) -> Dict[str, Any]:
    """Flatten an exception into a dict suitable for structured log fields."""
    out: Dict[str, Any] = {
        "message": str(error) or type(error).__name__,
        "code": error_code(error),
        "retryable": is_retryable(error),
        "context": dict(getattr(error, "context", {}) or {}),
    }
    if with_stack and error.__traceback__ is not None:
        out["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return out


def wrap_error(
    error: BaseException,
    default_message: str = "An error occurred",
    default_code: str = "UNKNOWN_ERROR",
) -> CopyBotError:
    if isinstance(error, CopyBotError):
        return error
    return CopyBotError(
        str(error) or default_message,
        retryable=is_retryable(error),
        context={"original_error": type(error).__name__},
        code=default_code,
    )
