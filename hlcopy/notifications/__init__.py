from .base import CompositeSink, NotificationSink, NullSink
from .telegram import TelegramSink
from .trade_journal import TradeJournalSink

__all__ = [
    "NotificationSink",
    "NullSink",
    "CompositeSink",
    "TelegramSink",
    "TradeJournalSink",
]
