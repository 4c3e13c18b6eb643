import csv

import pytest
import requests

from hlcopy.core.models import CopyTradeParams, DriftEntry, HealthCheckResult, Side, TradeResult
from hlcopy.notifications import CompositeSink, TelegramSink, TradeJournalSink
from hlcopy.notifications.telegram import format_error, format_health, format_trade, split_long_message

from conftest import RecordingSink, make_fill


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.posts = []
        self.response = response or FakeResponse()
        self.error = error

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.error is not None:
            raise self.error
        return self.response


def trade():
    fill = make_fill(coin="ETH", direction="Open Long", size="2", price="2000")
    params = CopyTradeParams(coin="ETH", side=Side.BID, size="1", leverage=3)
    return fill, params, TradeResult(success=True, params=params, order_id="123")


def test_split_long_message_keeps_parts_under_limit():
    text = "\n\n".join(["x" * 30] * 10)
    parts = split_long_message(text, max_len=70)
    assert all(len(p) <= 70 for p in parts)
    assert "".join(parts).count("x") == 300
    assert split_long_message("   ") == []


def test_trade_message_has_both_sides():
    text = format_trade(*trade())
    assert "✅ *Trade Copied*" in text
    assert "`ETH`" in text
    assert "📈 Buy" in text
    assert "Order ID: `123`" in text


def test_error_and_drift_messages():
    assert "*Context:*" in format_error("boom", {"coin": "BTC"})
    result = HealthCheckResult(
        timestamp=0,
        our_positions=[],
        target_positions=[],
        our_equity="100",
        target_equity="200",
        drift={"BTC": DriftEntry(our_size="0", target_size="1", difference="1")},
    )
    assert "Position Drift Detected" in format_health(result)


@pytest.mark.asyncio
async def test_telegram_posts_markdown():
    session = FakeSession()
    sink = TelegramSink("token", "chat", session=session)
    await sink.trade_copied(*trade())
    url, payload = session.posts[0]
    assert url.endswith("/bottoken/sendMessage")
    assert payload["chat_id"] == "chat"
    assert payload["parse_mode"] == "Markdown"


@pytest.mark.asyncio
async def test_telegram_skips_healthy_reports_and_survives_errors():
    session = FakeSession(error=requests.ConnectionError("down"))
    sink = TelegramSink("token", "chat", session=session)
    healthy = HealthCheckResult(timestamp=0, our_positions=[], target_positions=[], our_equity="1", target_equity="1")
    await sink.health_check(healthy)
    assert session.posts == []
    assert await sink.send("hello") is False


@pytest.mark.asyncio
async def test_journal_appends_rows(tmp_path):
    path = tmp_path / "trades" / "copied.csv"
    sink = TradeJournalSink(str(path))
    await sink.trade_copied(*trade())
    rows = list(csv.reader(path.open()))
    assert rows[0][:3] == ["ts", "coin", "direction"]
    assert rows[1][1:4] == ["ETH", "Open Long", "2"]
    assert rows[1][-3:] == ["True", "123", ""]


@pytest.mark.asyncio
async def test_composite_isolates_failing_sink():
    class Broken(RecordingSink):
        async def error(self, message, context=None):
            raise RuntimeError("sink down")

    good = RecordingSink()
    await CompositeSink([Broken(), good]).error("boom", {"a": 1})
    assert good.of("error") == [("error", "boom", {"a": 1})]
