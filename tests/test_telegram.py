"""Tests for Telegram notification module."""

from __future__ import annotations

import re
from datetime import date

import httpx
import pytest

from tests.helpers import T0
from vpp_trading.arbitrage.detector import ArbitrageOpportunity, ArbitrageType
from vpp_trading.arbitrage.engine import ArbitrageSummary, OpportunityResult
from vpp_trading.notifications.telegram import (
    escape_md,
    format_arbitrage_summary,
    format_tick_alert,
    send_error_alert,
    send_message,
    send_settlement_summary,
)
from vpp_trading.scheduler.strategy_scheduler import TickSummary
from vpp_trading.settlement.settler import AutoSettleSummary
from vpp_trading.store.models import SettlementRecord

# Telegram Markdown V1 の特殊文字: _ * [ `
# エスケープ済み (\_ \[ 等) は許可、未エスケープの _ [ は不許可
_UNESCAPED_UNDERSCORE = re.compile(r"(?<!\\)_")
_UNESCAPED_BRACKET = re.compile(r"(?<!\\)\[")


def assert_telegram_markdown_safe(text: str) -> None:
    """Assert text has no unescaped _ or [ outside of intentional Markdown.

    Market names such as JEPX_TOKYO contain underscores that Telegram would
    read as italic markers and reject with HTTP 400.
    """
    asterisks = text.count("*") - text.count("\\*")
    assert asterisks % 2 == 0, f"Unbalanced * in Telegram message: {text!r}"
    assert not _UNESCAPED_UNDERSCORE.findall(text), f"Unescaped underscore in: {text!r}"
    assert not _UNESCAPED_BRACKET.findall(text), f"Unescaped bracket in: {text!r}"


@pytest.fixture()
def configured(monkeypatch):
    monkeypatch.setattr("vpp_trading.notifications.telegram.settings.telegram_bot_token", "fake-token")
    monkeypatch.setattr("vpp_trading.notifications.telegram.settings.telegram_chat_id", "12345")


def _capture_posts(monkeypatch) -> list[dict]:
    sent: list[dict] = []

    def mock_post(url, *, json, timeout=10):
        sent.append(json)
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr("vpp_trading.notifications.telegram.httpx.post", mock_post)
    return sent


def _opportunity(buy: str = "JEPX_TOKYO", sell: str = "JEPX_KANSAI") -> ArbitrageOpportunity:
    return ArbitrageOpportunity(
        id=f"spatial:{buy}:{sell}",
        type=ArbitrageType.SPATIAL,
        buy_market=buy,
        sell_market=sell,
        buy_price=100.0,
        sell_price=110.0,
        buy_time=T0,
        sell_time=T0,
        volume=50.0,
        profit_margin=0.1,
    )


# ---------------------------------------------------------------------------
# send_message
# ---------------------------------------------------------------------------


class TestSendMessage:
    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr("vpp_trading.notifications.telegram.settings.telegram_bot_token", "")
        monkeypatch.setattr("vpp_trading.notifications.telegram.settings.telegram_chat_id", "")
        assert send_message("hello") is False

    def test_success(self, configured, monkeypatch):
        sent = _capture_posts(monkeypatch)
        assert send_message("hello") is True
        assert sent == [{"chat_id": "12345", "text": "hello", "parse_mode": "Markdown"}]

    def test_network_failure(self, configured, monkeypatch):
        def raise_error(url, *, json, timeout=10):
            raise httpx.ConnectError("network error")

        monkeypatch.setattr("vpp_trading.notifications.telegram.httpx.post", raise_error)
        assert send_message("hello") is False

    def test_timeout(self, configured, monkeypatch):
        def raise_timeout(url, *, json, timeout=10):
            raise httpx.ReadTimeout("slow")

        monkeypatch.setattr("vpp_trading.notifications.telegram.httpx.post", raise_timeout)
        assert send_message("hello") is False

    def test_markdown_400_falls_back_to_plain_text(self, configured, monkeypatch):
        call_log: list[dict] = []

        def mock_post(url, *, json, timeout=10):
            call_log.append(json)
            status = 400 if "parse_mode" in json else 200
            return httpx.Response(status, request=httpx.Request("POST", url))

        monkeypatch.setattr("vpp_trading.notifications.telegram.httpx.post", mock_post)

        assert send_message("text with _underscore_") is True
        assert len(call_log) == 2
        assert "parse_mode" in call_log[0]
        assert "parse_mode" not in call_log[1]

    def test_non_400_error_no_fallback(self, configured, monkeypatch):
        call_log: list[dict] = []

        def mock_post(url, *, json, timeout=10):
            call_log.append(json)
            return httpx.Response(500, request=httpx.Request("POST", url))

        monkeypatch.setattr("vpp_trading.notifications.telegram.httpx.post", mock_post)

        assert send_message("hello") is False
        assert len(call_log) == 1


# ---------------------------------------------------------------------------
# formatting
# ---------------------------------------------------------------------------


class TestEscape:
    def test_special_characters(self):
        assert escape_md("a_b*c`d[e") == "a\\_b\\*c\\`d\\[e"

    def test_plain_text_untouched(self):
        assert escape_md("JEPX 100.5") == "JEPX 100.5"


class TestArbitrageSummary:
    def test_nothing_found(self):
        assert format_arbitrage_summary(ArbitrageSummary(ArbitrageType.SPATIAL)) is None

    def test_executed_and_skipped(self):
        summary = ArbitrageSummary(
            ArbitrageType.CROSS_COMMODITY,
            opportunities_found=2,
            trades_executed=1,
            total_profit=500.0,
            results=[
                OpportunityResult(_opportunity(), 0.05, executed=True, profit=500.0),
                OpportunityResult(_opportunity("JEPX_KYUSHU"), 0.4, reason="risk_score above max"),
            ],
        )
        text = format_arbitrage_summary(summary)
        assert "Found: 2 | Executed: 1 | Profit: +500.00" in text
        assert "margin=10.0% (OK)" in text
        assert "JEPX\\_KYUSHU" in text
        assert_telegram_markdown_safe(text)


class TestTickAlert:
    def test_no_failures(self):
        assert format_tick_alert(TickSummary(executors_run=3)) is None

    def test_failures(self):
        text = format_tick_alert(
            TickSummary(executors_run=3, executor_failures=1, orders_submitted=4, orders_failed=2)
        )
        assert "Executor failures: 1/3" in text
        assert "Orders: 4 (failed 2)" in text
        assert_telegram_markdown_safe(text)


class TestSettlementSummary:
    def _record(self) -> SettlementRecord:
        return SettlementRecord(
            id=1,
            vpp_id=7,
            period_start="2026-03-01",
            period_end="2026-03-01",
            settlement_type="daily",
            total_revenue=1_200.0,
            total_cost=1_002.0,
            net_profit=198.0,
            distribution_policy="capacity_weighted",
            status="completed",
            created_at="2026-03-02T00:00:00+00:00",
        )

    def test_summary_markdown_safe(self):
        summary = AutoSettleSummary(date(2026, 3, 1), settled=[self._record()], skipped=2)
        text = summary.format_summary()
        assert "VPP 7: net +198.00" in text
        assert_telegram_markdown_safe(text)

    def test_send(self, configured, monkeypatch):
        sent = _capture_posts(monkeypatch)
        summary = AutoSettleSummary(date(2026, 3, 1), settled=[self._record()])
        assert send_settlement_summary(summary) is True
        assert "Auto-Settle 2026-03-01" in sent[0]["text"]


class TestErrorAlert:
    def test_escapes_payload(self, configured, monkeypatch):
        sent = _capture_posts(monkeypatch)
        assert send_error_alert("persistence_error", "db_path [locked]") is True
        text = sent[0]["text"]
        assert text.startswith("*Error: persistence\\_error*")
        assert_telegram_markdown_safe(text)
