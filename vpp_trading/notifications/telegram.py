"""Telegram notification sender."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from vpp_trading.config import settings

if TYPE_CHECKING:
    from vpp_trading.arbitrage.engine import ArbitrageSummary
    from vpp_trading.scheduler.strategy_scheduler import TickSummary
    from vpp_trading.settlement.settler import AutoSettleSummary

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"


def send_message(text: str, parse_mode: str = "Markdown") -> bool:
    """Send a message via Telegram bot API. Returns True on success.

    Falls back to plain text if Markdown parsing fails (HTTP 400).
    """
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.warning("Telegram not configured, skipping notification")
        return False

    url = TELEGRAM_API.format(token=settings.telegram_bot_token)

    try:
        resp = httpx.post(
            url,
            json={
                "chat_id": settings.telegram_chat_id,
                "text": text,
                "parse_mode": parse_mode,
            },
            timeout=10,
        )
        resp.raise_for_status()
        return True
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 400 and parse_mode:
            # Markdown パースエラー → plain text でリトライ
            logger.warning("Telegram Markdown parse failed, retrying as plain text")
            try:
                resp2 = httpx.post(
                    url,
                    json={"chat_id": settings.telegram_chat_id, "text": text},
                    timeout=10,
                )
                resp2.raise_for_status()
                return True
            except httpx.HTTPError:
                logger.exception("Telegram plain text fallback also failed")
                return False
        logger.error("Telegram HTTP error %d: %s", e.response.status_code, e)
        return False
    except httpx.TimeoutException:
        logger.warning("Telegram request timed out")
        return False
    except httpx.HTTPError:
        logger.exception("Failed to send Telegram message")
        return False


def escape_md(text: str) -> str:
    """Escape Telegram Markdown v1 special characters."""
    for ch in ("_", "*", "`", "["):
        text = text.replace(ch, f"\\{ch}")
    return text


def format_arbitrage_summary(summary: ArbitrageSummary) -> str | None:
    """Arbitrage scan report. None when nothing was found (no noise)."""
    if summary.opportunities_found == 0:
        return None
    lines = [
        f"*Arbitrage* ({escape_md(str(summary.arbitrage_type))})",
        f"Found: {summary.opportunities_found} | Executed: {summary.trades_executed}"
        f" | Profit: {summary.total_profit:+,.2f}",
    ]
    for r in summary.results:
        opp = r.opportunity
        status = "OK" if r.executed else escape_md(r.reason or "skipped")
        lines.append(
            f"  {escape_md(opp.buy_market)} {opp.buy_price:.2f} -> "
            f"{escape_md(opp.sell_market)} {opp.sell_price:.2f}"
            f" x{opp.volume:g} margin={opp.profit_margin:.1%} ({status})"
        )
    return "\n".join(lines)


def format_tick_alert(summary: TickSummary) -> str | None:
    """Alert text for a tick with executor failures."""
    if not summary.executor_failures:
        return None
    return (
        "*Scheduler Alert*\n"
        f"Executor failures: {summary.executor_failures}/{summary.executors_run}\n"
        f"Orders: {summary.orders_submitted} (failed {summary.orders_failed})"
    )


def send_settlement_summary(summary: AutoSettleSummary) -> bool:
    return send_message(summary.format_summary())


def send_error_alert(error_type: str, message: str) -> bool:
    """Send error notification (persistence failure, etc.)."""
    text = f"*Error: {escape_md(error_type)}*\n{escape_md(message)}"
    return send_message(text)
