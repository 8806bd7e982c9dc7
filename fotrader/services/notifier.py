"""
Notification Sinks
fotrader - F&O Signal & Execution Engine

Outbound notifications for signals, order updates, trade P&L and system
alerts. Every send is best-effort: failures are logged and reported as
False, never raised into the trading jobs.

Sinks:
- TelegramNotifier: Bot API `sendMessage` over httpx, HTML parse mode
- LogNotifier: logs the rendered message only (paper trading / tests)
"""

import html
from typing import Any, Dict, Literal, Optional, Protocol, runtime_checkable

import httpx
from loguru import logger

from fotrader.core.config import TelegramSettings, settings
from fotrader.db.models import Signal


AlertLevel = Literal["info", "warning", "error"]

ALERT_HEADERS: Dict[str, str] = {
    "info": "📝 SYSTEM INFO",
    "warning": "⚠️ SYSTEM WARNING",
    "error": "🔴 SYSTEM ERROR",
}


@runtime_checkable
class NotificationSink(Protocol):
    """Where signals and trade events are announced."""

    async def send_signal(self, signal: Signal) -> bool: ...

    async def send_order_update(self, signal: Signal, executed: bool, message: str) -> bool: ...

    async def send_pnl_update(self, signal: Signal, exit_reason: str) -> bool: ...

    async def send_system_alert(self, level: AlertLevel, message: str) -> bool: ...


# =============================================================================
# Message formatting
# =============================================================================

def _rupees(value: Optional[float]) -> str:
    return f"₹{value:.2f}" if value is not None else "N/A"


def format_signal(signal: Signal) -> str:
    """HTML body for a new signal."""
    generated = signal.generated_at
    lines = [
        f"<b>🚨 NEW {signal.signal_type} SIGNAL</b>",
        "",
        f"<b>Stock:</b> {html.escape(signal.stock)}",
        f"<b>Option:</b> {html.escape(signal.option)}",
        f"<b>CMP:</b> {_rupees(signal.current_market_price)}",
        f"<b>Buy Above:</b> {_rupees(signal.entry_price)}",
        f"<b>Target:</b> {_rupees(signal.target_price)}",
        f"<b>SL:</b> {_rupees(signal.stop_loss)}",
        f"<b>R:R =</b> {signal.risk_reward_ratio}",
        f"<b>Signal Time:</b> {generated.strftime('%d/%m/%Y %H:%M')}",
        "",
    ]

    indicators: Dict[str, Any] = signal.indicators or {}
    if indicators:
        lines.append("<b>Indicators:</b>")
        if indicators.get("rsi") is not None:
            lines.append(f"RSI: {indicators['rsi']:.2f}")
        if indicators.get("macd"):
            lines.append(f"MACD Line: {indicators['macd']['line']:.2f}")
        if indicators.get("supertrend") is not None:
            lines.append(f"SuperTrend: {'Bullish' if indicators['supertrend'] else 'Bearish'}")
        if indicators.get("price_above_vwap") is not None:
            lines.append(f"Price vs VWAP: {'Above' if indicators['price_above_vwap'] else 'Below'}")

    lines.append("")
    lines.append("<i>Trade at your own risk. Always use proper risk management.</i>")
    return "\n".join(lines)


def format_order_update(signal: Signal, executed: bool, message: str) -> str:
    """HTML body for an entry order outcome."""
    return "\n".join([
        "<b>📊 ORDER UPDATE</b>",
        "",
        f"<b>Stock:</b> {html.escape(signal.stock)}",
        f"<b>Option:</b> {html.escape(signal.option)}",
        f"<b>Signal Type:</b> {signal.signal_type}",
        f"<b>Status:</b> {'✅ EXECUTED' if executed else '❌ FAILED'}",
        "",
        html.escape(message),
    ])


def format_duration(minutes: int) -> str:
    hours, remaining = divmod(minutes, 60)
    return f"{hours}h {remaining}m" if hours > 0 else f"{remaining}m"


def format_pnl_update(signal: Signal, exit_reason: str) -> str:
    """HTML body for a closed trade."""
    profit_loss = signal.profit_loss or 0.0
    is_profit = profit_loss > 0

    lines = [
        f"<b>{'💰' if is_profit else '📉'} TRADE COMPLETED</b>",
        "",
        f"<b>Stock:</b> {html.escape(signal.stock)}",
        f"<b>Option:</b> {html.escape(signal.option)}",
        f"<b>Signal Type:</b> {signal.signal_type}",
        f"<b>Entry Price:</b> {_rupees(signal.entry_price)}",
        f"<b>Exit Price:</b> {_rupees(signal.exit_price)}",
        f"<b>P&amp;L:</b> {'+' if is_profit else '-' if profit_loss < 0 else ''}₹{abs(profit_loss):.2f}",
        f"<b>Exit Reason:</b> {exit_reason}",
    ]

    if signal.executed_at and signal.exit_at:
        minutes = int((signal.exit_at - signal.executed_at).total_seconds() // 60)
        lines.append(f"<b>Trade Duration:</b> {format_duration(max(minutes, 0))}")

    return "\n".join(lines)


def format_system_alert(level: AlertLevel, message: str) -> str:
    return f"<b>{ALERT_HEADERS.get(level, ALERT_HEADERS['info'])}</b>\n\n{html.escape(message)}"


# =============================================================================
# Sinks
# =============================================================================

class TelegramNotifier:
    """
    Telegram Bot API sink.

    Posts HTML messages to the configured channel. Without a bot token or
    chat id every send is skipped with a warning and returns False.
    """

    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(
        self,
        config: Optional[TelegramSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or settings.telegram
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def send_message(self, text: str) -> bool:
        """Send raw HTML text to the channel."""
        if not self.config.is_configured:
            logger.warning("Telegram bot token or chat ID not set. Message not sent.")
            return False

        try:
            response = await self._get_client().post(
                self.API_URL.format(token=self.config.bot_token),
                json={
                    "chat_id": self.config.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                },
            )
            if response.status_code != 200:
                logger.warning(f"Telegram sendMessage failed: {response.status_code} {response.text[:200]}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.error(f"Telegram notification error: {e}")
            return False

    async def send_signal(self, signal: Signal) -> bool:
        return await self.send_message(format_signal(signal))

    async def send_order_update(self, signal: Signal, executed: bool, message: str) -> bool:
        return await self.send_message(format_order_update(signal, executed, message))

    async def send_pnl_update(self, signal: Signal, exit_reason: str) -> bool:
        return await self.send_message(format_pnl_update(signal, exit_reason))

    async def send_system_alert(self, level: AlertLevel, message: str) -> bool:
        return await self.send_message(format_system_alert(level, message))

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class LogNotifier:
    """Sink that only logs; every send succeeds."""

    async def send_signal(self, signal: Signal) -> bool:
        logger.info(f"[notify] signal\n{format_signal(signal)}")
        return True

    async def send_order_update(self, signal: Signal, executed: bool, message: str) -> bool:
        logger.info(f"[notify] order update\n{format_order_update(signal, executed, message)}")
        return True

    async def send_pnl_update(self, signal: Signal, exit_reason: str) -> bool:
        logger.info(f"[notify] pnl\n{format_pnl_update(signal, exit_reason)}")
        return True

    async def send_system_alert(self, level: AlertLevel, message: str) -> bool:
        log = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log(f"[notify] {level}: {message}")
        return True

    async def close(self) -> None:
        pass


def create_notifier(config: Optional[TelegramSettings] = None) -> NotificationSink:
    """Telegram when configured, otherwise the logging sink."""
    config = config or settings.telegram
    if config.is_configured:
        logger.info("✓ Telegram notifications enabled")
        return TelegramNotifier(config)
    logger.info("Telegram not configured, notifications will be logged only")
    return LogNotifier()


__all__ = [
    "AlertLevel",
    "NotificationSink",
    "TelegramNotifier",
    "LogNotifier",
    "create_notifier",
    "format_signal",
    "format_order_update",
    "format_pnl_update",
    "format_system_alert",
]
