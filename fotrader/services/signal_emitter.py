"""
Signal Emitter
fotrader - F&O Signal & Execution Engine

Persists signals and forwards them to the notification sink. The
`sent_to_telegram` flag is flipped once, only after the sink confirms.
"""

from datetime import datetime
from typing import Optional

from loguru import logger

from fotrader.db.models import Signal
from fotrader.db.repository import SignalRepository
from fotrader.db.session import Database
from fotrader.services.analytics import AnalyticsService
from fotrader.services.calendar_service import CalendarService, get_calendar_service
from fotrader.services.notifier import NotificationSink


class SignalEmitter:
    """Signal store + notification forwarding."""

    def __init__(
        self,
        db: Database,
        sink: NotificationSink,
        analytics: Optional[AnalyticsService] = None,
        calendar: Optional[CalendarService] = None,
    ):
        self.db = db
        self.sink = sink
        self.calendar = calendar or get_calendar_service()
        self.analytics = analytics or AnalyticsService(db, self.calendar)

    async def persist(self, signal: Signal) -> Signal:
        """Store a new signal and count it in the period analytics."""
        async with self.db.session() as session:
            await SignalRepository(session).add(signal)
        await self.analytics.record_signal(signal.signal_type, signal.generated_at)
        logger.info(f"Signal {signal.id} stored: {signal.signal_type} {signal.option} @ {signal.entry_price:.2f}")
        return signal

    async def notify(self, signal: Signal, now: Optional[datetime] = None) -> bool:
        """
        Send a stored signal to the sink.

        Returns True once the sink accepted it and the flag was set. A sink
        failure leaves the flag false so a later resend can retry.
        """
        try:
            delivered = await self.sink.send_signal(signal)
        except Exception as e:
            logger.error(f"Notification sink failed for signal {signal.id}: {e}")
            return False

        if not delivered:
            logger.warning(f"Signal {signal.id} not delivered, will retry")
            return False

        sent_at = self.calendar.localize(now)
        async with self.db.session() as session:
            updated = await SignalRepository(session).mark_sent(signal.id, sent_at)
        if updated:
            signal.sent_to_telegram = True
            signal.sent_at = sent_at
        return True

    async def emit(self, signal: Signal, now: Optional[datetime] = None) -> Signal:
        """Persist, then notify."""
        await self.persist(signal)
        await self.notify(signal, now)
        return signal

    async def resend_unsent(self, now: Optional[datetime] = None) -> int:
        """Retry notification for today's stored but unsent signals."""
        now = self.calendar.localize(now)
        async with self.db.session() as session:
            unsent = await SignalRepository(session).get_unsent(
                self.calendar.start_of_day(now), self.calendar.end_of_day(now)
            )

        sent = 0
        for signal in unsent:
            if await self.notify(signal, now):
                sent += 1
        if unsent:
            logger.info(f"Resent {sent}/{len(unsent)} unsent signals")
        return sent


__all__ = ["SignalEmitter"]
