"""
Calendar Service - Market Hours & Period Keys
fotrader - F&O Signal & Execution Engine

Handles:
- The single market-hours predicate shared by every gated job
- Market opening / closing alert windows
- Signal generation time window
- Day / week / month boundaries and analytics period keys
- Monthly F&O expiry dates
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Set
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from fotrader.core.config import TradingSettings, settings


def parse_hhmm(value: str) -> time:
    """Parse "HH:MM" into a time."""
    hour, minute = value.split(":")
    return time(int(hour), int(minute))


@dataclass
class TradingHours:
    """Market trading hours."""
    open_time: time
    close_time: time


class CalendarService:
    """
    Market calendar service.

    All checks take an optional `at` datetime; naive datetimes are taken
    to be in exchange local time. Defaults to now in the exchange timezone.
    """

    def __init__(
        self,
        trading: Optional[TradingSettings] = None,
        holidays: Optional[Iterable[date]] = None,
    ):
        trading = trading or settings.trading
        self.tz = ZoneInfo(trading.timezone)
        self.hours = TradingHours(
            open_time=parse_hhmm(trading.market_open_time),
            close_time=parse_hhmm(trading.market_close_time),
        )
        self.signal_window = (
            parse_hhmm(trading.signal_window_start),
            parse_hhmm(trading.signal_window_end),
        )
        self._holidays: Set[date] = set(holidays or [])

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def localize(self, at: Optional[datetime] = None) -> datetime:
        """Convert to exchange local time."""
        if at is None:
            return self.now()
        if at.tzinfo is None:
            return at.replace(tzinfo=self.tz)
        return at.astimezone(self.tz)

    # =========================================================================
    # Trading days and hours
    # =========================================================================

    def is_trading_day(self, check_date: date) -> bool:
        """Weekdays that are not registered holidays."""
        if check_date.weekday() >= 5:  # Saturday = 5, Sunday = 6
            return False
        return check_date not in self._holidays

    def is_market_open(self, at: Optional[datetime] = None) -> bool:
        """Mon-Fri, open_time to close_time inclusive, exchange local time."""
        local = self.localize(at)
        if not self.is_trading_day(local.date()):
            return False
        current = local.time().replace(second=0, microsecond=0)
        return self.hours.open_time <= current <= self.hours.close_time

    def is_market_opening_time(self, at: Optional[datetime] = None, tolerance_minutes: int = 5) -> bool:
        """Within `tolerance_minutes` after the open."""
        local = self.localize(at)
        if not self.is_trading_day(local.date()):
            return False
        opened = datetime.combine(local.date(), self.hours.open_time, tzinfo=self.tz)
        return opened <= local.replace(second=0, microsecond=0) <= opened + timedelta(minutes=tolerance_minutes)

    def is_market_closing_time(self, at: Optional[datetime] = None, window_minutes: int = 15) -> bool:
        """Within the last `window_minutes` before the close."""
        local = self.localize(at)
        if not self.is_trading_day(local.date()):
            return False
        closes = datetime.combine(local.date(), self.hours.close_time, tzinfo=self.tz)
        return closes - timedelta(minutes=window_minutes) <= local.replace(second=0, microsecond=0) <= closes

    def is_within_signal_window(self, at: Optional[datetime] = None) -> bool:
        """Signals are generated only inside the configured window (inclusive)."""
        current = self.localize(at).time().replace(second=0, microsecond=0)
        start, end = self.signal_window
        return start <= current <= end

    def time_to_market_open(self, at: Optional[datetime] = None) -> Optional[timedelta]:
        """Time until the next open, or None while the market is open."""
        local = self.localize(at)
        if self.is_market_open(local):
            return None
        day = local.date()
        opened = datetime.combine(day, self.hours.open_time, tzinfo=self.tz)
        if not self.is_trading_day(day) or local > opened:
            day = self.next_trading_day(day)
            opened = datetime.combine(day, self.hours.open_time, tzinfo=self.tz)
        return opened - local

    def next_trading_day(self, from_date: date) -> date:
        """Next trading day after `from_date`."""
        next_day = from_date + timedelta(days=1)
        while not self.is_trading_day(next_day):
            next_day += timedelta(days=1)
        return next_day

    # =========================================================================
    # Period boundaries
    # =========================================================================

    def start_of_day(self, at: Optional[datetime] = None) -> datetime:
        local = self.localize(at)
        return datetime.combine(local.date(), time.min, tzinfo=self.tz)

    def end_of_day(self, at: Optional[datetime] = None) -> datetime:
        return self.start_of_day(at) + timedelta(days=1)

    def start_of_week(self, at: Optional[datetime] = None) -> datetime:
        """Monday 00:00 of the week containing `at`."""
        start = self.start_of_day(at)
        return start - timedelta(days=start.weekday())

    def start_of_month(self, at: Optional[datetime] = None) -> datetime:
        return self.start_of_day(at).replace(day=1)

    def day_key(self, at: Optional[datetime] = None) -> str:
        return f"DAY-{self.localize(at).date().isoformat()}"

    def week_key(self, at: Optional[datetime] = None) -> str:
        """ISO week key, e.g. WEEK-2025-07."""
        year, week, _ = self.localize(at).date().isocalendar()
        return f"WEEK-{year}-{week:02d}"

    def month_key(self, at: Optional[datetime] = None) -> str:
        local = self.localize(at)
        return f"MONTH-{local.year}-{local.month:02d}"

    # =========================================================================
    # Expiries
    # =========================================================================

    def monthly_expiry(self, year: int, month: int, weekday: int = 3) -> date:
        """Last `weekday` (default Thursday) of the month, moved back over holidays."""
        if month == 12:
            last_day = date(year + 1, 1, 1) - timedelta(days=1)
        else:
            last_day = date(year, month + 1, 1) - timedelta(days=1)

        expiry = last_day - timedelta(days=(last_day.weekday() - weekday) % 7)
        while not self.is_trading_day(expiry):
            expiry -= timedelta(days=1)
        return expiry

    def current_monthly_expiry(self, at: Optional[datetime] = None, weekday: int = 3) -> date:
        """This month's expiry, or next month's once this month's has passed."""
        today = self.localize(at).date()
        expiry = self.monthly_expiry(today.year, today.month, weekday)
        if today > expiry:
            year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
            expiry = self.monthly_expiry(year, month, weekday)
        return expiry


_calendar_service: Optional[CalendarService] = None


def get_calendar_service() -> CalendarService:
    """Get calendar service singleton."""
    global _calendar_service
    if _calendar_service is None:
        _calendar_service = CalendarService()
    return _calendar_service


__all__ = [
    "TradingHours",
    "CalendarService",
    "parse_hhmm",
    "get_calendar_service",
]
