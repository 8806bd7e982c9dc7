"""
Performance Analytics Service
fotrader - F&O Signal & Execution Engine

Maintains day / week / month aggregates of signals and closed trades.

Every mutation is a single UPDATE with `col = col + :x` expressions, so
concurrent jobs never lose increments. Derived columns (win rate, averages,
largest win/loss) are computed inside the same statement from the
pre-update column values.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from fotrader.db.models import PerformanceAnalytics, PeriodType, SignalType, TradeDetail
from fotrader.db.session import Database
from fotrader.services.calendar_service import CalendarService, get_calendar_service


PA = PerformanceAnalytics


class AnalyticsService:
    """
    Atomic period analytics.

    Rows are created lazily on the first event of a period: an INSERT that
    loses the race raises IntegrityError and the caller falls through to
    the UPDATE.
    """

    def __init__(self, db: Database, calendar: Optional[CalendarService] = None):
        self.db = db
        self.calendar = calendar or get_calendar_service()

    # =========================================================================
    # Period rows
    # =========================================================================

    def _periods(self, at: datetime) -> List[Tuple[str, PeriodType, datetime]]:
        return [
            (self.calendar.day_key(at), PeriodType.DAY, self.calendar.start_of_day(at)),
            (self.calendar.week_key(at), PeriodType.WEEK, self.calendar.start_of_week(at)),
            (self.calendar.month_key(at), PeriodType.MONTH, self.calendar.start_of_month(at)),
        ]

    def _period_bounds(self, period_type: PeriodType, at: datetime) -> Tuple[str, datetime, datetime]:
        if period_type == PeriodType.DAY:
            start = self.calendar.start_of_day(at)
            return self.calendar.day_key(at), start, start + timedelta(days=1)
        if period_type == PeriodType.WEEK:
            start = self.calendar.start_of_week(at)
            return self.calendar.week_key(at), start, start + timedelta(days=7)
        start = self.calendar.start_of_month(at)
        # Day 28 + 4 days always lands in the next month
        end = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
        return self.calendar.month_key(at), start, end

    async def _ensure_rows(self, at: datetime) -> List[str]:
        keys = []
        for key, period_type, start in self._periods(at):
            keys.append(key)
            try:
                async with self.db.session() as session:
                    if await session.get(PA, key) is None:
                        session.add(PA(period_key=key, period_type=period_type.value, period_start=start))
            except IntegrityError:
                logger.debug(f"Analytics row {key} created concurrently")
        return keys

    async def _increment(self, at: datetime, **values: Any) -> None:
        keys = await self._ensure_rows(at)
        async with self.db.session() as session:
            await session.execute(
                update(PA)
                .where(PA.period_key.in_(keys))
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    # =========================================================================
    # Events
    # =========================================================================

    async def record_signal(self, signal_type: str, at: datetime) -> None:
        """Count a persisted signal for its day, week and month."""
        values = {"total_signals": PA.total_signals + 1}
        if signal_type == SignalType.SELL.value:
            values["sell_signals"] = PA.sell_signals + 1
        else:
            values["buy_signals"] = PA.buy_signals + 1
        await self._increment(at, **values)

    async def record_execution(self, at: datetime) -> None:
        """Count a filled entry order."""
        await self._increment(at, executed_orders=PA.executed_orders + 1)

    async def record_trade(
        self,
        *,
        signal_id: str,
        stock: str,
        trade_type: str,
        entry_price: float,
        exit_price: float,
        quantity: int,
        profit_loss: float,
        exit_reason: str,
        closed_at: datetime,
        opened_at: Optional[datetime] = None,
    ) -> TradeDetail:
        """
        Fold a closed trade into the period aggregates and store its detail row.

        A trade with profit_loss > 0 is a win; anything else is a loss.
        """
        total_after = PA.successful_trades + PA.failed_trades + 1

        if profit_loss > 0:
            values = {
                "successful_trades": PA.successful_trades + 1,
                "gross_profit": PA.gross_profit + profit_loss,
                "average_win": (PA.gross_profit + profit_loss) / (PA.successful_trades + 1),
                "largest_win": case((PA.largest_win < profit_loss, profit_loss), else_=PA.largest_win),
                "win_rate": (PA.successful_trades + 1) * 100.0 / total_after,
            }
        else:
            values = {
                "failed_trades": PA.failed_trades + 1,
                "gross_loss": PA.gross_loss + profit_loss,
                "average_loss": (PA.gross_loss + profit_loss) / (PA.failed_trades + 1),
                "largest_loss": case((PA.largest_loss > profit_loss, profit_loss), else_=PA.largest_loss),
                "win_rate": PA.successful_trades * 100.0 / total_after,
            }
        values["profit_loss"] = PA.profit_loss + profit_loss

        keys = await self._ensure_rows(closed_at)

        invested = entry_price * quantity
        duration = 0
        if opened_at is not None:
            duration = max(0, int((closed_at - opened_at).total_seconds() // 60))

        detail = TradeDetail(
            signal_id=signal_id,
            stock=stock,
            trade_type=trade_type,
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            profit_loss=profit_loss,
            profit_loss_percentage=round(profit_loss / invested * 100, 2) if invested else 0.0,
            duration_minutes=duration,
            exit_reason=exit_reason,
            closed_at=closed_at,
        )

        async with self.db.session() as session:
            await session.execute(
                update(PA)
                .where(PA.period_key.in_(keys))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.add(detail)

        logger.info(f"Trade recorded: {stock} {exit_reason} P&L {profit_loss:+.2f}")
        return detail

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_period(self, period_type: PeriodType, at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Aggregates for the period containing `at`, with its closed trades.

        Periods without any events return zeroed counters.
        """
        at = self.calendar.localize(at)
        key, start, end = self._period_bounds(period_type, at)

        async with self.db.session() as session:
            row = await session.get(PA, key)
            result = await session.execute(
                select(TradeDetail)
                .where(TradeDetail.closed_at >= start, TradeDetail.closed_at < end)
                .order_by(TradeDetail.closed_at.asc())
            )
            trades = list(result.scalars().all())

        summary = {
            "period_key": key,
            "period_type": period_type.value,
            "period_start": start.isoformat(),
            "total_signals": 0,
            "buy_signals": 0,
            "sell_signals": 0,
            "executed_orders": 0,
            "successful_trades": 0,
            "failed_trades": 0,
            "profit_loss": 0.0,
            "gross_profit": 0.0,
            "gross_loss": 0.0,
            "win_rate": 0.0,
            "average_win": 0.0,
            "average_loss": 0.0,
            "largest_win": 0.0,
            "largest_loss": 0.0,
        }
        if row is not None:
            for field in list(summary)[3:]:
                summary[field] = getattr(row, field)

        summary["trade_details"] = [
            {
                "signal_id": t.signal_id,
                "stock": t.stock,
                "type": t.trade_type,
                "entry_price": t.entry_price,
                "exit_price": t.exit_price,
                "quantity": t.quantity,
                "profit_loss": t.profit_loss,
                "profit_loss_percentage": t.profit_loss_percentage,
                "duration_minutes": t.duration_minutes,
                "exit_reason": t.exit_reason,
                "closed_at": t.closed_at.isoformat(),
            }
            for t in trades
        ]
        return summary

    async def get_daily(self, at: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.get_period(PeriodType.DAY, at)

    async def get_weekly(self, at: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.get_period(PeriodType.WEEK, at)

    async def get_monthly(self, at: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.get_period(PeriodType.MONTH, at)


__all__ = ["AnalyticsService"]
