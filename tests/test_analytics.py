"""
Tests for period analytics.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from fotrader.db.models import PerformanceAnalytics, PeriodType, Signal, TradeDetail
from fotrader.services.analytics import AnalyticsService
from tests.conftest import IST


@pytest.fixture
def analytics(db, calendar):
    return AnalyticsService(db, calendar)


async def add_signal(db, generated_at):
    signal = Signal(
        signal_type="BUY", stock="SYM", option="SYM 500 CE",
        current_market_price=500, entry_price=500, target_price=504.8, stop_loss=497.6,
        risk_reward_ratio=2.0, generated_at=generated_at,
    )
    async with db.session() as session:
        session.add(signal)
    return signal


async def record(analytics, signal, profit_loss, closed_at, opened_at=None):
    return await analytics.record_trade(
        signal_id=signal.id,
        stock=signal.stock,
        trade_type="BUY",
        entry_price=500.0,
        exit_price=500.0 + profit_loss / 10,
        quantity=10,
        profit_loss=profit_loss,
        exit_reason="TARGET_HIT" if profit_loss > 0 else "SL_HIT",
        closed_at=closed_at,
        opened_at=opened_at,
    )


class TestCounters:
    """Signal and execution counters."""

    @pytest.mark.asyncio
    async def test_signal_counted_in_all_periods(self, db, analytics, market_time):
        await analytics.record_signal("BUY", market_time)
        await analytics.record_signal("SELL", market_time)

        async with db.session() as session:
            rows = (await session.execute(select(PerformanceAnalytics))).scalars().all()

        assert {r.period_key for r in rows} == {"DAY-2025-10-15", "WEEK-2025-42", "MONTH-2025-10"}
        for row in rows:
            assert row.total_signals == 2
            assert row.buy_signals == 1
            assert row.sell_signals == 1

    @pytest.mark.asyncio
    async def test_period_types_and_starts(self, db, analytics, market_time):
        await analytics.record_execution(market_time)

        async with db.session() as session:
            week = await session.get(PerformanceAnalytics, "WEEK-2025-42")
            month = await session.get(PerformanceAnalytics, "MONTH-2025-10")
        assert week.period_type == PeriodType.WEEK.value
        assert week.period_start == datetime(2025, 10, 13, tzinfo=IST)
        assert month.period_start == datetime(2025, 10, 1, tzinfo=IST)
        assert week.executed_orders == 1


class TestTrades:
    """Closed trade aggregation."""

    @pytest.mark.asyncio
    async def test_win_loss_aggregates(self, db, analytics, market_time):
        signal = await add_signal(db, market_time)
        await record(analytics, signal, 48.0, market_time + timedelta(minutes=10))
        await record(analytics, signal, -80.0, market_time + timedelta(minutes=20))
        await record(analytics, signal, 120.0, market_time + timedelta(minutes=30))

        async with db.session() as session:
            day = await session.get(PerformanceAnalytics, "DAY-2025-10-15")

        assert day.successful_trades == 2
        assert day.failed_trades == 1
        assert day.profit_loss == pytest.approx(88.0)
        assert day.gross_profit == pytest.approx(168.0)
        assert day.gross_loss == pytest.approx(-80.0)
        assert day.win_rate == pytest.approx(200 / 3)
        assert day.average_win == pytest.approx(84.0)
        assert day.average_loss == pytest.approx(-80.0)
        assert day.largest_win == 120.0
        assert day.largest_loss == -80.0

    @pytest.mark.asyncio
    async def test_zero_pnl_counts_as_loss(self, db, analytics, market_time):
        signal = await add_signal(db, market_time)
        await record(analytics, signal, 0.0, market_time)

        async with db.session() as session:
            day = await session.get(PerformanceAnalytics, "DAY-2025-10-15")
        assert day.failed_trades == 1
        assert day.win_rate == 0.0

    @pytest.mark.asyncio
    async def test_trade_detail(self, db, analytics, market_time):
        signal = await add_signal(db, market_time)
        detail = await record(
            analytics, signal, -80.0, market_time + timedelta(minutes=65), opened_at=market_time
        )

        assert detail.duration_minutes == 65
        assert detail.profit_loss_percentage == -1.6

        async with db.session() as session:
            stored = (await session.execute(select(TradeDetail))).scalar_one()
        assert stored.signal_id == signal.id
        assert stored.exit_reason == "SL_HIT"


class TestQueries:
    """Period reports."""

    @pytest.mark.asyncio
    async def test_empty_period_is_zeroed(self, analytics, market_time):
        report = await analytics.get_daily(market_time)
        assert report["period_key"] == "DAY-2025-10-15"
        assert report["total_signals"] == 0
        assert report["profit_loss"] == 0.0
        assert report["trade_details"] == []

    @pytest.mark.asyncio
    async def test_reports_include_trades_in_range(self, db, analytics, market_time):
        signal = await add_signal(db, market_time)
        await record(analytics, signal, 48.0, market_time)
        await record(analytics, signal, -80.0, market_time - timedelta(days=1))
        await record(analytics, signal, 30.0, market_time - timedelta(days=14))

        daily = await analytics.get_daily(market_time)
        weekly = await analytics.get_weekly(market_time)
        monthly = await analytics.get_monthly(market_time)

        assert [t["profit_loss"] for t in daily["trade_details"]] == [48.0]
        assert [t["profit_loss"] for t in weekly["trade_details"]] == [-80.0, 48.0]
        assert len(monthly["trade_details"]) == 3
        assert monthly["successful_trades"] == 2
        assert weekly["period_type"] == "WEEK"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
