"""
Analytics API Routes
Daily, weekly and monthly signal / trade statistics.
"""
from datetime import date, datetime, time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from fotrader.api.deps import get_services
from fotrader.db.models import PeriodType


router = APIRouter()


def _at(services, day: Optional[date]) -> Optional[datetime]:
    """Noon of the requested day in exchange time, or None for today."""
    if day is None:
        return None
    return datetime.combine(day, time(12, 0), tzinfo=services.calendar.tz)


async def _period(services, period_type: PeriodType, day: Optional[date]) -> Dict[str, Any]:
    return await services.analytics.get_period(period_type, _at(services, day))


@router.get("/daily")
async def daily_analytics(
    day: Optional[date] = Query(default=None, description="Any date in the period (default today)"),
    services=Depends(get_services),
):
    return await _period(services, PeriodType.DAY, day)


@router.get("/weekly")
async def weekly_analytics(
    day: Optional[date] = Query(default=None, description="Any date in the ISO week"),
    services=Depends(get_services),
):
    return await _period(services, PeriodType.WEEK, day)


@router.get("/monthly")
async def monthly_analytics(
    day: Optional[date] = Query(default=None, description="Any date in the month"),
    services=Depends(get_services),
):
    return await _period(services, PeriodType.MONTH, day)
