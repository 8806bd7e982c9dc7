"""
SQLAlchemy Base Model Configuration
fotrader - F&O Signal & Execution Engine
"""

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from fotrader.core.config import settings


# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

MARKET_TZ = ZoneInfo(settings.trading.timezone)


class MarketDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored in exchange local time.

    Backends without timezone support (SQLite) hand back naive values;
    those are re-attached to the exchange timezone on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=MARKET_TZ)
        return value.astimezone(MARKET_TZ)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=MARKET_TZ)
        return value.astimezone(MARKET_TZ)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = metadata
