"""
Test configuration and shared fixtures for fotrader tests.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from fotrader.core.config import SchedulerSettings, TradingSettings
from fotrader.db.session import Database
from fotrader.services.calendar_service import CalendarService
from fotrader.services.candle_builder import Candle


IST = ZoneInfo("Asia/Kolkata")


# =============================================================================
# Time Fixtures
# =============================================================================

@pytest.fixture
def ist_timezone():
    """Get IST timezone."""
    return IST


@pytest.fixture
def market_time(ist_timezone):
    """A Wednesday mid-session: 2025-10-15 10:30 IST."""
    return datetime(2025, 10, 15, 10, 30, tzinfo=ist_timezone)


@pytest.fixture
def market_open_time(ist_timezone):
    """Get market open time on the test trading day."""
    return datetime(2025, 10, 15, 9, 15, tzinfo=ist_timezone)


@pytest.fixture
def market_close_time(ist_timezone):
    """Get market close time on the test trading day."""
    return datetime(2025, 10, 15, 15, 30, tzinfo=ist_timezone)


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def trading_settings():
    """Trading settings with auto-trading on and instant fill polling."""
    return TradingSettings(
        auto_trading_enabled=True,
        account_id="ACC1",
        max_capital_per_trade=5100.0,
        order_poll_interval_seconds=0,
        order_poll_max_attempts=5,
    )


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings()


@pytest.fixture
def calendar(trading_settings):
    """Market calendar without holidays."""
    return CalendarService(trading_settings)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def db():
    """In-memory SQLite database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    database = Database(engine=engine)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
async def db_session(db):
    """A single session on the test database (committed on exit)."""
    async with db.session() as session:
        yield session


# =============================================================================
# Notification Sink Mock
# =============================================================================

@pytest.fixture
def mock_sink():
    """Notification sink that accepts every message."""
    sink = AsyncMock()
    sink.send_signal = AsyncMock(return_value=True)
    sink.send_order_update = AsyncMock(return_value=True)
    sink.send_pnl_update = AsyncMock(return_value=True)
    sink.send_system_alert = AsyncMock(return_value=True)
    return sink


# =============================================================================
# Broker Mock
# =============================================================================

@pytest.fixture
def mock_broker():
    """Create a mock broker for testing."""
    broker = AsyncMock()
    broker.name = "test_broker"
    broker.authenticate = AsyncMock(return_value=True)
    broker.refresh_session = AsyncMock(return_value=True)
    broker.get_order_history = AsyncMock(return_value=[])
    broker.close = AsyncMock()
    return broker


# =============================================================================
# Candle Factories
# =============================================================================

def make_candles(
    closes: Sequence[float],
    start: Optional[datetime] = None,
    minutes: int = 15,
    volume: float = 1000.0,
    spread: float = 1.0,
) -> List[Candle]:
    """Candles with the given closes; open is the previous close."""
    start = start or datetime(2025, 10, 15, 9, 15, tzinfo=IST)
    candles = []
    previous = closes[0]
    for i, close in enumerate(closes):
        candles.append(
            Candle(
                timestamp=start + timedelta(minutes=minutes * i),
                open=previous,
                high=max(previous, close) + spread,
                low=min(previous, close) - spread,
                close=close,
                volume=volume,
            )
        )
        previous = close
    return candles


def candle_dicts(candles: Sequence[Candle]) -> List[dict]:
    """JSON form as stored on MarketSnapshot."""
    return [c.to_dict() for c in candles]


@pytest.fixture
def candle_factory():
    return make_candles


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
