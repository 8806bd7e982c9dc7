"""
Services Layer
fotrader - F&O Signal & Execution Engine

Data Layer:
    - MarketDataService: Broker tick stream into candles and snapshots
    - CandleBuilderService: Aggregates ticks into 1m/5m/15m candles
    - indicators: Pure technical indicator functions

Trading Layer:
    - SignalGenerator: Layered stock filter producing BUY/CE signals
    - SignalEmitter: Signal store and notification forwarding
    - OrderExecutionService: Entry, SL/target and completion reconciliation
    - AnalyticsService: Daily / weekly / monthly aggregates

Orchestration:
    - TradingScheduler: Market-hours gated APScheduler jobs
    - CalendarService: Market hours and period keys

Flow:
    Tick → Candle → Snapshot → Signal → Order → SL/Target → P&L
"""

# Candle Builder
from fotrader.services.candle_builder import (
    Candle,
    CandleBuilder,
    CandleBuilderService,
    Timeframe,
)

# Calendar
from fotrader.services.calendar_service import (
    CalendarService,
    get_calendar_service,
)

# Notifications
from fotrader.services.notifier import (
    LogNotifier,
    NotificationSink,
    TelegramNotifier,
    create_notifier,
)

# Analytics
from fotrader.services.analytics import AnalyticsService

# Signals
from fotrader.services.signal_emitter import SignalEmitter
from fotrader.services.signal_generator import (
    SignalGenerator,
    StaticSectorStrength,
)

# Execution
from fotrader.services.order_execution import (
    ExecutionOutcome,
    ExpiryResolver,
    OrderExecutionService,
)

# Market data and scheduling
from fotrader.services.market_data import MarketDataService
from fotrader.services.scheduler import TradingScheduler


__all__ = [
    "Candle",
    "CandleBuilder",
    "CandleBuilderService",
    "Timeframe",
    "CalendarService",
    "get_calendar_service",
    "LogNotifier",
    "NotificationSink",
    "TelegramNotifier",
    "create_notifier",
    "AnalyticsService",
    "SignalEmitter",
    "SignalGenerator",
    "StaticSectorStrength",
    "ExecutionOutcome",
    "ExpiryResolver",
    "OrderExecutionService",
    "MarketDataService",
    "TradingScheduler",
]
