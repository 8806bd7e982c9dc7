"""
fotrader - FastAPI Application
Main entry point with proper lifecycle management.

Service Architecture:
    MarketDataService (broker tick stream)
        ↓
    CandleBuilderService (tick → 1m/5m/15m candles → MarketSnapshot)
        ↓
    SignalGenerator (layered filters, on the scheduler)
        ↓
    SignalEmitter (store + notification sink)
        ↓
    OrderExecutionService (entry, SL/target, reconciliation)
        ↓
    AnalyticsService (period aggregates, trade details)
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from fotrader.api import api_router
from fotrader.brokers import BaseBroker, create_broker
from fotrader.core.config import settings
from fotrader.core.exceptions import BrokerError
from fotrader.core.logging import setup_logging
from fotrader.db.session import Database, get_database
from fotrader.services.analytics import AnalyticsService
from fotrader.services.calendar_service import CalendarService, get_calendar_service
from fotrader.services.market_data import MarketDataService
from fotrader.services.notifier import NotificationSink, create_notifier
from fotrader.services.order_execution import OrderExecutionService
from fotrader.services.scheduler import TradingScheduler
from fotrader.services.signal_emitter import SignalEmitter
from fotrader.services.signal_generator import SignalGenerator


# =============================================================================
# Service Registry
# =============================================================================

class ServiceRegistry:
    """Registry for all trading services."""

    def __init__(self):
        self.db: Optional[Database] = None
        self.broker: Optional[BaseBroker] = None
        self.sink: Optional[NotificationSink] = None
        self.calendar: Optional[CalendarService] = None
        self.analytics: Optional[AnalyticsService] = None
        self.emitter: Optional[SignalEmitter] = None
        self.generator: Optional[SignalGenerator] = None
        self.executor: Optional[OrderExecutionService] = None
        self.scheduler: Optional[TradingScheduler] = None
        self.market_data: Optional[MarketDataService] = None
        self.initialized = False

    def initialize(
        self,
        db: Optional[Database] = None,
        broker: Optional[BaseBroker] = None,
        sink: Optional[NotificationSink] = None,
        calendar: Optional[CalendarService] = None,
    ) -> None:
        """Create services in dependency order. Collaborators can be injected."""
        if self.initialized:
            return

        logger.info("Initializing trading services...")

        self.db = db or get_database()
        self.broker = broker or create_broker()
        self.sink = sink or create_notifier()
        self.calendar = calendar or get_calendar_service()

        self.analytics = AnalyticsService(self.db, self.calendar)
        self.emitter = SignalEmitter(self.db, self.sink, self.analytics, self.calendar)
        self.generator = SignalGenerator(self.db, self.emitter, self.calendar)
        self.executor = OrderExecutionService(
            self.db, self.broker, self.sink, self.analytics, self.calendar
        )
        self.scheduler = TradingScheduler(
            self.generator, self.emitter, self.executor, self.broker, self.sink, self.calendar
        )
        self.market_data = MarketDataService(self.db, self.broker, calendar=self.calendar)

        self.initialized = True
        logger.info("✓ Trading services initialized")

    async def start_all(self) -> None:
        """Authenticate the broker, start the tick stream and the scheduler."""
        if not self.initialized:
            raise RuntimeError("Services not initialized")

        logger.info("Starting trading services...")

        try:
            authenticated = await self.broker.authenticate()
        except BrokerError as e:
            logger.error(f"✗ Broker authentication failed: {e}")
            authenticated = False

        if authenticated:
            await self.market_data.start()
        else:
            logger.warning("⚠ Broker not authenticated - tick stream not started")

        self.scheduler.start()
        logger.info("✓ All trading services started")

    async def stop_all(self) -> None:
        """Stop all trading services gracefully."""
        logger.info("Stopping trading services...")

        # Stop in reverse order
        if self.scheduler:
            self.scheduler.stop()
        if self.market_data:
            await self.market_data.stop()
        if self.broker:
            await self.broker.close()
        if self.sink is not None and hasattr(self.sink, "close"):
            await self.sink.close()

        logger.info("✓ All trading services stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get status of all services."""
        return {
            "initialized": self.initialized,
            "broker": self.broker.name if self.broker else None,
            "scheduler": self.scheduler.get_status() if self.scheduler else None,
            "market_data": self.market_data.get_stats() if self.market_data else None,
        }


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------
    setup_logging()
    logger.info("=" * 60)
    logger.info(f"Starting {settings.PROJECT_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Trading Mode: {settings.trading.mode}")
    logger.info("=" * 60)

    services: ServiceRegistry = app.state.services
    database = get_database()

    await database.create_all()
    if await database.health_check():
        logger.info("✓ Database connection established")
    else:
        logger.warning("⚠ Database connection failed - some features may be unavailable")

    services.initialize(db=database)
    if settings.AUTO_START_SCHEDULER:
        await services.start_all()
    else:
        logger.info("Trading services initialized (manual start required)")

    logger.info("-" * 60)
    logger.info("fotrader API ready to accept requests")
    logger.info("-" * 60)

    yield

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------
    logger.info("=" * 60)
    logger.info(f"Shutting down {settings.PROJECT_NAME}...")

    try:
        await services.stop_all()
    except Exception as e:
        logger.error(f"Error stopping trading services: {e}")

    await database.close()
    logger.info("✓ Database connections closed")
    logger.info("=" * 60)


# =============================================================================
# Application Factory
# =============================================================================

def create_application(services: Optional[ServiceRegistry] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.
    """
    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.APP_VERSION,
        description="F&O signal generation and automated execution engine",
        lifespan=lifespan,
    )
    application.state.services = services or ServiceRegistry()

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router, prefix=settings.API_V1_STR)
    return application


# Create application instance
app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fotrader.main:app",
        host=settings.api.host,
        port=settings.api.port,
    )
