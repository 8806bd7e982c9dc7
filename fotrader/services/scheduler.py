"""
Trading Scheduler - Market-Hours Gate
fotrader - F&O Signal & Execution Engine

Owns an APScheduler AsyncIOScheduler and drives the trading jobs:
- Market status check every 5 minutes (fires immediately on start)
- While the market is open:
    * signal pipeline every 5 minutes
    * order execution every 2 minutes
    * stop-loss / target reconciliation every 1 minute
- Daily broker session refresh at 08:45 exchange time
- Market open / closing soon alerts

A job never overlaps with itself: APScheduler runs at most one instance
and a per-job asyncio.Lock also serializes manual triggers from the API.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from fotrader.brokers.base import BaseBroker
from fotrader.core.config import SchedulerSettings, settings
from fotrader.core.exceptions import BrokerError
from fotrader.services.calendar_service import CalendarService, get_calendar_service, parse_hhmm
from fotrader.services.notifier import NotificationSink
from fotrader.services.order_execution import OrderExecutionService
from fotrader.services.signal_emitter import SignalEmitter
from fotrader.services.signal_generator import SignalGenerator


MARKET_CHECK_JOB = "market_status_check"
SIGNAL_JOB = "signal_pipeline"
EXECUTION_JOB = "order_execution"
RECONCILIATION_JOB = "order_reconciliation"
TOKEN_REFRESH_JOB = "token_refresh"

PIPELINE_JOBS = (SIGNAL_JOB, EXECUTION_JOB, RECONCILIATION_JOB)

JOB_LABELS = {
    MARKET_CHECK_JOB: "market status check",
    SIGNAL_JOB: "signal generation",
    EXECUTION_JOB: "order execution",
    RECONCILIATION_JOB: "order check",
    TOKEN_REFRESH_JOB: "token refresh",
}


class TradingScheduler:
    """
    Market-hours driven job scheduler.

    Usage:
        scheduler = TradingScheduler(generator, emitter, executor, broker, sink)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        generator: SignalGenerator,
        emitter: SignalEmitter,
        executor: OrderExecutionService,
        broker: BaseBroker,
        sink: NotificationSink,
        calendar: Optional[CalendarService] = None,
        config: Optional[SchedulerSettings] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.generator = generator
        self.emitter = emitter
        self.executor = executor
        self.broker = broker
        self.sink = sink
        self.calendar = calendar or get_calendar_service()
        self.config = config or settings.scheduler
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.calendar.tz)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._alerts_sent: Set[Tuple[str, str]] = set()
        self._last_runs: Dict[str, datetime] = {}

        self._jobs: Dict[str, Callable[[], Awaitable[Any]]] = {
            SIGNAL_JOB: self.run_signal_pipeline,
            EXECUTION_JOB: self.executor.process_pending_signals,
            RECONCILIATION_JOB: self.executor.check_completed_orders,
        }
        self._intervals: Dict[str, int] = {
            SIGNAL_JOB: self.config.signal_interval_minutes,
            EXECUTION_JOB: self.config.execution_interval_minutes,
            RECONCILIATION_JOB: self.config.reconciliation_interval_minutes,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    @property
    def jobs_active(self) -> bool:
        """True while the three market-hours jobs are scheduled."""
        return all(self._scheduler.get_job(job_id) is not None for job_id in PIPELINE_JOBS)

    def start(self) -> None:
        """Schedule the market check and token refresh, then start the scheduler."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self.run_market_status_check,
            "interval",
            minutes=self.config.market_check_minutes,
            id=MARKET_CHECK_JOB,
            next_run_time=self.calendar.now(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        refresh_at = parse_hhmm(self.config.token_refresh_time)
        self._scheduler.add_job(
            self.run_token_refresh,
            CronTrigger(hour=refresh_at.hour, minute=refresh_at.minute, timezone=self.calendar.tz),
            id=TOKEN_REFRESH_JOB,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info("✓ Trading scheduler started")

    def stop(self) -> None:
        """Remove the market-hours jobs and shut the scheduler down."""
        if not self.is_running:
            return
        self._remove_pipeline_jobs()
        self._scheduler.shutdown(wait=False)
        logger.info("Trading scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "jobs_active": self.jobs_active if self.is_running else False,
            "market_open": self.calendar.is_market_open(),
            "last_runs": {name: at.isoformat() for name, at in self._last_runs.items()},
        }

    # =========================================================================
    # Job plumbing
    # =========================================================================

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def run_exclusive(self, name: str, job: Callable[[], Awaitable[Any]]) -> Any:
        """Run `job` under the named job's lock. Exceptions propagate."""
        async with self._lock(name):
            result = await job()
            self._last_runs[name] = self.calendar.now()
            return result

    async def _run_guarded(self, name: str, job: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        """
        Run a job body exclusively. Failures are logged and alerted;
        they never stop the scheduler.
        """
        try:
            return await self.run_exclusive(name, job)
        except Exception as e:
            logger.exception(f"Error in {JOB_LABELS.get(name, name)}: {e}")
            await self._alert("error", f"Error in {JOB_LABELS.get(name, name)}: {e}")
            return None

    async def _alert(self, level: str, message: str) -> None:
        try:
            await self.sink.send_system_alert(level, message)
        except Exception as e:
            logger.error(f"System alert failed: {e}")

    async def run_signal_pipeline(self) -> int:
        """Retry unsent notifications, then look for a new signal."""
        await self.emitter.resend_unsent()
        signals = await self.generator.generate_signals()
        return len(signals)

    async def run_market_status_check(self) -> None:
        await self._run_guarded(MARKET_CHECK_JOB, self.market_status_check)

    async def run_token_refresh(self) -> None:
        await self._run_guarded(TOKEN_REFRESH_JOB, self.refresh_token)

    def _add_pipeline_jobs(self, now: datetime) -> None:
        for job_id in PIPELINE_JOBS:
            self._scheduler.add_job(
                self._run_guarded,
                "interval",
                minutes=self._intervals[job_id],
                args=[job_id, self._jobs[job_id]],
                id=job_id,
                next_run_time=now,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(f"Starting {JOB_LABELS[job_id]} job (every {self._intervals[job_id]}m)")

    def _remove_pipeline_jobs(self) -> None:
        for job_id in PIPELINE_JOBS:
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
                logger.info(f"{JOB_LABELS[job_id].capitalize()} job stopped")

    async def _alert_once(self, kind: str, now: datetime, level: str, message: str) -> None:
        key = (kind, self.calendar.day_key(now))
        if key in self._alerts_sent:
            return
        self._alerts_sent.add(key)
        await self._alert(level, message)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def market_status_check(self, now: Optional[datetime] = None) -> bool:
        """
        Start or stop the market-hours jobs. Returns whether the market is open.

        Open and closing alerts go out at most once per trading day.
        """
        now = self.calendar.localize(now)

        if self.calendar.is_market_open(now):
            if not self.jobs_active:
                logger.info("Market is open. Starting trading jobs...")
                self._add_pipeline_jobs(now)

            if self.calendar.is_market_opening_time(now, self.config.opening_tolerance_minutes):
                await self._alert_once(
                    "open",
                    now,
                    "info",
                    "Market is now open. Trading system is active and monitoring for opportunities.",
                )

            if self.calendar.is_market_closing_time(now, self.config.closing_window_minutes):
                await self._alert_once(
                    "closing",
                    now,
                    "info",
                    "Market is closing soon. No new signals will be generated.",
                )
            return True

        if any(self._scheduler.get_job(job_id) is not None for job_id in PIPELINE_JOBS):
            logger.info("Market is closed. Stopping trading jobs...")
            self._remove_pipeline_jobs()
        return False

    async def refresh_token(self) -> bool:
        """Daily broker session refresh; the cron trigger schedules the next one."""
        logger.info("Attempting to refresh Kite token...")
        try:
            refreshed = await self.broker.refresh_session()
        except BrokerError as e:
            logger.error(f"Kite token refresh error: {e}")
            refreshed = False
        if refreshed:
            logger.info("✓ Kite token refreshed")
            await self._alert("info", "Daily token refresh completed. Trading session is ready.")
        else:
            logger.error("Kite token refresh failed")
            await self._alert("error", "Failed to refresh Kite token. Manual intervention required.")
        return refreshed


__all__ = [
    "TradingScheduler",
    "MARKET_CHECK_JOB",
    "SIGNAL_JOB",
    "EXECUTION_JOB",
    "RECONCILIATION_JOB",
    "TOKEN_REFRESH_JOB",
    "PIPELINE_JOBS",
]
