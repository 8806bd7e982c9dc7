"""
Market Data Service
fotrader - F&O Signal & Execution Engine

Consumes the broker tick stream for the instrument universe and the two
benchmark indices:
- Routes each tick to its candle builder by instrument token
- Upserts the instrument's MarketSnapshot (price, day range, candle windows)
- Restores candle windows from stored snapshots on startup
- Restarts the stream after a cool-down once the broker gives up
"""

import asyncio
from typing import Any, Dict, List, Optional

from loguru import logger

from fotrader.brokers.base import BaseBroker
from fotrader.core.config import SchedulerSettings, TradingSettings, settings
from fotrader.core.exceptions import BrokerError, TickStreamError
from fotrader.db.repository import InstrumentRepository, SnapshotRepository
from fotrader.db.session import Database
from fotrader.schemas.broker import Tick
from fotrader.services.calendar_service import CalendarService, get_calendar_service
from fotrader.services.candle_builder import Candle, CandleBuilder, CandleBuilderService, Timeframe


SNAPSHOT_FIELDS = {
    Timeframe.M1: "one_minute_candles",
    Timeframe.M5: "five_minute_candles",
    Timeframe.M15: "fifteen_minute_candles",
}


class MarketDataService:
    """
    Tick stream → candles → MarketSnapshot.

    Usage:
        service = MarketDataService(db, broker)
        await service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        db: Database,
        broker: BaseBroker,
        candles: Optional[CandleBuilderService] = None,
        calendar: Optional[CalendarService] = None,
        trading: Optional[TradingSettings] = None,
        scheduler_config: Optional[SchedulerSettings] = None,
    ):
        self.db = db
        self.broker = broker
        self.candles = candles or CandleBuilderService()
        self.calendar = calendar or get_calendar_service()
        self.trading = trading or settings.trading
        self.scheduler_config = scheduler_config or settings.scheduler

        self._task: Optional[asyncio.Task] = None
        self._tokens: Dict[int, str] = {}
        self._tick_count = 0
        self._restarts = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def load_universe(self) -> List[int]:
        """
        Register builders for every streamable instrument plus the indices.

        Candle windows are restored from stored snapshots. Returns the tokens
        to subscribe.
        """
        async with self.db.session() as session:
            instruments = await InstrumentRepository(session).get_with_tokens()
            snapshots = await SnapshotRepository(session).get_many([i.symbol for i in instruments])

        tokens: Dict[int, str] = {i.instrument_token: i.symbol for i in instruments}
        tokens.setdefault(self.trading.nifty_token, self.trading.nifty_symbol)
        tokens.setdefault(self.trading.banknifty_token, self.trading.banknifty_symbol)

        async with self.db.session() as session:
            index_snapshots = await SnapshotRepository(session).get_many(
                [self.trading.nifty_symbol, self.trading.banknifty_symbol]
            )
        snapshots.update(index_snapshots)

        for token, symbol in tokens.items():
            builder = self.candles.add_instrument(token, symbol)
            snapshot = snapshots.get(symbol)
            if snapshot is not None:
                builder.restore({
                    timeframe: [Candle.from_dict(c) for c in getattr(snapshot, field) or []]
                    for timeframe, field in SNAPSHOT_FIELDS.items()
                })

        self._tokens = tokens
        logger.info(f"✓ Market data universe loaded: {len(tokens)} instruments")
        return list(tokens)

    async def handle_tick(self, tick: Tick) -> Optional[CandleBuilder]:
        """Fold one tick into candles and persist the instrument's snapshot."""
        builder = self.candles.process_tick(
            tick.instrument_token,
            tick.last_price,
            tick.volume_delta,
            tick.timestamp,
        )
        if builder is None:
            return None

        fields: Dict[str, Any] = {
            "instrument_token": tick.instrument_token,
            "last_price": tick.last_price,
            "last_updated": tick.timestamp,
        }
        if tick.day_open is not None:
            fields["day_open"] = tick.day_open
        if tick.day_high is not None:
            fields["day_high"] = tick.day_high
        if tick.day_low is not None:
            fields["day_low"] = tick.day_low
        if tick.cumulative_volume is not None:
            fields["volume"] = tick.cumulative_volume

        windows = builder.snapshot()
        for timeframe, field in SNAPSHOT_FIELDS.items():
            fields[field] = windows[timeframe.value]

        async with self.db.session() as session:
            await SnapshotRepository(session).upsert(builder.symbol, **fields)
        self._tick_count += 1
        return builder

    async def consume(self, tokens: List[int]) -> None:
        """Read the stream until it ends or raises."""
        async for tick in self.broker.stream_ticks(tokens):
            await self.handle_tick(tick)

    async def run(self) -> None:
        """Stream forever, restarting after the broker exhausts its reconnects."""
        tokens = await self.load_universe()
        cooldown = self.scheduler_config.ticker_restart_cooldown

        while True:
            try:
                await self.consume(tokens)
                logger.warning("Tick stream ended")
            except (TickStreamError, BrokerError) as e:
                logger.error(f"Tick stream failed: {e}")

            self._restarts += 1
            await asyncio.sleep(cooldown)
            while not self.calendar.is_market_open():
                await asyncio.sleep(cooldown)
            logger.info(f"Attempting to re-establish tick stream (restart {self._restarts})")

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(), name="market-data")
        logger.info("✓ Market data service started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Market data service stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "instruments": len(self._tokens),
            "ticks_processed": self._tick_count,
            "restarts": self._restarts,
        }


__all__ = ["MarketDataService"]
