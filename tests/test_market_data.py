"""
Tests for the tick stream to snapshot pipeline.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from fotrader.brokers.paper import PaperBroker
from fotrader.core.config import SchedulerSettings
from fotrader.core.exceptions import TickStreamError
from fotrader.db.models import Instrument, MarketSnapshot
from fotrader.schemas.broker import Tick
from fotrader.services.candle_builder import Timeframe
from fotrader.services.market_data import MarketDataService
from tests.conftest import IST, candle_dicts, make_candles


NIFTY_TOKEN = 256265


def tick(token, price, at, volume=100.0, **extra):
    return Tick(instrument_token=token, last_price=price, volume_delta=volume, timestamp=at, **extra)


async def seed_instrument(db, symbol="SYM", token=1001):
    async with db.session() as session:
        session.add(Instrument(symbol=symbol, instrument_token=token, sector="IT", lot_size=100))


async def load_snapshot(db, symbol):
    async with db.session() as session:
        return await session.get(MarketSnapshot, symbol)


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


@pytest.fixture
def paper():
    return PaperBroker()


@pytest.fixture
def service(db, paper, calendar, trading_settings):
    return MarketDataService(
        db, paper, calendar=calendar, trading=trading_settings,
        scheduler_config=SchedulerSettings(ticker_restart_cooldown=0),
    )


class TestUniverse:
    """Instrument registration and window restore."""

    @pytest.mark.asyncio
    async def test_instruments_and_indices_registered(self, db, service):
        await seed_instrument(db)
        async with db.session() as session:
            session.add(Instrument(symbol="OFFLINE", instrument_token=None, sector="IT"))

        tokens = await service.load_universe()

        assert sorted(tokens) == sorted([1001, 256265, 260105])
        assert service.candles.get_builder(NIFTY_TOKEN).symbol == "NIFTY 50"
        assert service.get_stats()["instruments"] == 3

    @pytest.mark.asyncio
    async def test_windows_restored_from_snapshot(self, db, service):
        await seed_instrument(db)
        async with db.session() as session:
            session.add(MarketSnapshot(
                symbol="SYM",
                last_price=500.0,
                fifteen_minute_candles=candle_dicts(make_candles([500.0] * 12)),
                five_minute_candles=candle_dicts(make_candles([500.0] * 20, minutes=5)),
            ))

        await service.load_universe()

        builder = service.candles.get_builder(1001)
        assert len(builder.candles(Timeframe.M15)) == 12
        assert len(builder.candles(Timeframe.M5)) == 20
        assert builder.candles(Timeframe.M1) == []


class TestHandleTick:
    """Snapshot upserts."""

    @pytest.mark.asyncio
    async def test_tick_creates_snapshot(self, db, service, market_time):
        await seed_instrument(db)
        await service.load_universe()

        await service.handle_tick(tick(
            1001, 501.5, market_time,
            cumulative_volume=120000, day_open=495.0, day_high=502.0, day_low=494.0,
        ))

        snapshot = await load_snapshot(db, "SYM")
        assert snapshot.last_price == 501.5
        assert snapshot.volume == 120000
        assert (snapshot.day_open, snapshot.day_high, snapshot.day_low) == (495.0, 502.0, 494.0)
        assert snapshot.last_updated == market_time
        assert len(snapshot.one_minute_candles) == 1
        assert snapshot.fifteen_minute_candles == []

    @pytest.mark.asyncio
    async def test_minutes_fold_into_five_minute_candle(self, db, service, market_open_time):
        await seed_instrument(db)
        await service.load_universe()

        for minute in range(6):
            await service.handle_tick(tick(1001, 500.0 + minute, market_open_time + timedelta(minutes=minute)))

        snapshot = await load_snapshot(db, "SYM")
        [five] = snapshot.five_minute_candles
        assert five["open"] == 500.0
        assert five["close"] == 504.0
        assert five["volume"] == 500.0
        assert len(snapshot.one_minute_candles) == 6

    @pytest.mark.asyncio
    async def test_missing_optional_fields_keep_previous(self, db, service, market_time):
        await seed_instrument(db)
        await service.load_universe()

        await service.handle_tick(tick(1001, 500.0, market_time, cumulative_volume=1000, day_high=505.0))
        await service.handle_tick(tick(1001, 501.0, market_time + timedelta(seconds=5)))

        snapshot = await load_snapshot(db, "SYM")
        assert snapshot.last_price == 501.0
        assert snapshot.volume == 1000
        assert snapshot.day_high == 505.0

    @pytest.mark.asyncio
    async def test_unknown_token_ignored(self, db, service, market_time):
        await service.load_universe()
        assert await service.handle_tick(tick(999, 10.0, market_time)) is None
        assert service.get_stats()["ticks_processed"] == 0


class TestStreaming:
    """Stream consumption and restart."""

    @pytest.mark.asyncio
    async def test_consume_until_stream_ends(self, db, calendar, trading_settings, market_time):
        async def finite_stream(tokens):
            for i in range(3):
                yield tick(NIFTY_TOKEN, 20000.0 + i, market_time + timedelta(seconds=i))

        broker = MagicMock()
        broker.stream_ticks = finite_stream
        service = MarketDataService(db, broker, calendar=calendar, trading=trading_settings)
        tokens = await service.load_universe()

        await service.consume(tokens)

        snapshot = await load_snapshot(db, "NIFTY 50")
        assert snapshot.last_price == 20002.0
        assert service.get_stats()["ticks_processed"] == 3

    @pytest.mark.asyncio
    async def test_start_stop_with_paper_stream(self, db, service, paper, market_time):
        await seed_instrument(db)

        await service.start()
        assert service.is_running
        assert await wait_for(lambda: service.get_stats()["instruments"] == 3)

        paper.push_tick(tick(1001, 500.0, market_time))
        assert await wait_for(lambda: service.get_stats()["ticks_processed"] == 1)

        await service.stop()
        assert not service.is_running
        assert (await load_snapshot(db, "SYM")).last_price == 500.0

    @pytest.mark.asyncio
    async def test_failed_stream_is_restarted(self, db, calendar, trading_settings):
        async def broken_stream(tokens):
            raise TickStreamError("max reconnects reached")
            yield  # pragma: no cover

        broker = MagicMock()
        broker.stream_ticks = broken_stream
        service = MarketDataService(
            db, broker, calendar=calendar, trading=trading_settings,
            scheduler_config=SchedulerSettings(ticker_restart_cooldown=0),
        )

        await service.start()
        assert await wait_for(lambda: service.get_stats()["restarts"] >= 1)
        await service.stop()
        assert service.get_stats()["running"] is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
