"""
Tests for tick → candle aggregation.
"""

from datetime import datetime, timedelta

import pytest

from fotrader.services.candle_builder import (
    Candle,
    CandleBuilder,
    CandleBuilderService,
    Timeframe,
    get_candle_start_time,
)
from tests.conftest import IST


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2025, 10, 15, hour, minute, second, tzinfo=IST)


def feed_minutes(builder: CandleBuilder, start: datetime, minutes: int, price: float = 100.0) -> None:
    """One tick per minute, price rising by 1 each minute."""
    for i in range(minutes):
        builder.process_tick(price + i, 10, start + timedelta(minutes=i))


class TestCandleStartTime:
    """Tests for bucket alignment."""

    def test_alignment(self):
        ts = at(10, 37, 45)
        assert get_candle_start_time(ts, Timeframe.M1) == at(10, 37)
        assert get_candle_start_time(ts, Timeframe.M5) == at(10, 35)
        assert get_candle_start_time(ts, Timeframe.M15) == at(10, 30)


class TestCandle:
    """Tests for the Candle dataclass."""

    def test_update_with_tick(self):
        candle = Candle.from_tick(at(9, 15), 100, 5)
        candle.update_with_tick(103, 2)
        candle.update_with_tick(98, 1)
        assert (candle.open, candle.high, candle.low, candle.close, candle.volume) == (100, 103, 98, 98, 8)

    def test_dict_round_trip_keeps_timezone(self):
        candle = Candle(at(9, 15), 1, 2, 0.5, 1.5, 10)
        restored = Candle.from_dict(candle.to_dict())
        assert restored == candle
        assert restored.timestamp.utcoffset() == timedelta(hours=5, minutes=30)


class TestCandleBuilder:
    """Tests for a single instrument's candle builder."""

    def test_ticks_in_same_minute_update_candle(self):
        builder = CandleBuilder("SYM")
        builder.process_tick(100, 1, at(9, 15, 1))
        builder.process_tick(101, 2, at(9, 15, 30))
        builder.process_tick(99, 3, at(9, 15, 59))

        candles = builder.candles(Timeframe.M1)
        assert len(candles) == 1
        assert candles[0].high == 101
        assert candles[0].low == 99
        assert candles[0].close == 99
        assert candles[0].volume == 6

    def test_five_minute_fold(self):
        builder = CandleBuilder("SYM")
        feed_minutes(builder, at(9, 15), 5)
        assert builder.candles(Timeframe.M5) == []

        completed = builder.process_tick(200, 10, at(9, 20))
        m5 = builder.candles(Timeframe.M5)
        assert len(m5) == 1
        assert completed == m5
        assert m5[0].timestamp == at(9, 15)
        assert m5[0].open == 100
        assert m5[0].close == 104
        assert m5[0].high == 104
        assert m5[0].volume == 50

    def test_fifteen_minute_fold_from_five_minute(self):
        builder = CandleBuilder("SYM")
        feed_minutes(builder, at(9, 15), 16)

        m15 = builder.candles(Timeframe.M15)
        assert len(m15) == 1
        assert m15[0].timestamp == at(9, 15)
        assert m15[0].open == 100
        assert m15[0].close == 114
        assert m15[0].volume == 150
        assert len(builder.candles(Timeframe.M5)) == 3

    def test_gap_in_ticks_still_folds(self):
        builder = CandleBuilder("SYM")
        builder.process_tick(100, 1, at(9, 15))
        builder.process_tick(101, 1, at(9, 17))
        builder.process_tick(102, 1, at(9, 26))

        m5 = builder.candles(Timeframe.M5)
        assert len(m5) == 1
        assert m5[0].timestamp == at(9, 15)
        assert m5[0].close == 101

    def test_late_tick_updates_current_candle(self):
        builder = CandleBuilder("SYM")
        builder.process_tick(100, 1, at(9, 16))
        builder.process_tick(105, 1, at(9, 15, 50))
        assert len(builder.candles(Timeframe.M1)) == 1
        assert builder.current_candle.high == 105

    def test_windows_are_bounded(self):
        builder = CandleBuilder("SYM", max_candles={Timeframe.M1: 3})
        feed_minutes(builder, at(9, 15), 10)
        m1 = builder.candles(Timeframe.M1)
        assert len(m1) == 3
        assert m1[-1].timestamp == at(9, 24)

    def test_default_caps(self):
        builder = CandleBuilder("SYM")
        feed_minutes(builder, at(9, 15), 90)
        assert len(builder.candles(Timeframe.M1)) == 60

    def test_snapshot_and_restore(self):
        builder = CandleBuilder("SYM")
        feed_minutes(builder, at(9, 15), 21)
        snapshot = builder.snapshot()
        assert set(snapshot) == {"1m", "5m", "15m"}

        restored = CandleBuilder("SYM")
        restored.restore({
            Timeframe(tf): [Candle.from_dict(c) for c in items]
            for tf, items in snapshot.items()
        })
        assert restored.snapshot() == snapshot


class TestCandleBuilderService:
    """Tests for the builder registry."""

    def test_routes_by_token(self):
        service = CandleBuilderService()
        service.add_instrument(1, "AAA")
        service.add_instrument(2, "BBB")

        builder = service.process_tick(2, 50, 1, at(9, 15))
        assert builder.symbol == "BBB"
        assert service.get_builder(1).candles(Timeframe.M1) == []

    def test_unknown_token_ignored(self):
        service = CandleBuilderService()
        assert service.process_tick(99, 50, 1, at(9, 15)) is None

    def test_add_is_idempotent(self):
        service = CandleBuilderService()
        first = service.add_instrument(1, "AAA")
        assert service.add_instrument(1, "AAA") is first
        assert service.instrument_count == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
