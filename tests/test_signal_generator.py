"""
Tests for the layered signal pipeline.

Indicator functions are patched in the generator module so each scenario
controls the exact indicator values the layers see. TestRealIndicators
runs the technical and price action layers on real candles instead.
"""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from fotrader.db.models import Instrument, MarketSnapshot, PerformanceAnalytics, Signal
from fotrader.services import signal_generator as sg
from fotrader.services.analytics import AnalyticsService
from fotrader.services.indicators import MACDResult, SuperTrendResult
from fotrader.services.signal_emitter import SignalEmitter
from fotrader.services.signal_generator import SignalGenerator, StaticSectorStrength, strike_for
from tests.conftest import IST, candle_dicts, make_candles


INDEX_PRICE = 20000.0


@pytest.fixture
def bullish_indicators(monkeypatch):
    """
    Index RSI 55 / stock RSI 60, MACD histogram 0.5, SuperTrend up,
    averages and VWAP well below price, volume spike, small-body candle, ATR 1.6.
    """
    def rsi(candles, period=14):
        return 55.0 if candles and candles[-1].close >= INDEX_PRICE else 60.0

    monkeypatch.setattr(sg, "calculate_rsi", rsi)
    monkeypatch.setattr(sg, "calculate_ema", lambda candles, period: 10.0)
    monkeypatch.setattr(sg, "calculate_macd", lambda candles: MACDResult(line=1.0, signal=0.5, histogram=0.5))
    monkeypatch.setattr(sg, "calculate_supertrend", lambda candles, period=10, multiplier=3: SuperTrendResult(1.0, "up"))
    monkeypatch.setattr(sg, "has_volume_spike", lambda candles, lookback=20, threshold=2.0: True)
    monkeypatch.setattr(sg, "calculate_vwap", lambda candles: 10.0)
    monkeypatch.setattr(sg, "is_small_body_bullish", lambda candle, body_ratio=0.3: True)
    monkeypatch.setattr(sg, "calculate_atr", lambda candles, period=14: 1.6)
    return monkeypatch


async def seed_market(db, trading_settings, price=500.0, prev_high=495.0, symbol="SYM"):
    """Benchmarks plus one candidate stock in a strong sector."""
    index_candles = candle_dicts(make_candles([INDEX_PRICE] * 20))
    stock_m15 = candle_dicts(make_candles([price] * 20))
    stock_m5 = candle_dicts(make_candles([price] * 60, minutes=5))
    stock_m1 = candle_dicts(make_candles([price] * 30, minutes=1))

    async with db.session() as session:
        session.add(Instrument(
            symbol=symbol, instrument_token=1001, sector="IT", lot_size=100,
            prev_high=prev_high, avg_volume_20d=50000,
        ))
        for name in (trading_settings.nifty_symbol, trading_settings.banknifty_symbol):
            session.add(MarketSnapshot(
                symbol=name, last_price=INDEX_PRICE, fifteen_minute_candles=index_candles,
            ))
        session.add(MarketSnapshot(
            symbol=symbol,
            instrument_token=1001,
            last_price=price,
            volume=120000,
            one_minute_candles=stock_m1,
            five_minute_candles=stock_m5,
            fifteen_minute_candles=stock_m15,
        ))


def stored_signal(generated_at, stock="OLD"):
    return Signal(
        signal_type="BUY", stock=stock, option=f"{stock} 100 CE",
        current_market_price=100, entry_price=100, target_price=103, stop_loss=99.5,
        risk_reward_ratio=2.0, generated_at=generated_at,
    )


@pytest.fixture
def generator(db, mock_sink, calendar, trading_settings):
    analytics = AnalyticsService(db, calendar)
    emitter = SignalEmitter(db, mock_sink, analytics, calendar)
    return SignalGenerator(
        db, emitter, calendar, trading_settings, StaticSectorStrength(["IT"])
    )


async def all_signals(db):
    async with db.session() as session:
        result = await session.execute(select(Signal).order_by(Signal.generated_at))
        return list(result.scalars().all())


class TestStrike:
    """Tests for strike rounding."""

    @pytest.mark.parametrize("price,expected", [
        (500, 500), (549.99, 500), (550, 600), (2549, 2500), (2550, 2600),
    ])
    def test_nearest_hundred(self, price, expected):
        assert strike_for(price, 100) == expected

    def test_custom_step(self):
        assert strike_for(1237, 50) == 1250


class TestScenarios:
    """End-to-end pipeline scenarios."""

    @pytest.mark.asyncio
    async def test_bullish_candidate_emits_one_buy_signal(
        self, db, generator, bullish_indicators, trading_settings, market_time, mock_sink
    ):
        await seed_market(db, trading_settings)

        signals = await generator.generate_signals(market_time)

        assert len(signals) == 1
        signal = signals[0]
        assert signal.signal_type == "BUY"
        assert signal.option == "SYM 500 CE"
        assert signal.entry_price == 500.0
        assert signal.stop_loss == pytest.approx(497.6)
        assert signal.target_price == pytest.approx(504.8)
        assert signal.risk_reward_ratio == 2.0
        assert signal.stop_loss < signal.entry_price < signal.target_price
        assert (signal.entry_price - signal.stop_loss) / signal.entry_price <= 0.005
        assert signal.indicators["rsi"] == 60.0
        assert signal.indicators["macd"]["histogram"] == 0.5
        assert signal.indicators["atr"] == 1.6

        stored = await all_signals(db)
        assert len(stored) == 1
        assert stored[0].sent_to_telegram is True
        assert stored[0].generated_at == market_time
        mock_sink.send_signal.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entry_below_floor_rejected(
        self, db, generator, bullish_indicators, trading_settings, market_time
    ):
        # Small ATR so only the price floor can reject the trade
        bullish_indicators.setattr(sg, "calculate_atr", lambda candles, period=14: 0.1)
        await seed_market(db, trading_settings, price=40.0, prev_high=39.0)

        assert await generator.generate_signals(market_time) == []
        assert await all_signals(db) == []

    @pytest.mark.asyncio
    async def test_daily_cap_blocks_seventh_signal(
        self, db, generator, bullish_indicators, trading_settings, market_time
    ):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            for i in range(6):
                session.add(stored_signal(market_time.replace(hour=9, minute=15) + timedelta(minutes=i)))

        assert await generator.generate_signals(market_time) == []
        assert len(await all_signals(db)) == 6


class TestGuards:
    """Invocation guards: market hours, cap, gap."""

    @pytest.mark.asyncio
    async def test_market_closed(self, db, generator, bullish_indicators, trading_settings):
        await seed_market(db, trading_settings)
        saturday = datetime(2025, 10, 18, 11, 0, tzinfo=IST)
        assert await generator.generate_signals(saturday) == []

    @pytest.mark.asyncio
    async def test_gap_too_small(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            session.add(stored_signal(market_time - timedelta(minutes=10)))

        assert await generator.generate_signals(market_time) == []

    @pytest.mark.asyncio
    async def test_gap_satisfied(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            session.add(stored_signal(market_time - timedelta(minutes=15)))

        assert len(await generator.generate_signals(market_time)) == 1

    @pytest.mark.asyncio
    async def test_yesterdays_signals_do_not_count(
        self, db, generator, bullish_indicators, trading_settings, market_time
    ):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            for i in range(6):
                session.add(stored_signal(market_time - timedelta(days=1, minutes=i * 20)))

        assert len(await generator.generate_signals(market_time)) == 1

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_full_day_respects_cap_and_gap(
        self, db, generator, bullish_indicators, trading_settings
    ):
        await seed_market(db, trading_settings)
        start = datetime(2025, 10, 15, 9, 15, tzinfo=IST)

        for i in range(0, 80):
            await generator.generate_signals(start + timedelta(minutes=5 * i))

        stored = await all_signals(db)
        assert len(stored) == 6
        for earlier, later in zip(stored, stored[1:]):
            assert later.generated_at - earlier.generated_at >= timedelta(minutes=15)


class TestLayers:
    """Individual filter layers."""

    @pytest.mark.asyncio
    async def test_outside_signal_window(self, db, generator, bullish_indicators, trading_settings):
        await seed_market(db, trading_settings)
        assert await generator.generate_signals(datetime(2025, 10, 15, 9, 20, tzinfo=IST)) == []
        assert await generator.generate_signals(datetime(2025, 10, 15, 15, 0, tzinfo=IST)) == []

    @pytest.mark.asyncio
    async def test_bearish_market_stops_pipeline(
        self, db, generator, bullish_indicators, trading_settings, market_time
    ):
        bullish_indicators.setattr(sg, "calculate_rsi", lambda candles, period=14: 45.0)
        await seed_market(db, trading_settings)

        trend = await generator.check_market_trend()
        assert trend.bullish is False
        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.asyncio
    async def test_missing_index_snapshot_is_not_bullish(self, generator):
        trend = await generator.check_market_trend()
        assert trend.bullish is False
        assert trend.nifty_trend == "unknown"

    @pytest.mark.asyncio
    async def test_weak_sector_excluded(
        self, db, mock_sink, calendar, trading_settings, bullish_indicators, market_time
    ):
        await seed_market(db, trading_settings)
        emitter = SignalEmitter(db, mock_sink, calendar=calendar)
        generator = SignalGenerator(db, emitter, calendar, trading_settings, StaticSectorStrength(["PHARMA"]))
        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.asyncio
    async def test_banned_stock_excluded(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            stock = (await session.execute(select(Instrument))).scalar_one()
            stock.is_banned = True

        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.asyncio
    async def test_no_breakout_rejected(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings, prev_high=510.0)
        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.asyncio
    async def test_wide_stop_rejected(self, db, generator, bullish_indicators, trading_settings, market_time):
        # 1.5 x 2.0 = 3.0 on 500 is a 0.6% stop
        bullish_indicators.setattr(sg, "calculate_atr", lambda candles, period=14: 2.0)
        await seed_market(db, trading_settings)
        assert await generator.run_layered_filters(market_time) == []

    def test_technical_filter_needs_history(self, generator):
        snapshot = MarketSnapshot(
            symbol="SYM", last_price=500.0,
            fifteen_minute_candles=candle_dicts(make_candles([500.0] * 5)),
            five_minute_candles=[],
        )
        assert generator.technical_filter(snapshot) is None
        assert generator.technical_filter(None) is None

    def test_technical_filter_real_indicators_flat_market(self, generator):
        """Unpatched indicators: a flat market has RSI 100/0 edge values and no MACD edge."""
        snapshot = MarketSnapshot(
            symbol="SYM", last_price=500.0,
            fifteen_minute_candles=candle_dicts(make_candles([500.0] * 30)),
            five_minute_candles=candle_dicts(make_candles([500.0] * 72, minutes=5)),
        )
        assert generator.technical_filter(snapshot) is None


def stock_rsi(value):
    """Bullish index RSI, `value` for the stock."""
    def rsi(candles, period=14):
        return 55.0 if candles and candles[-1].close >= INDEX_PRICE else value
    return rsi


def ema_at(period_value, level):
    """EMA of `level` for one period, well below price for the rest."""
    return lambda candles, period: level if period == period_value else 10.0


class TestThresholds:
    """Each technical, price action and risk threshold rejects on its own."""

    @pytest.mark.parametrize("attr,replacement", [
        ("calculate_rsi", stock_rsi(70.1)),
        ("calculate_rsi", stock_rsi(49.9)),
        ("calculate_macd", lambda candles: MACDResult(line=0.5, signal=0.5, histogram=0.0)),
        ("calculate_macd", lambda candles: MACDResult(line=0.4, signal=0.5, histogram=-0.1)),
        ("calculate_supertrend", lambda candles, period=10, multiplier=3: SuperTrendResult(510.0, "down")),
        ("calculate_ema", ema_at(20, 500.0)),
        ("calculate_ema", ema_at(50, 500.0)),
        ("has_volume_spike", lambda candles, lookback=20, threshold=2.0: False),
        ("calculate_vwap", lambda candles: 500.0),
        ("is_small_body_bullish", lambda candle, body_ratio=0.3: False),
    ], ids=[
        "rsi_above_70", "rsi_below_50", "macd_flat", "macd_negative", "supertrend_down",
        "price_at_ema20", "price_at_ema50", "no_volume_spike", "price_at_vwap", "no_small_body",
    ])
    @pytest.mark.asyncio
    async def test_single_failing_check_rejects(
        self, db, generator, bullish_indicators, trading_settings, market_time, attr, replacement
    ):
        await seed_market(db, trading_settings)
        assert len(await generator.run_layered_filters(market_time)) == 1

        bullish_indicators.setattr(sg, attr, replacement)
        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.parametrize("rsi", [50.0, 70.0])
    @pytest.mark.asyncio
    async def test_rsi_band_edges_inclusive(
        self, db, generator, bullish_indicators, trading_settings, market_time, rsi
    ):
        bullish_indicators.setattr(sg, "calculate_rsi", stock_rsi(rsi))
        await seed_market(db, trading_settings)

        [candidate] = await generator.run_layered_filters(market_time)
        assert candidate.indicators.rsi == rsi

    @pytest.mark.asyncio
    async def test_zero_lot_size_rejected(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings)
        async with db.session() as session:
            stock = (await session.execute(select(Instrument))).scalar_one()
            stock.lot_size = 0

        assert await generator.run_layered_filters(market_time) == []

    @pytest.mark.parametrize("price,accepted", [(5000.0, True), (5100.0, False)])
    @pytest.mark.asyncio
    async def test_entry_ceiling(
        self, db, generator, bullish_indicators, trading_settings, market_time, price, accepted
    ):
        # Small ATR so only the price ceiling can reject the trade
        bullish_indicators.setattr(sg, "calculate_atr", lambda candles, period=14: 0.1)
        await seed_market(db, trading_settings, price=price, prev_high=price - 10)

        candidates = await generator.run_layered_filters(market_time)
        assert len(candidates) == (1 if accepted else 0)

    @pytest.mark.parametrize("hour,minute,accepted", [
        (9, 29, False), (9, 30, True), (14, 45, True), (14, 46, False),
    ])
    @pytest.mark.asyncio
    async def test_signal_window_edges(
        self, db, generator, bullish_indicators, trading_settings, hour, minute, accepted
    ):
        await seed_market(db, trading_settings)
        at = datetime(2025, 10, 15, hour, minute, tzinfo=IST)

        candidates = await generator.run_layered_filters(at)
        assert len(candidates) == (1 if accepted else 0)


def rising_market():
    """
    Real candles that pass the technical and price action layers.

    15m: zig-zag uptrend (+2 / -1.2) ending on a small green candle with
    five times the usual volume. 5m: flat then a 20-candle ramp, so MACD is
    still rising. 1m: flat at 485, below the last price.
    """
    closes = [480.0]
    for i in range(28):
        closes.append(closes[-1] + (2.0 if i % 2 == 0 else -1.2))
    closes.append(closes[-1] + 0.2)
    m15 = make_candles(closes)
    m15[-1] = replace(m15[-1], volume=5000.0)

    m5 = make_candles([470.0] * 40 + [471.0 + i for i in range(20)], minutes=5)
    m1 = make_candles([485.0] * 30, minutes=1)

    snapshot = MarketSnapshot(
        symbol="SYM",
        last_price=closes[-1],
        fifteen_minute_candles=candle_dicts(m15),
        five_minute_candles=candle_dicts(m5),
        one_minute_candles=candle_dicts(m1),
    )
    stock = Instrument(symbol="SYM", sector="IT", lot_size=100, prev_high=490.0)
    return stock, snapshot


class TestRealIndicators:
    """Layers evaluated on real candles, without patched indicators."""

    def test_rising_market_passes_technical_and_price_action(self, generator):
        stock, snapshot = rising_market()

        indicators = generator.technical_filter(snapshot)

        assert indicators is not None
        assert 50 <= indicators.rsi <= 70
        assert indicators.macd.histogram > 0
        assert snapshot.last_price > indicators.ema20
        assert snapshot.last_price > indicators.ema50
        assert generator.price_action_filter(stock, snapshot, indicators) is True
        assert indicators.vwap == pytest.approx(485.0)
        assert indicators.price_above_vwap is True

    def test_rising_market_without_breakout(self, generator):
        stock, snapshot = rising_market()
        stock.prev_high = 495.0

        indicators = generator.technical_filter(snapshot)
        assert generator.price_action_filter(stock, snapshot, indicators) is False

    def test_fading_volume_fails_technical(self, generator):
        stock, snapshot = rising_market()
        snapshot.fifteen_minute_candles[-1]["volume"] = 1000.0

        assert generator.technical_filter(snapshot) is None


class TestAnalyticsSideEffect:
    """Persisted signals are counted in the period analytics."""

    @pytest.mark.asyncio
    async def test_signal_counted(self, db, generator, bullish_indicators, trading_settings, market_time):
        await seed_market(db, trading_settings)
        await generator.generate_signals(market_time)

        async with db.session() as session:
            day = await session.get(PerformanceAnalytics, "DAY-2025-10-15")
            week = await session.get(PerformanceAnalytics, "WEEK-2025-42")
        assert day.total_signals == 1
        assert day.buy_signals == 1
        assert week.total_signals == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
