"""
Signal Generator - Layered Stock Filter
fotrader - F&O Signal & Execution Engine

Turns the current market snapshots into at most one BUY/CE signal per run.

Invocation guards:
- Market must be open
- Daily signal cap not reached
- Minimum gap since the latest signal today

Filter layers (any empty layer aborts the run):
1. Market trend   - NIFTY 50 and NIFTY BANK both bullish (RSI > 50, price > EMA21)
2. Sector strength - pluggable provider of strong sectors
3. Universe       - active, F&O enabled, not banned, in a strong sector
4. Time window    - 09:30 to 14:45 exchange time
5. Technical      - RSI band, MACD histogram, SuperTrend, EMA20/EMA50, volume spike
6. Price action   - previous-day-high breakout, above VWAP, small-body bullish candle
7. Risk           - ATR based stop/target, max SL %, min R:R, lot size, price band

The time window is evaluated before the per-instrument layers; the result
is the same and the indicator work is skipped outside the window.
"""

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger

from fotrader.core.config import TradingSettings, settings
from fotrader.db.models import Instrument, MarketSnapshot, Signal, SignalType
from fotrader.db.repository import InstrumentRepository, SignalRepository, SnapshotRepository
from fotrader.db.session import Database
from fotrader.services.calendar_service import CalendarService, get_calendar_service
from fotrader.services.candle_builder import Candle
from fotrader.services.indicators import (
    MACDResult,
    calculate_atr,
    calculate_ema,
    calculate_macd,
    calculate_rsi,
    calculate_supertrend,
    calculate_vwap,
    has_volume_spike,
    is_small_body_bullish,
)
from fotrader.services.signal_emitter import SignalEmitter


SIGNAL_NOTES = "Signal generated based on bullish trend and technical indicators."


# =============================================================================
# Sector strength
# =============================================================================

class SectorStrengthProvider(Protocol):
    """Source of currently strong sectors."""

    async def get_strong_sectors(self) -> List[str]: ...


class StaticSectorStrength:
    """Fixed list of strong sectors from configuration."""

    def __init__(self, sectors: Optional[Sequence[str]] = None):
        self.sectors = list(sectors if sectors is not None else settings.trading.strong_sectors)

    async def get_strong_sectors(self) -> List[str]:
        return list(self.sectors)


# =============================================================================
# Pipeline data
# =============================================================================

@dataclass
class MarketTrend:
    """Benchmark trend verdict."""
    bullish: bool
    nifty_trend: str
    banknifty_trend: str


@dataclass
class IndicatorSnapshot:
    """Indicator values that let a stock through the technical layer."""
    rsi: float
    macd: MACDResult
    supertrend: bool
    ema20: float
    ema50: float
    volume_spike: bool
    vwap: Optional[float] = None
    price_above_vwap: Optional[bool] = None
    atr: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Candidate:
    """A stock that passed every layer, with its trade levels."""
    instrument: Instrument
    snapshot: MarketSnapshot
    indicators: IndicatorSnapshot
    entry_price: float
    stop_loss: float
    target_price: float
    risk_reward_ratio: float

    @property
    def symbol(self) -> str:
        return self.instrument.symbol


def _candles(raw: Optional[List[Dict[str, Any]]]) -> List[Candle]:
    return [Candle.from_dict(c) for c in raw or []]


def strike_for(price: float, step: int = 100) -> int:
    """Nearest strike, halves rounded up."""
    return int(math.floor(price / step + 0.5) * step)


# =============================================================================
# Generator
# =============================================================================

class SignalGenerator:
    """
    Layered signal pipeline.

    `generate_signals` persists at most one signal per invocation (the first
    surviving stock in symbol order); the minimum gap between signals makes
    a second one in the same run invalid anyway.
    """

    def __init__(
        self,
        db: Database,
        emitter: SignalEmitter,
        calendar: Optional[CalendarService] = None,
        trading: Optional[TradingSettings] = None,
        sector_provider: Optional[SectorStrengthProvider] = None,
    ):
        self.db = db
        self.emitter = emitter
        self.calendar = calendar or get_calendar_service()
        self.trading = trading or settings.trading
        self.sector_provider = sector_provider or StaticSectorStrength(self.trading.strong_sectors)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def generate_signals(self, now: Optional[datetime] = None) -> List[Signal]:
        """Run the guards and the filter layers; persist and emit the winner."""
        now = self.calendar.localize(now)
        logger.info("Starting signal generation process...")

        if not self.calendar.is_market_open(now):
            logger.info("Market is closed. Signal generation skipped.")
            return []

        day_start, day_end = self.calendar.start_of_day(now), self.calendar.end_of_day(now)
        async with self.db.session() as session:
            repo = SignalRepository(session)
            signals_today = await repo.count_between(day_start, day_end)
            last_signal = await repo.latest_between(day_start, day_end)

        max_signals = self.trading.max_signals_per_day
        if signals_today >= max_signals:
            logger.info(f"Maximum signals for today ({max_signals}) already generated. Skipping.")
            return []

        if last_signal is not None:
            gap = now - last_signal.generated_at
            if gap < timedelta(minutes=self.trading.min_signal_gap_minutes):
                logger.info(
                    f"Last signal was generated {gap.total_seconds() / 60:.0f} minutes ago. "
                    f"Minimum gap is {self.trading.min_signal_gap_minutes} minutes. Skipping."
                )
                return []

        candidates = await self.run_layered_filters(now)
        if not candidates:
            logger.info("No stocks passed all filters. No signals generated.")
            return []

        logger.info(f"{len(candidates)} stocks passed all filters.")

        remaining = max_signals - signals_today
        signals = []
        for candidate in candidates[:min(remaining, 1)]:
            signal = self.build_signal(candidate, now)
            await self.emitter.emit(signal, now)
            logger.info(f"✓ Signal generated for {candidate.symbol} ({signal.option})")
            signals.append(signal)
        return signals

    # =========================================================================
    # Layers
    # =========================================================================

    async def run_layered_filters(self, now: Optional[datetime] = None) -> List[Candidate]:
        """Candidates that pass every layer, in symbol order."""
        now = self.calendar.localize(now)

        trend = await self.check_market_trend()
        if not trend.bullish:
            logger.info(
                f"Market trend not bullish. Overall market trend: {trend.nifty_trend}, "
                f"Bank Nifty trend: {trend.banknifty_trend}"
            )
            return []
        logger.info("Layer 1 passed: Market trend is bullish")

        strong_sectors = await self.sector_provider.get_strong_sectors()
        if not strong_sectors:
            logger.info("No strong sectors found.")
            return []
        logger.info(f"Layer 2 passed: Strong sectors found: {', '.join(strong_sectors)}")

        async with self.db.session() as session:
            stocks = await InstrumentRepository(session).get_tradable(strong_sectors)
            snapshots = await SnapshotRepository(session).get_many([s.symbol for s in stocks])

        if not stocks:
            logger.info("No active F&O stocks found in strong sectors.")
            return []
        logger.info(f"Layer 3 passed: {len(stocks)} F&O stocks in strong sectors")

        if not self.calendar.is_within_signal_window(now):
            logger.info(
                f"Outside signal generation time window "
                f"({self.trading.signal_window_start} - {self.trading.signal_window_end}). Skipping."
            )
            return []
        logger.info("Layer 4 passed: Within valid time window for signal generation")

        technically_strong = []
        for stock in stocks:
            snapshot = snapshots.get(stock.symbol)
            try:
                indicators = self.technical_filter(snapshot)
            except Exception as e:
                logger.warning(f"Technical filter failed for {stock.symbol}: {e}")
                continue
            if indicators is not None:
                technically_strong.append((stock, snapshot, indicators))

        if not technically_strong:
            logger.info("No stocks passed technical filters.")
            return []
        logger.info(f"Layer 5 passed: {len(technically_strong)} stocks are technically strong")

        price_action_valid = [
            item for item in technically_strong
            if self.price_action_filter(*item)
        ]
        if not price_action_valid:
            logger.info("No stocks passed price action filters.")
            return []
        logger.info(f"Layer 6 passed: {len(price_action_valid)} stocks have valid price action")

        candidates = []
        for stock, snapshot, indicators in price_action_valid:
            candidate = self.risk_filter(stock, snapshot, indicators)
            if candidate is not None:
                candidates.append(candidate)

        logger.info(f"Layer 7 passed: {len(candidates)} stocks passed final risk filter")
        return candidates

    async def check_market_trend(self) -> MarketTrend:
        """Both benchmarks must be above their EMA21 with RSI > 50 on 15m candles."""
        nifty = self.trading.nifty_symbol
        banknifty = self.trading.banknifty_symbol

        async with self.db.session() as session:
            snapshots = await SnapshotRepository(session).get_many([nifty, banknifty])

        if nifty not in snapshots or banknifty not in snapshots:
            return MarketTrend(bullish=False, nifty_trend="unknown", banknifty_trend="unknown")

        nifty_trend = self._index_trend(snapshots[nifty])
        banknifty_trend = self._index_trend(snapshots[banknifty])
        return MarketTrend(
            bullish=nifty_trend == "bullish" and banknifty_trend == "bullish",
            nifty_trend=nifty_trend,
            banknifty_trend=banknifty_trend,
        )

    @staticmethod
    def _index_trend(snapshot: MarketSnapshot) -> str:
        candles = _candles(snapshot.fifteen_minute_candles)
        rsi = calculate_rsi(candles, 14)
        ema21 = calculate_ema(candles, 21)
        if rsi is None or ema21 is None:
            return "bearish"
        return "bullish" if rsi > 50 and snapshot.last_price > ema21 else "bearish"

    def technical_filter(self, snapshot: Optional[MarketSnapshot]) -> Optional[IndicatorSnapshot]:
        """
        RSI/SuperTrend/volume on 15m candles; MACD and EMAs on 5m candles.

        The 15m window holds at most 30 candles, fewer than MACD (35) and
        EMA50 (50) need, so those run on the 72-candle 5m window.
        """
        if snapshot is None:
            return None

        m15 = _candles(snapshot.fifteen_minute_candles)
        if len(m15) < self.trading.min_15m_candles:
            return None
        m5 = _candles(snapshot.five_minute_candles)
        price = snapshot.last_price

        rsi = calculate_rsi(m15, 14)
        if rsi is None or rsi < 50 or rsi > 70:
            return None

        macd = calculate_macd(m5)
        if macd is None or macd.histogram <= 0:
            return None

        supertrend = calculate_supertrend(m15, 10, 3)
        if supertrend is None or not supertrend.is_up:
            return None

        ema20 = calculate_ema(m5, 20)
        ema50 = calculate_ema(m5, 50)
        if ema20 is None or ema50 is None or price <= ema20 or price <= ema50:
            return None

        if not has_volume_spike(m15[-5:], lookback=4):
            return None

        return IndicatorSnapshot(
            rsi=rsi,
            macd=macd,
            supertrend=True,
            ema20=ema20,
            ema50=ema50,
            volume_spike=True,
        )

    def price_action_filter(
        self,
        stock: Instrument,
        snapshot: MarketSnapshot,
        indicators: IndicatorSnapshot,
    ) -> bool:
        """Breakout above previous-day high, above VWAP, recent small-body green candle."""
        price = snapshot.last_price
        is_breakout = stock.prev_high is not None and price > stock.prev_high

        vwap = calculate_vwap(_candles(snapshot.one_minute_candles))
        above_vwap = vwap is not None and price > vwap

        recent = _candles(snapshot.fifteen_minute_candles)[-3:]
        small_body = any(is_small_body_bullish(c) for c in recent)

        indicators.vwap = vwap
        indicators.price_above_vwap = above_vwap
        return is_breakout and above_vwap and small_body

    def risk_filter(
        self,
        stock: Instrument,
        snapshot: MarketSnapshot,
        indicators: IndicatorSnapshot,
    ) -> Optional[Candidate]:
        """ATR based levels; reject wide stops, poor R:R and untradable prices."""
        atr = calculate_atr(_candles(snapshot.fifteen_minute_candles), 14)
        if atr is None or atr <= 0:
            return None

        entry = snapshot.last_price
        stop_loss = entry - self.trading.sl_atr_multiplier * atr
        target = entry + self.trading.target_atr_multiplier * atr

        risk = entry - stop_loss
        reward = target - entry
        if risk / entry * 100 > self.trading.max_sl_pct:
            logger.debug(f"{stock.symbol}: stop loss {risk / entry * 100:.2f}% too wide")
            return None

        risk_reward = reward / risk
        if round(risk_reward, 6) < self.trading.min_risk_reward:
            return None

        if stock.lot_size <= 0:
            return None
        if not self.trading.min_entry_price <= entry <= self.trading.max_entry_price:
            return None

        indicators.atr = atr
        return Candidate(
            instrument=stock,
            snapshot=snapshot,
            indicators=indicators,
            entry_price=entry,
            stop_loss=stop_loss,
            target_price=target,
            risk_reward_ratio=round(risk_reward, 1),
        )

    # =========================================================================
    # Construction
    # =========================================================================

    def build_signal(self, candidate: Candidate, now: datetime) -> Signal:
        """BUY signal on the at-the-money call."""
        strike = strike_for(candidate.entry_price, self.trading.strike_step)
        indicators = candidate.indicators.to_dict()
        indicators["volume"] = candidate.snapshot.volume
        indicators["avg_volume"] = candidate.instrument.avg_volume_20d or 0

        return Signal(
            signal_type=SignalType.BUY.value,
            stock=candidate.symbol,
            option=f"{candidate.symbol} {strike} CE",
            current_market_price=candidate.entry_price,
            entry_price=candidate.entry_price,
            target_price=candidate.target_price,
            stop_loss=candidate.stop_loss,
            risk_reward_ratio=candidate.risk_reward_ratio,
            generated_at=now,
            sent_to_telegram=False,
            executed_order=False,
            indicators=indicators,
            notes=SIGNAL_NOTES,
        )


__all__ = [
    "SectorStrengthProvider",
    "StaticSectorStrength",
    "MarketTrend",
    "IndicatorSnapshot",
    "Candidate",
    "SignalGenerator",
    "strike_for",
]
