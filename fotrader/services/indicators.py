"""
Technical Indicator Library
fotrader - F&O Signal & Execution Engine

Pure functions over ordered OHLCV candle sequences (oldest first).

Every function returns None (or False for the boolean detectors) when the
sequence is shorter than the lookback it needs. Short history is the normal
case early in the session, so nothing here raises for it.

Indicators:
- RSI (Wilder smoothing)
- EMA (SMA-seeded)
- MACD (EMA signal line)
- Bollinger Bands (population std dev)
- SuperTrend (iterative, left to right)
- VWAP, ATR
- Volume spike / price breakout detection
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from fotrader.services.candle_builder import Candle


@dataclass(frozen=True)
class MACDResult:
    """MACD line, signal line and histogram at the latest candle."""
    line: float
    signal: float
    histogram: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class BollingerBands:
    """Bollinger Bands at the latest candle."""
    upper: float
    middle: float
    lower: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class SuperTrendResult:
    """SuperTrend value and direction ("up" / "down")."""
    value: float
    trend: str

    @property
    def is_up(self) -> bool:
        return self.trend == "up"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _closes(candles: Sequence[Candle]) -> np.ndarray:
    return np.array([c.close for c in candles], dtype=float)


def _ema_series(values: Sequence[float], period: int) -> List[float]:
    """
    EMA over values, seeded with the SMA of the first `period` values.

    Returns one value per input starting at index period-1.
    """
    if period <= 0 or len(values) < period:
        return []

    multiplier = 2 / (period + 1)
    ema = float(np.mean(values[:period]))
    series = [ema]
    for price in values[period:]:
        ema = (price - ema) * multiplier + ema
        series.append(ema)
    return series


def _true_ranges(candles: Sequence[Candle]) -> List[float]:
    """True range for every candle after the first."""
    ranges = []
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))
    return ranges


# =============================================================================
# Oscillators / Averages
# =============================================================================

def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """
    Wilder's Relative Strength Index on closing prices.

    Returns None if fewer than period + 1 candles.
    """
    if len(candles) < period + 1:
        return None

    changes = np.diff(_closes(candles))
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def calculate_ema(candles: Sequence[Candle], period: int) -> Optional[float]:
    """Exponential moving average of closes. None if fewer than period candles."""
    if len(candles) < period:
        return None

    series = _ema_series(_closes(candles).tolist(), period)
    return series[-1] if series else None


def calculate_macd(
    candles: Sequence[Candle],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> Optional[MACDResult]:
    """
    MACD with EMA oscillator and EMA signal line.

    Returns None if fewer than slow_period + signal_period candles.
    """
    if len(candles) < slow_period + signal_period:
        return None

    closes = _closes(candles).tolist()
    fast = _ema_series(closes, fast_period)
    slow = _ema_series(closes, slow_period)

    # Align fast EMA to the slow EMA start (index slow_period - 1)
    offset = slow_period - fast_period
    macd_line = [f - s for f, s in zip(fast[offset:], slow)]

    signal = _ema_series(macd_line, signal_period)
    if not signal:
        return None

    line = macd_line[-1]
    return MACDResult(line=line, signal=signal[-1], histogram=line - signal[-1])


def calculate_bollinger_bands(
    candles: Sequence[Candle],
    period: int = 20,
    std_dev: float = 2.0,
) -> Optional[BollingerBands]:
    """Bollinger Bands over the last `period` closes. None if fewer than period candles."""
    if len(candles) < period:
        return None

    recent = _closes(candles)[-period:]
    middle = float(np.mean(recent))
    std = float(np.std(recent))

    return BollingerBands(
        upper=middle + std_dev * std,
        middle=middle,
        lower=middle - std_dev * std,
    )


# =============================================================================
# Volatility / Trend
# =============================================================================

def calculate_atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Mean of the last `period` true ranges. None if fewer than period + 1 candles."""
    if len(candles) < period + 1:
        return None

    ranges = _true_ranges(candles)
    return float(np.mean(ranges[-period:]))


def supertrend_series(
    candles: Sequence[Candle],
    period: int = 10,
    multiplier: float = 3.0,
) -> List[SuperTrendResult]:
    """
    SuperTrend for every computable prefix, oldest first.

    Element k corresponds to candles[:period + 1 + k]. At each step the ATR of
    that prefix and the latest candle's midpoint give the basic bands. The
    first point seeds the trend from close vs. lower band; after that the
    trend flips only when close crosses the previous SuperTrend value.
    """
    if len(candles) < period + 1:
        return []

    ranges = _true_ranges(candles)
    window_sum = sum(ranges[:period])
    results: List[SuperTrendResult] = []
    prev: Optional[SuperTrendResult] = None

    for i in range(period, len(candles)):
        if i > period:
            # Slide the ATR window: ranges[j] is the true range of candles[j + 1]
            window_sum += ranges[i - 1] - ranges[i - 1 - period]
        atr = window_sum / period

        candle = candles[i]
        mid = (candle.high + candle.low) / 2
        upper = mid + multiplier * atr
        lower = mid - multiplier * atr

        if prev is None:
            trend = "up" if candle.close > lower else "down"
        elif prev.trend == "up":
            trend = "down" if candle.close < prev.value else "up"
        else:
            trend = "up" if candle.close > prev.value else "down"

        prev = SuperTrendResult(value=lower if trend == "up" else upper, trend=trend)
        results.append(prev)

    return results


def calculate_supertrend(
    candles: Sequence[Candle],
    period: int = 10,
    multiplier: float = 3.0,
) -> Optional[SuperTrendResult]:
    """Latest SuperTrend. None if fewer than period + 1 candles."""
    series = supertrend_series(candles, period, multiplier)
    return series[-1] if series else None


def calculate_vwap(candles: Sequence[Candle]) -> Optional[float]:
    """
    Volume weighted average of typical price over the whole window.

    None if the window is empty or has no volume.
    """
    if not candles:
        return None

    typical = np.array([(c.high + c.low + c.close) / 3 for c in candles], dtype=float)
    volume = np.array([c.volume for c in candles], dtype=float)

    total_volume = float(volume.sum())
    if total_volume == 0:
        return None

    return float((typical * volume).sum() / total_volume)


# =============================================================================
# Detectors
# =============================================================================

def has_volume_spike(
    candles: Sequence[Candle],
    lookback: int = 20,
    threshold: float = 2.0,
) -> bool:
    """Latest volume > threshold x the mean volume of the preceding `lookback` candles."""
    if lookback <= 0 or len(candles) < lookback + 1:
        return False

    previous = candles[-lookback - 1:-1]
    avg_volume = sum(c.volume for c in previous) / lookback
    return candles[-1].volume > avg_volume * threshold


def has_price_breakout(candles: Sequence[Candle], lookback: int = 20) -> bool:
    """Latest close > highest high of the preceding `lookback` candles."""
    if lookback <= 0 or len(candles) < lookback + 1:
        return False

    previous = candles[-lookback - 1:-1]
    return candles[-1].close > max(c.high for c in previous)


def is_small_body_bullish(candle: Candle, body_ratio: float = 0.3) -> bool:
    """Green candle whose body is under `body_ratio` of its range."""
    body = abs(candle.close - candle.open)
    total_range = candle.high - candle.low
    return body < total_range * body_ratio and candle.close > candle.open


__all__ = [
    "MACDResult",
    "BollingerBands",
    "SuperTrendResult",
    "calculate_rsi",
    "calculate_ema",
    "calculate_macd",
    "calculate_bollinger_bands",
    "calculate_atr",
    "calculate_supertrend",
    "supertrend_series",
    "calculate_vwap",
    "has_volume_spike",
    "has_price_breakout",
    "is_small_body_bullish",
]
