"""
Candle Builder Service
fotrader - F&O Signal & Execution Engine

Aggregates tick data into OHLCV candles.
Features:
- 1m candles built directly from ticks (in-progress candle mutated in place)
- 5m candles folded from closed 1m candles at every 5-minute boundary
- 15m candles folded from 5m candles at every 15-minute boundary
- Bounded rolling windows per timeframe (60 / 72 / 30), oldest evicted first
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional
from enum import Enum

from loguru import logger


class Timeframe(str, Enum):
    """Supported timeframes."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"


TIMEFRAME_MINUTES: Dict[Timeframe, int] = {
    Timeframe.M1: 1,
    Timeframe.M5: 5,
    Timeframe.M15: 15,
}

# Rolling window sizes: 1 hour of 1m, 6 hours of 5m, 7.5 hours of 15m
MAX_CANDLES: Dict[Timeframe, int] = {
    Timeframe.M1: 60,
    Timeframe.M5: 72,
    Timeframe.M15: 30,
}


@dataclass
class Candle:
    """OHLCV candle data structure."""
    timestamp: datetime  # Candle open time
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0

    @classmethod
    def from_tick(cls, timestamp: datetime, price: float, volume: float = 0) -> "Candle":
        """Open a new candle from its first tick."""
        return cls(
            timestamp=timestamp,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
        )

    @classmethod
    def merge(cls, candles: List["Candle"], timestamp: datetime) -> "Candle":
        """Fold consecutive candles into one higher-timeframe candle."""
        return cls(
            timestamp=timestamp,
            open=candles[0].open,
            high=max(c.high for c in candles),
            low=min(c.low for c in candles),
            close=candles[-1].close,
            volume=sum(c.volume for c in candles),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            timestamp=timestamp,
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0)),
        )

    def update_with_tick(self, price: float, volume: float = 0) -> None:
        """Update candle with a new tick."""
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price
        self.volume += volume

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


def get_candle_start_time(dt: datetime, timeframe: Timeframe) -> datetime:
    """
    Get the candle start time for a given datetime and timeframe.

    Args:
        dt: Datetime to align
        timeframe: Target timeframe

    Returns:
        Aligned candle start datetime.
    """
    step = TIMEFRAME_MINUTES[timeframe]
    minute = (dt.minute // step) * step
    return dt.replace(minute=minute, second=0, microsecond=0)


class CandleBuilder:
    """
    Builds 1m/5m/15m candles from tick data for a single instrument.

    The last element of the 1m window is the in-progress candle. 5m and 15m
    windows only ever hold folded (closed) candles.
    """

    def __init__(
        self,
        symbol: str,
        instrument_token: Optional[int] = None,
        max_candles: Optional[Dict[Timeframe, int]] = None,
    ):
        self.symbol = symbol
        self.instrument_token = instrument_token
        caps = {**MAX_CANDLES, **(max_candles or {})}

        self._candles: Dict[Timeframe, Deque[Candle]] = {
            tf: deque(maxlen=caps[tf]) for tf in Timeframe
        }

        # Stats
        self._tick_count = 0
        self._candle_count = 0

    def candles(self, timeframe: Timeframe) -> List[Candle]:
        """Candles for a timeframe, oldest first."""
        return list(self._candles[timeframe])

    @property
    def current_candle(self) -> Optional[Candle]:
        """The in-progress 1m candle."""
        m1 = self._candles[Timeframe.M1]
        return m1[-1] if m1 else None

    def process_tick(self, price: float, volume: float, timestamp: datetime) -> List[Candle]:
        """
        Process a tick and update candles.

        Args:
            price: Last traded price
            volume: Traded volume since the previous tick
            timestamp: Exchange timestamp of the tick

        Returns:
            Higher-timeframe candles completed by this tick (if any).
        """
        self._tick_count += 1
        minute_start = get_candle_start_time(timestamp, Timeframe.M1)
        current = self.current_candle

        # Same minute, or a late tick for an already-closed minute
        if current is not None and minute_start <= current.timestamp:
            current.update_with_tick(price, volume)
            return []

        completed: List[Candle] = []
        if current is not None:
            self._candle_count += 1
            for timeframe in (Timeframe.M5, Timeframe.M15):
                folded = self._fold_if_boundary(timeframe, current.timestamp, minute_start)
                if folded is not None:
                    completed.append(folded)

        self._candles[Timeframe.M1].append(Candle.from_tick(minute_start, price, volume))
        return completed

    def _fold_if_boundary(
        self,
        timeframe: Timeframe,
        previous_start: datetime,
        new_start: datetime,
    ) -> Optional[Candle]:
        """Fold the bucket the previous candle belonged to once a new bucket begins."""
        bucket_start = get_candle_start_time(previous_start, timeframe)
        if get_candle_start_time(new_start, timeframe) == bucket_start:
            return None

        bucket_end = bucket_start + timedelta(minutes=TIMEFRAME_MINUTES[timeframe])
        source = Timeframe.M1 if timeframe == Timeframe.M5 else Timeframe.M5
        members = [
            c for c in self._candles[source]
            if bucket_start <= c.timestamp < bucket_end
        ]
        if not members:
            return None

        folded = Candle.merge(members, bucket_start)
        self._candles[timeframe].append(folded)
        self._candle_count += 1
        logger.debug(f"{self.symbol}: {timeframe.value} candle closed at {bucket_start.isoformat()}")
        return folded

    def restore(self, candles: Dict[Timeframe, Iterable[Candle]]) -> None:
        """Rebuild windows from persisted candles (e.g. after a restart)."""
        for timeframe, items in candles.items():
            window = self._candles[timeframe]
            window.clear()
            window.extend(items)

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        """Serializable view of all three windows."""
        return {
            tf.value: [c.to_dict() for c in self._candles[tf]]
            for tf in Timeframe
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get builder statistics."""
        return {
            "symbol": self.symbol,
            "tick_count": self._tick_count,
            "candle_count": self._candle_count,
            "candles": {tf.value: len(self._candles[tf]) for tf in Timeframe},
        }


class CandleBuilderService:
    """
    Registry of candle builders keyed by instrument token.
    """

    def __init__(self, max_candles: Optional[Dict[Timeframe, int]] = None):
        self._max_candles = max_candles
        self._builders: Dict[int, CandleBuilder] = {}

    def add_instrument(self, instrument_token: int, symbol: str) -> CandleBuilder:
        """Register an instrument for candle building."""
        builder = self._builders.get(instrument_token)
        if builder is None:
            builder = CandleBuilder(symbol, instrument_token, self._max_candles)
            self._builders[instrument_token] = builder
            logger.debug(f"Added candle builder for {symbol} ({instrument_token})")
        return builder

    def remove_instrument(self, instrument_token: int) -> None:
        """Stop building candles for an instrument."""
        self._builders.pop(instrument_token, None)

    def get_builder(self, instrument_token: int) -> Optional[CandleBuilder]:
        return self._builders.get(instrument_token)

    def process_tick(
        self,
        instrument_token: int,
        price: float,
        volume: float,
        timestamp: datetime,
    ) -> Optional[CandleBuilder]:
        """
        Route a tick to its instrument's builder.

        Returns the updated builder, or None for unregistered instruments.
        """
        builder = self._builders.get(instrument_token)
        if builder is None:
            return None
        builder.process_tick(price, volume, timestamp)
        return builder

    @property
    def instrument_count(self) -> int:
        return len(self._builders)

    def get_stats(self) -> Dict[str, Any]:
        """Get service statistics."""
        return {
            "instruments": len(self._builders),
            "builders": [b.get_stats() for b in self._builders.values()],
        }


__all__ = [
    "Timeframe",
    "TIMEFRAME_MINUTES",
    "MAX_CANDLES",
    "Candle",
    "get_candle_start_time",
    "CandleBuilder",
    "CandleBuilderService",
]
