"""
Domain Models
fotrader - F&O Signal & Execution Engine

SQLAlchemy models for:
- Instrument universe
- Market snapshots (latest price + candle windows)
- Signals
- Orders (with stop-loss / target sub-orders)
- Period analytics and per-trade details
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from fotrader.db.base import Base, MarketDateTime


def new_id() -> str:
    """Short random id; keeps prefixed broker tags inside Kite's 20 chars."""
    return uuid.uuid4().hex[:12]


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ExitReason(str, Enum):
    SL_HIT = "SL_HIT"
    TARGET_HIT = "TARGET_HIT"
    MANUAL_EXIT = "MANUAL_EXIT"
    MARKET_CLOSE = "MARKET_CLOSE"


class SignalOrderStatus(str, Enum):
    """Execution state recorded on the signal."""
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class PeriodType(str, Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


class Instrument(Base):
    """Tradable stock in the F&O universe (plus benchmark indices)."""
    __tablename__ = "instrument"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    exchange: Mapped[str] = mapped_column(String(10), default="NSE")
    instrument_token: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    sector: Mapped[Optional[str]] = mapped_column(String(50))

    # Tradability
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    in_fo: Mapped[bool] = mapped_column(Boolean, default=True)  # near-month derivatives available
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    lot_size: Mapped[int] = mapped_column(Integer, default=0)

    # Previous session
    prev_open: Mapped[Optional[float]] = mapped_column(Float)
    prev_high: Mapped[Optional[float]] = mapped_column(Float)
    prev_low: Mapped[Optional[float]] = mapped_column(Float)
    prev_close: Mapped[Optional[float]] = mapped_column(Float)
    prev_volume: Mapped[Optional[float]] = mapped_column(Float)
    avg_volume_20d: Mapped[Optional[float]] = mapped_column(Float)

    updated_at: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)

    __table_args__ = (
        Index("idx_instrument_sector", "sector"),
    )


class MarketSnapshot(Base):
    """Latest market state and candle windows for one instrument."""
    __tablename__ = "market_snapshot"

    symbol: Mapped[str] = mapped_column(String(50), primary_key=True)
    instrument_token: Mapped[Optional[int]] = mapped_column(Integer)
    last_price: Mapped[float] = mapped_column(Float, default=0.0)
    day_open: Mapped[Optional[float]] = mapped_column(Float)
    day_high: Mapped[Optional[float]] = mapped_column(Float)
    day_low: Mapped[Optional[float]] = mapped_column(Float)
    volume: Mapped[float] = mapped_column(Float, default=0.0)

    one_minute_candles: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    five_minute_candles: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    fifteen_minute_candles: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    last_updated: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)


class Signal(Base):
    """Trade signal produced by the filter pipeline."""
    __tablename__ = "signal"

    id: Mapped[str] = mapped_column(String(12), primary_key=True, default=new_id)
    signal_type: Mapped[str] = mapped_column(String(4), nullable=False)
    stock: Mapped[str] = mapped_column(String(50), nullable=False)
    option: Mapped[str] = mapped_column(String(80), nullable=False)

    current_market_price: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    target_price: Mapped[float] = mapped_column(Float, nullable=False)
    stop_loss: Mapped[float] = mapped_column(Float, nullable=False)
    risk_reward_ratio: Mapped[float] = mapped_column(Float, nullable=False)

    generated_at: Mapped[datetime] = mapped_column(MarketDateTime, nullable=False)
    sent_to_telegram: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)

    # Execution
    executed_order: Mapped[bool] = mapped_column(Boolean, default=False)
    executed_at: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)
    order_status: Mapped[str] = mapped_column(String(20), default=SignalOrderStatus.PENDING.value)
    order_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    # Exit
    exit_price: Mapped[Optional[float]] = mapped_column(Float)
    exit_at: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)
    exit_reason: Mapped[Optional[str]] = mapped_column(String(20))
    profit_loss: Mapped[Optional[float]] = mapped_column(Float)

    indicators: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_signal_generated_at", "generated_at"),
        Index("idx_signal_pending", "sent_to_telegram", "executed_order"),
    )


class Order(Base):
    """
    Entry order for a signal.

    Stop-loss and target legs are tracked as sub-records on the same row.
    """
    __tablename__ = "trade_order"

    id: Mapped[str] = mapped_column(String(12), primary_key=True, default=new_id)
    signal_id: Mapped[str] = mapped_column(String(12), ForeignKey("signal.id"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(50), nullable=False)
    broker_order_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # OPEN, COMPLETE, CANCELLED, REJECTED

    transaction_type: Mapped[str] = mapped_column(String(4), nullable=False)
    exchange: Mapped[str] = mapped_column(String(10), nullable=False)
    trading_symbol: Mapped[str] = mapped_column(String(80), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Float)
    trigger_price: Mapped[Optional[float]] = mapped_column(Float)
    product: Mapped[str] = mapped_column(String(10), default="MIS")
    order_type: Mapped[str] = mapped_column(String(10), default="MARKET")
    variety: Mapped[str] = mapped_column(String(20), default="regular")
    validity: Mapped[str] = mapped_column(String(10), default="DAY")

    average_price: Mapped[Optional[float]] = mapped_column(Float)
    filled_quantity: Mapped[int] = mapped_column(Integer, default=0)
    pending_quantity: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_quantity: Mapped[int] = mapped_column(Integer, default=0)

    order_timestamp: Mapped[datetime] = mapped_column(MarketDateTime, nullable=False)
    exchange_timestamp: Mapped[Optional[datetime]] = mapped_column(MarketDateTime)
    status_message: Mapped[Optional[str]] = mapped_column(Text)
    tag: Mapped[Optional[str]] = mapped_column(String(20))

    # Stop-loss leg
    sl_order_id: Mapped[Optional[str]] = mapped_column(String(50))
    sl_trigger_price: Mapped[Optional[float]] = mapped_column(Float)
    sl_status: Mapped[Optional[str]] = mapped_column(String(20))

    # Target leg
    target_order_id: Mapped[Optional[str]] = mapped_column(String(50))
    target_price: Mapped[Optional[float]] = mapped_column(Float)
    target_status: Mapped[Optional[str]] = mapped_column(String(20))

    __table_args__ = (
        Index("idx_order_account_ts", "account_id", "order_timestamp"),
        Index("idx_order_signal", "signal_id"),
    )


class PerformanceAnalytics(Base):
    """
    Aggregated signal / trade statistics for one day, week or month.

    Rows are keyed DAY-YYYY-MM-DD, WEEK-YYYY-WW, MONTH-YYYY-MM and only
    ever changed through atomic UPDATE expressions.
    """
    __tablename__ = "performance_analytics"

    period_key: Mapped[str] = mapped_column(String(20), primary_key=True)
    period_type: Mapped[str] = mapped_column(String(5), nullable=False)
    period_start: Mapped[datetime] = mapped_column(MarketDateTime, nullable=False)

    total_signals: Mapped[int] = mapped_column(Integer, default=0)
    buy_signals: Mapped[int] = mapped_column(Integer, default=0)
    sell_signals: Mapped[int] = mapped_column(Integer, default=0)
    executed_orders: Mapped[int] = mapped_column(Integer, default=0)

    successful_trades: Mapped[int] = mapped_column(Integer, default=0)
    failed_trades: Mapped[int] = mapped_column(Integer, default=0)
    profit_loss: Mapped[float] = mapped_column(Float, default=0.0)
    gross_profit: Mapped[float] = mapped_column(Float, default=0.0)
    gross_loss: Mapped[float] = mapped_column(Float, default=0.0)

    win_rate: Mapped[float] = mapped_column(Float, default=0.0)
    average_win: Mapped[float] = mapped_column(Float, default=0.0)
    average_loss: Mapped[float] = mapped_column(Float, default=0.0)
    largest_win: Mapped[float] = mapped_column(Float, default=0.0)
    largest_loss: Mapped[float] = mapped_column(Float, default=0.0)


class TradeDetail(Base):
    """Closed trade record (insert-only)."""
    __tablename__ = "trade_detail"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signal_id: Mapped[str] = mapped_column(String(12), ForeignKey("signal.id"), nullable=False)
    stock: Mapped[str] = mapped_column(String(50), nullable=False)
    trade_type: Mapped[str] = mapped_column(String(4), nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[float] = mapped_column(Float, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    profit_loss: Mapped[float] = mapped_column(Float, nullable=False)
    profit_loss_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0)
    exit_reason: Mapped[str] = mapped_column(String(20), nullable=False)
    closed_at: Mapped[datetime] = mapped_column(MarketDateTime, nullable=False)

    __table_args__ = (
        Index("idx_trade_detail_closed_at", "closed_at"),
    )


__all__ = [
    "new_id",
    "SignalType",
    "ExitReason",
    "SignalOrderStatus",
    "PeriodType",
    "Instrument",
    "MarketSnapshot",
    "Signal",
    "Order",
    "PerformanceAnalytics",
    "TradeDetail",
]
