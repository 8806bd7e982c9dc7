"""
Pydantic Schemas - Trading
fotrader - F&O Signal & Execution Engine

API schemas for:
- Signals
- Orders
- Scheduler status
- Manual job results
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


# =============================================================================
# Base Schemas
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Signal Schemas
# =============================================================================

class SignalResponse(BaseSchema):
    """Signal as stored."""
    id: str
    signal_type: str
    stock: str
    option: str
    current_market_price: float
    entry_price: float
    target_price: float
    stop_loss: float
    risk_reward_ratio: float
    generated_at: datetime

    sent_to_telegram: bool
    sent_at: Optional[datetime] = None
    executed_order: bool
    executed_at: Optional[datetime] = None
    order_status: Optional[str] = None
    order_details: Optional[Dict[str, Any]] = None

    exit_price: Optional[float] = None
    exit_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    profit_loss: Optional[float] = None

    indicators: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class SignalGenerationResponse(BaseModel):
    """Result of a manual pipeline run."""
    generated: int
    signals: List[SignalResponse]


# =============================================================================
# Order Schemas
# =============================================================================

class OrderResponse(BaseSchema):
    """Entry order with its stop-loss / target legs."""
    id: str
    signal_id: str
    account_id: str
    broker_order_id: Optional[str] = None
    status: str

    transaction_type: str
    exchange: str
    trading_symbol: str
    quantity: int
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    product: str
    order_type: str
    variety: str
    validity: str

    average_price: Optional[float] = None
    filled_quantity: int
    pending_quantity: int
    cancelled_quantity: int

    order_timestamp: Optional[datetime] = None
    exchange_timestamp: Optional[datetime] = None
    status_message: Optional[str] = None
    tag: Optional[str] = None

    sl_order_id: Optional[str] = None
    sl_trigger_price: Optional[float] = None
    sl_status: Optional[str] = None
    target_order_id: Optional[str] = None
    target_price: Optional[float] = None
    target_status: Optional[str] = None


class ExecutionRunResponse(BaseModel):
    """Result of a manual execution run."""
    pending: int = 0
    placed: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0


class ReconciliationResponse(BaseModel):
    closed: int


class SquareOffResponse(BaseModel):
    closed: List[str]


# =============================================================================
# Scheduler Schemas
# =============================================================================

class SchedulerStatus(BaseModel):
    running: bool
    jobs_active: bool
    market_open: bool
    last_runs: Dict[str, str] = {}
