from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    """Normalized broker order statuses."""
    PENDING = "PENDING"        # Accepted by us, not yet acknowledged
    OPEN = "OPEN"
    TRIGGER_PENDING = "TRIGGER PENDING"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETE, OrderStatus.CANCELLED, OrderStatus.REJECTED)


class OrderType(str, Enum):
    """Order types."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_LOSS = "SL"
    STOP_LOSS_MARKET = "SL-M"


class ProductType(str, Enum):
    """Product types."""
    CNC = "CNC"
    MIS = "MIS"
    NRML = "NRML"


class Validity(str, Enum):
    DAY = "DAY"
    IOC = "IOC"


class OrderRequest(BaseModel):
    exchange: str
    symbol: str
    quantity: int
    side: OrderSide
    price: Optional[float] = None  # None for Market Order
    order_type: OrderType = OrderType.MARKET
    product: ProductType = ProductType.MIS
    validity: Validity = Validity.DAY
    trigger_price: Optional[float] = None
    variety: str = "regular"
    tag: Optional[str] = None  # Custom tag for identification


class OrderResponse(BaseModel):
    order_id: str
    status: OrderStatus
    message: Optional[str] = None
    filled_quantity: Optional[int] = 0
    average_price: Optional[float] = 0.0

    @property
    def is_success(self) -> bool:
        return bool(self.order_id) and self.status != OrderStatus.REJECTED


class OrderHistoryEntry(BaseModel):
    """One status transition from the broker's order history."""
    order_id: str
    status: OrderStatus
    average_price: float = 0.0
    filled_quantity: int = 0
    pending_quantity: int = 0
    cancelled_quantity: int = 0
    exchange_timestamp: Optional[datetime] = None
    status_message: Optional[str] = None


class Quote(BaseModel):
    symbol: str
    exchange: str = "NSE"
    last_price: float = 0.0
    volume: int = 0
    timestamp: Optional[datetime] = None


class Tick(BaseModel):
    """A single real-time price/volume update."""
    instrument_token: int
    last_price: float
    volume_delta: float = 0.0
    timestamp: datetime
    cumulative_volume: Optional[float] = None
    day_open: Optional[float] = None
    day_high: Optional[float] = None
    day_low: Optional[float] = None
    prev_close: Optional[float] = Field(default=None, description="Previous day close from the feed")
