import asyncio
import uuid
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from fotrader.brokers.base import BaseBroker
from fotrader.core.exceptions import BrokerError
from fotrader.schemas.broker import (
    OrderHistoryEntry,
    OrderRequest,
    OrderResponse,
    OrderSide,
    OrderStatus,
    OrderType,
    Quote,
    Tick,
)


IST = ZoneInfo("Asia/Kolkata")


class PaperBroker(BaseBroker):
    """
    Paper broker for paper trading and testing.

    Market orders fill immediately at the last set price. Stop-loss and
    limit sell orders rest until `set_price` moves the market through them.
    """

    name = "paper"

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.orders: Dict[str, OrderRequest] = {}
        self.history: Dict[str, List[OrderHistoryEntry]] = {}
        self._ticks: asyncio.Queue = asyncio.Queue()
        self.is_authenticated = False

    async def authenticate(self) -> bool:
        self.is_authenticated = True
        return True

    def set_price(self, symbol: str, price: float) -> None:
        """Move the simulated market and fill any resting orders it crosses."""
        self.prices[symbol] = price
        for order_id, order in self.orders.items():
            if order.symbol != symbol or self._latest(order_id).status.is_terminal:
                continue
            if order.order_type == OrderType.STOP_LOSS_MARKET and price <= (order.trigger_price or 0):
                self._fill(order_id, price)
            elif order.order_type == OrderType.LIMIT and order.side == OrderSide.SELL and price >= (order.price or 0):
                self._fill(order_id, order.price)

    async def get_quote(self, exchange: str, symbol: str) -> Quote:
        if symbol not in self.prices:
            raise BrokerError(f"No paper price for {exchange}:{symbol}")
        return Quote(
            symbol=symbol,
            exchange=exchange,
            last_price=self.prices[symbol],
            timestamp=datetime.now(IST),
        )

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        order_id = uuid.uuid4().hex[:16]
        self.orders[order_id] = order
        self.history[order_id] = [
            OrderHistoryEntry(order_id=order_id, status=OrderStatus.OPEN, pending_quantity=order.quantity)
        ]

        if order.order_type == OrderType.MARKET:
            price = self.prices.get(order.symbol)
            if price is None:
                self._append(order_id, OrderStatus.REJECTED, status_message="No market price")
            else:
                self._fill(order_id, price)

        logger.info(f"Paper order {order_id}: {order.side.value} {order.quantity} {order.symbol} ({order.order_type.value})")
        return OrderResponse(order_id=order_id, status=OrderStatus.OPEN, message="Order placed successfully")

    async def get_order_history(self, order_id: str) -> List[OrderHistoryEntry]:
        return list(self.history.get(order_id, []))

    async def cancel_order(self, order_id: str, variety: str = "regular") -> OrderResponse:
        if order_id not in self.orders or self._latest(order_id).status.is_terminal:
            return OrderResponse(order_id=order_id, status=OrderStatus.REJECTED, message="Order not open")
        self._append(
            order_id,
            OrderStatus.CANCELLED,
            cancelled_quantity=self.orders[order_id].quantity,
        )
        return OrderResponse(order_id=order_id, status=OrderStatus.CANCELLED, message="Order cancelled")

    def push_tick(self, tick: Tick) -> None:
        """Feed a tick into the simulated stream."""
        self._ticks.put_nowait(tick)

    async def stream_ticks(self, instrument_tokens: List[int]) -> AsyncIterator[Tick]:
        wanted = set(instrument_tokens)
        while True:
            tick = await self._ticks.get()
            if tick.instrument_token in wanted:
                yield tick

    def _latest(self, order_id: str) -> OrderHistoryEntry:
        return self.history[order_id][-1]

    def _fill(self, order_id: str, price: float) -> None:
        self._append(
            order_id,
            OrderStatus.COMPLETE,
            average_price=price,
            filled_quantity=self.orders[order_id].quantity,
        )

    def _append(self, order_id: str, status: OrderStatus, **fields) -> None:
        self.history[order_id].append(
            OrderHistoryEntry(
                order_id=order_id,
                status=status,
                exchange_timestamp=datetime.now(IST),
                **fields,
            )
        )
