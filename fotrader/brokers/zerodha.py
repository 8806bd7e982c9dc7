"""
Zerodha Kite Connect Broker
fotrader - F&O Signal & Execution Engine

Brokerage capability backed by the official kiteconnect SDK:
- Session management (access token, daily refresh)
- Quotes, order placement, order history, cancellation
- KiteTicker tick streaming bridged into asyncio

kiteconnect is synchronous; REST calls run in worker threads and ticker
callbacks hand ticks to the event loop through an asyncio.Queue.
"""

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from kiteconnect import KiteConnect, KiteTicker
from loguru import logger

from fotrader.brokers.base import BaseBroker
from fotrader.core.config import SchedulerSettings, ZerodhaSettings, settings
from fotrader.core.exceptions import BrokerError, BrokerNotConnectedError, TickStreamError
from fotrader.schemas.broker import (
    OrderHistoryEntry,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    OrderType,
    Quote,
    Tick,
)


IST = ZoneInfo("Asia/Kolkata")

# Kite reports many intermediate states; anything unknown is treated as still working
STATUS_MAP: Dict[str, OrderStatus] = {
    "COMPLETE": OrderStatus.COMPLETE,
    "CANCELLED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "OPEN": OrderStatus.OPEN,
    "TRIGGER PENDING": OrderStatus.TRIGGER_PENDING,
    "PUT ORDER REQ RECEIVED": OrderStatus.PENDING,
    "VALIDATION PENDING": OrderStatus.PENDING,
    "OPEN PENDING": OrderStatus.PENDING,
    "MODIFY VALIDATION PENDING": OrderStatus.OPEN,
    "MODIFY PENDING": OrderStatus.OPEN,
    "CANCEL PENDING": OrderStatus.OPEN,
    "AMO REQ RECEIVED": OrderStatus.PENDING,
}

_CONNECTED = object()
_GAVE_UP = object()

# Kite tag limit
MAX_TAG_LENGTH = 20


def map_order_status(kite_status: Optional[str]) -> OrderStatus:
    """Normalize a Kite order status string."""
    return STATUS_MAP.get((kite_status or "").upper(), OrderStatus.OPEN)


class ZerodhaBroker(BaseBroker):
    """
    Zerodha Kite Connect broker.

    Features:
    - Token-based session with daily refresh
    - Options order placement on NFO (MARKET / LIMIT / SL-M)
    - Full-mode tick streaming with bounded reconnects
    """

    name = "zerodha"

    def __init__(
        self,
        config: Optional[ZerodhaSettings] = None,
        scheduler_config: Optional[SchedulerSettings] = None,
        kite_factory: Callable[..., Any] = KiteConnect,
        ticker_factory: Callable[..., Any] = KiteTicker,
    ):
        self.config = config or settings.zerodha
        self.scheduler_config = scheduler_config or settings.scheduler
        self.access_token = self.config.access_token
        self._ticker_factory = ticker_factory

        self.kite = kite_factory(api_key=self.config.api_key)
        self.kite_ws = None
        self.is_authenticated = False
        self.user_id: Optional[str] = None

        if self.access_token:
            self.kite.set_access_token(self.access_token)

    def _check_auth(self) -> None:
        if not self.access_token:
            raise BrokerNotConnectedError("Zerodha access token not set")

    async def authenticate(self) -> bool:
        """Verify the current access token by fetching the profile."""
        if not self.access_token:
            logger.warning("Zerodha access token not configured")
            self.is_authenticated = False
            return False

        try:
            profile = await asyncio.to_thread(self.kite.profile)
            self.user_id = profile.get("user_id")
            self.is_authenticated = True
            logger.info(f"Zerodha authenticated for user: {self.user_id}")
            return True
        except Exception as e:
            logger.error(f"Zerodha authentication failed: {e}")
            self.is_authenticated = False
            return False

    async def generate_session(self, request_token: str) -> bool:
        """Exchange an OAuth request token for an access token."""
        try:
            data = await asyncio.to_thread(
                self.kite.generate_session,
                request_token,
                api_secret=self.config.api_secret,
            )
        except Exception as e:
            logger.error(f"Zerodha session generation failed: {e}")
            return False

        self.access_token = data["access_token"]
        self.kite.set_access_token(self.access_token)
        self.user_id = data.get("user_id")
        self.is_authenticated = True
        logger.info(f"Zerodha session generated for user: {self.user_id}")
        return True

    async def refresh_session(self) -> bool:
        """
        Pick up the day's access token from the environment and verify it.

        Kite tokens expire every morning; a fresh token is expected to be
        provisioned (e.g. by the login flow) before the refresh time.
        """
        fresh = ZerodhaSettings()
        if fresh.access_token and fresh.access_token != self.access_token:
            self.access_token = fresh.access_token
            self.kite.set_access_token(self.access_token)
            logger.info("Loaded new Zerodha access token")
        return await self.authenticate()

    async def get_quote(self, exchange: str, symbol: str) -> Quote:
        self._check_auth()
        key = f"{exchange}:{symbol}"
        try:
            data = await asyncio.to_thread(self.kite.quote, [key])
        except Exception as e:
            raise BrokerError(f"Quote request failed for {key}: {e}") from e

        entry = data.get(key)
        if not entry:
            raise BrokerError(f"No quote returned for {key}")

        return Quote(
            symbol=symbol,
            exchange=exchange,
            last_price=entry.get("last_price", 0.0),
            volume=entry.get("volume", 0) or 0,
            timestamp=entry.get("timestamp"),
        )

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """
        Place a new order.

        Returns:
            OrderResponse; on failure status is REJECTED and order_id is empty.
        """
        if not self.access_token:
            return OrderResponse(order_id="", status=OrderStatus.REJECTED, message="Not authenticated")

        order_params: Dict[str, Any] = {
            "tradingsymbol": order.symbol,
            "exchange": order.exchange,
            "transaction_type": order.side.value,
            "quantity": order.quantity,
            "product": order.product.value,
            "order_type": order.order_type.value,
            "validity": order.validity.value,
        }

        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LOSS):
            order_params["price"] = order.price

        if order.order_type in (OrderType.STOP_LOSS, OrderType.STOP_LOSS_MARKET):
            order_params["trigger_price"] = order.trigger_price

        if order.tag:
            order_params["tag"] = order.tag[:MAX_TAG_LENGTH]

        try:
            order_id = await asyncio.to_thread(
                self.kite.place_order,
                variety=order.variety,
                **order_params,
            )
        except Exception as e:
            logger.error(f"Failed to place order for {order.symbol}: {e}")
            return OrderResponse(order_id="", status=OrderStatus.REJECTED, message=str(e))

        logger.info(f"Zerodha order placed: {order_id} for {order.symbol}")
        return OrderResponse(
            order_id=str(order_id),
            status=OrderStatus.PENDING,
            message="Order placed successfully",
        )

    async def get_order_history(self, order_id: str) -> List[OrderHistoryEntry]:
        self._check_auth()
        try:
            history = await asyncio.to_thread(self.kite.order_history, order_id)
        except Exception as e:
            raise BrokerError(f"Order history failed for {order_id}: {e}") from e

        return [
            OrderHistoryEntry(
                order_id=str(item.get("order_id", order_id)),
                status=map_order_status(item.get("status")),
                average_price=item.get("average_price") or 0.0,
                filled_quantity=item.get("filled_quantity") or 0,
                pending_quantity=item.get("pending_quantity") or 0,
                cancelled_quantity=item.get("cancelled_quantity") or 0,
                exchange_timestamp=item.get("exchange_timestamp"),
                status_message=item.get("status_message"),
            )
            for item in history or []
        ]

    async def cancel_order(self, order_id: str, variety: str = "regular") -> OrderResponse:
        if not self.access_token:
            return OrderResponse(order_id=order_id, status=OrderStatus.REJECTED, message="Not authenticated")

        try:
            await asyncio.to_thread(self.kite.cancel_order, variety=variety, order_id=order_id)
        except Exception as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            return OrderResponse(order_id=order_id, status=OrderStatus.REJECTED, message=str(e))

        logger.info(f"Zerodha order cancelled: {order_id}")
        return OrderResponse(order_id=order_id, status=OrderStatus.CANCELLED, message="Order cancelled")

    # WebSocket streaming

    async def stream_ticks(self, instrument_tokens: List[int]) -> AsyncIterator[Tick]:
        """
        Stream full-mode ticks for the given tokens.

        KiteTicker handles reconnects (bounded by ticker_max_reconnects);
        once it gives up, TickStreamError is raised to the consumer.
        """
        self._check_auth()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        last_volume: Dict[int, float] = {}

        ticker = self._ticker_factory(
            self.config.api_key,
            self.access_token,
            reconnect=True,
            reconnect_max_tries=self.scheduler_config.ticker_max_reconnects,
            reconnect_max_delay=int(
                self.scheduler_config.ticker_reconnect_delay * self.scheduler_config.ticker_max_reconnects
            ),
        )

        def on_ticks(ws, ticks):
            loop.call_soon_threadsafe(queue.put_nowait, ticks)

        def on_connect(ws, response):
            logger.info(f"Zerodha WebSocket connected, subscribing {len(instrument_tokens)} tokens")
            ws.subscribe(instrument_tokens)
            ws.set_mode(ws.MODE_FULL, instrument_tokens)
            loop.call_soon_threadsafe(queue.put_nowait, _CONNECTED)

        def on_close(ws, code, reason):
            logger.warning(f"Zerodha WebSocket closed: {code} - {reason}")

        def on_error(ws, code, reason):
            logger.error(f"Zerodha WebSocket error: {code} - {reason}")

        def on_reconnect(ws, attempts_count):
            logger.warning(f"Zerodha WebSocket reconnecting: attempt {attempts_count}")

        def on_noreconnect(ws):
            loop.call_soon_threadsafe(queue.put_nowait, _GAVE_UP)

        ticker.on_ticks = on_ticks
        ticker.on_connect = on_connect
        ticker.on_close = on_close
        ticker.on_error = on_error
        ticker.on_reconnect = on_reconnect
        ticker.on_noreconnect = on_noreconnect

        self.kite_ws = ticker
        ticker.connect(threaded=True)

        try:
            while True:
                item = await queue.get()
                if item is _CONNECTED:
                    continue
                if item is _GAVE_UP:
                    raise TickStreamError("Zerodha WebSocket reconnect attempts exhausted")
                for raw in item:
                    yield self._to_tick(raw, last_volume)
        finally:
            ticker.close()
            self.kite_ws = None
            logger.info("Zerodha WebSocket disconnected")

    @staticmethod
    def _to_tick(raw: Dict[str, Any], last_volume: Dict[int, float]) -> Tick:
        """Convert a KiteTicker tick; cumulative volume becomes a per-tick delta."""
        token = raw["instrument_token"]
        cumulative = raw.get("volume_traded")
        delta = 0.0
        if cumulative is not None:
            previous = last_volume.get(token)
            if previous is not None and cumulative >= previous:
                delta = cumulative - previous
            last_volume[token] = cumulative

        timestamp = raw.get("exchange_timestamp") or raw.get("last_trade_time") or datetime.now(IST)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=IST)

        ohlc = raw.get("ohlc") or {}
        return Tick(
            instrument_token=token,
            last_price=raw["last_price"],
            volume_delta=delta,
            timestamp=timestamp,
            cumulative_volume=cumulative,
            day_open=ohlc.get("open"),
            day_high=ohlc.get("high"),
            day_low=ohlc.get("low"),
            prev_close=ohlc.get("close"),
        )

    async def close(self) -> None:
        if self.kite_ws:
            self.kite_ws.close()
            self.kite_ws = None

    def get_connection_status(self) -> Dict[str, Any]:
        """Get current connection status."""
        return {
            "broker": self.name,
            "authenticated": self.is_authenticated,
            "user_id": self.user_id,
            "websocket_connected": self.kite_ws is not None,
        }
