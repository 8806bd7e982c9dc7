"""
Order Execution Service
fotrader - F&O Signal & Execution Engine

Complete order lifecycle for approved signals:
- Account policy and daily trade cap
- Option symbol resolution and price band check
- Capital based sizing
- MARKET entry, bounded fill polling (TIMEOUT after the attempt limit)
- Protective SL-M and LIMIT target orders once the entry fills
- Completion reconciliation: one leg fills, the sibling is cancelled,
  P&L is booked into the signal and the analytics

Order Flow:
Signal → Price Band → Size → Place → Poll Fill → SL + Target → Reconcile → P&L
"""

import asyncio
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from fotrader.brokers.base import BaseBroker
from fotrader.core.config import TradingSettings, settings
from fotrader.core.exceptions import BrokerError, InvalidOptionSymbolError
from fotrader.db.models import ExitReason, Order, Signal, SignalType
from fotrader.db.repository import OrderRepository, SignalRepository
from fotrader.db.session import Database
from fotrader.schemas.broker import (
    OrderHistoryEntry,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    ProductType,
    Validity,
)
from fotrader.services.analytics import AnalyticsService
from fotrader.services.calendar_service import CalendarService, get_calendar_service
from fotrader.services.notifier import NotificationSink


TIMEOUT = "TIMEOUT"
OPEN = OrderStatus.OPEN.value
COMPLETE = OrderStatus.COMPLETE.value
CANCELLED = OrderStatus.CANCELLED.value
# A leg that filled after its sibling already closed the trade
FILLED_AFTER_EXIT = "FILLED_AFTER_EXIT"


class ExecutionOutcome(str, Enum):
    """Result of processing one pending signal."""
    SKIPPED = "SKIPPED"                    # Not attempted this cycle
    PLACEMENT_FAILED = "PLACEMENT_FAILED"  # Broker refused the entry
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def placed(self) -> bool:
        return self not in (ExecutionOutcome.SKIPPED, ExecutionOutcome.PLACEMENT_FAILED)


@dataclass
class FillResult:
    """Outcome of waiting for an order to fill."""
    status: str
    average_price: float = 0.0
    filled_quantity: int = 0
    exchange_timestamp: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.status == COMPLETE


@dataclass
class ExecutionSummary:
    """Counters for one execution run."""
    pending: int = 0
    placed: int = 0
    executed: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# =============================================================================
# Option symbols
# =============================================================================

class ExpiryResolver:
    """
    Builds exchange trading symbols from "{SYMBOL} {STRIKE} {CE|PE}" ids.

    Uses the NFO monthly convention: underlying + expiry code + strike +
    option type, e.g. RELIANCE25OCT2500CE.
    """

    def __init__(self, calendar: Optional[CalendarService] = None, code_format: Optional[str] = None):
        self.calendar = calendar or get_calendar_service()
        self.code_format = code_format or settings.trading.expiry_code_format

    def expiry_code(self, at: Optional[datetime] = None) -> str:
        expiry = self.calendar.current_monthly_expiry(at)
        return expiry.strftime(self.code_format).upper()

    def trading_symbol(self, option: str, at: Optional[datetime] = None) -> str:
        parts = option.split()
        if len(parts) < 3:
            raise InvalidOptionSymbolError(f"Invalid option format: {option!r}")
        symbol, strike, option_type = parts[0], parts[1], parts[2]
        return f"{symbol}{self.expiry_code(at)}{strike}{option_type}"


# =============================================================================
# Execution service
# =============================================================================

class OrderExecutionService:
    """
    Executes pending signals against the broker and reconciles exits.

    One account places all automated trades (`trading.account_id`).
    """

    def __init__(
        self,
        db: Database,
        broker: BaseBroker,
        sink: NotificationSink,
        analytics: Optional[AnalyticsService] = None,
        calendar: Optional[CalendarService] = None,
        trading: Optional[TradingSettings] = None,
        expiry_resolver: Optional[ExpiryResolver] = None,
    ):
        self.db = db
        self.broker = broker
        self.sink = sink
        self.calendar = calendar or get_calendar_service()
        self.trading = trading or settings.trading
        self.analytics = analytics or AnalyticsService(db, self.calendar)
        self.expiry_resolver = expiry_resolver or ExpiryResolver(self.calendar, self.trading.expiry_code_format)

    def _tag(self, prefix: str, signal_id: str) -> str:
        return f"{prefix}{signal_id}"[:20]

    async def _notify_order(self, signal: Signal, executed: bool, message: str) -> None:
        try:
            await self.sink.send_order_update(signal, executed, message)
        except Exception as e:
            logger.error(f"Order update notification failed for {signal.id}: {e}")

    async def _alert(self, level: str, message: str) -> None:
        try:
            await self.sink.send_system_alert(level, message)
        except Exception as e:
            logger.error(f"System alert failed: {e}")

    # =========================================================================
    # Entry execution
    # =========================================================================

    async def process_pending_signals(self, now: Optional[datetime] = None) -> ExecutionSummary:
        """Execute today's notified, unexecuted signals, oldest first."""
        now = self.calendar.localize(now)
        summary = ExecutionSummary()

        if not self.calendar.is_market_open(now):
            logger.info("Market is closed. Order execution skipped.")
            return summary

        account_id = self.trading.account_id
        if not self.trading.auto_trading_enabled or not account_id:
            logger.info("Auto-trading is not enabled for any account. Order execution skipped.")
            return summary

        day_start, day_end = self.calendar.start_of_day(now), self.calendar.end_of_day(now)
        async with self.db.session() as session:
            orders_today = await OrderRepository(session).count_for_account_between(account_id, day_start, day_end)
            pending = await SignalRepository(session).get_pending_execution(day_start, day_end)

        max_trades = self.trading.max_trades_per_day
        if orders_today >= max_trades:
            logger.info(f"Maximum trades for today ({max_trades}) already executed. Skipping.")
            return summary

        if not pending:
            logger.info("No pending signals to execute.")
            return summary

        summary.pending = len(pending)
        logger.info(f"Found {len(pending)} pending signals to process.")

        for signal in pending:
            if orders_today >= max_trades:
                break

            try:
                outcome = await self.execute_signal(signal, now)
            except BrokerError as e:
                logger.error(f"Broker error executing signal {signal.id}: {e}")
                await self._notify_order(signal, False, f"Error executing order: {e}")
                summary.failed += 1
                continue

            if outcome.placed:
                orders_today += 1
                summary.placed += 1
            if outcome == ExecutionOutcome.COMPLETE:
                summary.executed += 1
            elif outcome == ExecutionOutcome.SKIPPED:
                summary.skipped += 1
            else:
                summary.failed += 1

        return summary

    async def execute_signal(self, signal: Signal, now: Optional[datetime] = None) -> ExecutionOutcome:
        """Place, wait for, and protect one entry order."""
        now = self.calendar.localize(now)
        logger.info(f"Processing signal for {signal.stock} ({signal.option})")

        try:
            trading_symbol = self.expiry_resolver.trading_symbol(signal.option, now)
        except InvalidOptionSymbolError as e:
            logger.error(f"Signal {signal.id}: {e}")
            return ExecutionOutcome.SKIPPED

        exchange = self.trading.option_exchange
        try:
            quote = await self.broker.get_quote(exchange, trading_symbol)
        except BrokerError as e:
            logger.error(f"Failed to get quote for {trading_symbol}: {e}")
            return ExecutionOutcome.SKIPPED

        current_price = quote.last_price or 0.0
        band = self.trading.price_band_pct / 100
        low, high = signal.entry_price * (1 - band), signal.entry_price * (1 + band)
        if not low <= current_price <= high:
            logger.info(f"Current price ({current_price}) is outside our buy range for {signal.option}. Skipping.")
            return ExecutionOutcome.SKIPPED

        quantity = math.floor(self.trading.max_capital_per_trade / current_price) if current_price > 0 else 0
        if quantity <= 0:
            logger.info(f"Calculated quantity is zero for {signal.option} at price {current_price}. Skipping.")
            return ExecutionOutcome.SKIPPED

        tag = self._tag(self.trading.entry_tag_prefix, signal.id)
        product = ProductType(self.trading.product)
        response = await self.broker.place_order(
            OrderRequest(
                exchange=exchange,
                symbol=trading_symbol,
                quantity=quantity,
                side=OrderSide.BUY,
                order_type=OrderType.MARKET,
                product=product,
                validity=Validity.DAY,
                tag=tag,
            )
        )

        if not response.is_success:
            logger.error(f"Failed to place order for {signal.option}: {response.message}")
            await self._notify_order(
                signal,
                False,
                f"Failed to place order for {quantity} shares at market price. "
                f"Error: {response.message or 'Unknown error'}",
            )
            async with self.db.session() as session:
                await SignalRepository(session).mark_failed(
                    signal.id, {"quantity": quantity, "status": "PLACEMENT_FAILED", "error": response.message}
                )
            return ExecutionOutcome.PLACEMENT_FAILED

        logger.info(f"Order placed successfully for {signal.option}. Order ID: {response.order_id}")

        order = Order(
            signal_id=signal.id,
            account_id=self.trading.account_id,
            broker_order_id=response.order_id,
            status=OPEN,
            transaction_type=OrderSide.BUY.value,
            exchange=exchange,
            trading_symbol=trading_symbol,
            quantity=quantity,
            product=product.value,
            order_type=OrderType.MARKET.value,
            variety="regular",
            validity=Validity.DAY.value,
            filled_quantity=0,
            pending_quantity=quantity,
            cancelled_quantity=0,
            order_timestamp=now,
            tag=tag,
        )
        async with self.db.session() as session:
            await OrderRepository(session).add(order)

        fill = await self.wait_for_fill(response.order_id)

        if not fill.executed:
            await self._record_unfilled(order, fill)
            async with self.db.session() as session:
                await SignalRepository(session).mark_failed(
                    signal.id,
                    {"order_id": response.order_id, "quantity": quantity, "status": fill.status},
                )
            await self._notify_order(
                signal,
                False,
                f"Order was placed but execution failed or timed out. Status: {fill.status}",
            )
            return ExecutionOutcome(fill.status)

        filled = fill.filled_quantity or quantity
        executed_at = now
        async with self.db.session() as session:
            await SignalRepository(session).mark_executed(
                signal.id,
                executed_at,
                {
                    "order_id": response.order_id,
                    "order_price": fill.average_price,
                    "quantity": quantity,
                    "filled_quantity": filled,
                    "status": fill.status,
                },
            )
            await OrderRepository(session).update_fields(
                order.id,
                status=COMPLETE,
                filled_quantity=filled,
                pending_quantity=0,
                cancelled_quantity=quantity - filled,
                average_price=fill.average_price,
                exchange_timestamp=fill.exchange_timestamp or now,
            )
        signal.executed_order = True
        signal.executed_at = executed_at

        logger.info(f"✓ Order {response.order_id} filled: {filled} @ {fill.average_price:.2f}")
        await self._notify_order(
            signal,
            True,
            f"Order executed successfully for {filled} shares at price ₹{fill.average_price:.2f}.",
        )
        await self.analytics.record_execution(now)

        await self.place_protective_orders(signal, order.id, trading_symbol, filled)
        return ExecutionOutcome.COMPLETE

    async def wait_for_fill(self, broker_order_id: str) -> FillResult:
        """
        Poll order history until a terminal status or the attempts run out.

        An empty history or a broker error uses up one attempt.
        """
        interval = self.trading.order_poll_interval_seconds

        for attempt in range(1, self.trading.order_poll_max_attempts + 1):
            try:
                history = await self.broker.get_order_history(broker_order_id)
            except BrokerError as e:
                logger.warning(f"Error checking order status for {broker_order_id} (attempt {attempt}): {e}")
                history = []

            if history:
                latest = history[-1]
                if latest.status == OrderStatus.COMPLETE:
                    return FillResult(
                        status=COMPLETE,
                        average_price=latest.average_price,
                        filled_quantity=latest.filled_quantity,
                        exchange_timestamp=latest.exchange_timestamp,
                    )
                if latest.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                    return FillResult(
                        status=latest.status.value,
                        filled_quantity=latest.filled_quantity,
                        exchange_timestamp=latest.exchange_timestamp,
                        message=latest.status_message,
                    )

            await asyncio.sleep(interval)

        logger.warning(f"Order {broker_order_id} not filled after {self.trading.order_poll_max_attempts} checks")
        return FillResult(status=TIMEOUT)

    async def _record_unfilled(self, order: Order, fill: FillResult) -> None:
        if fill.status == TIMEOUT:
            values: Dict[str, Any] = {"status": OPEN, "status_message": TIMEOUT}
        else:
            filled = min(fill.filled_quantity, order.quantity)
            values = {
                "status": fill.status,
                "filled_quantity": filled,
                "pending_quantity": 0,
                "cancelled_quantity": order.quantity - filled,
                "status_message": fill.message,
                "exchange_timestamp": fill.exchange_timestamp,
            }
        async with self.db.session() as session:
            await OrderRepository(session).update_fields(order.id, **values)

    async def place_protective_orders(
        self,
        signal: Signal,
        order_id: str,
        trading_symbol: str,
        quantity: int,
    ) -> None:
        """Stop-loss (SL-M) and target (LIMIT) sells for a filled entry."""
        exchange = self.trading.option_exchange
        product = ProductType(self.trading.product)

        sl_response = await self.broker.place_order(
            OrderRequest(
                exchange=exchange,
                symbol=trading_symbol,
                quantity=quantity,
                side=OrderSide.SELL,
                order_type=OrderType.STOP_LOSS_MARKET,
                product=product,
                trigger_price=signal.stop_loss,
                tag=self._tag(self.trading.sl_tag_prefix, signal.id),
            )
        )
        if sl_response.is_success:
            logger.info(f"Stop loss order placed for {signal.option}. Order ID: {sl_response.order_id}")
            async with self.db.session() as session:
                await OrderRepository(session).update_fields(
                    order_id,
                    sl_order_id=sl_response.order_id,
                    sl_trigger_price=signal.stop_loss,
                    sl_status=OPEN,
                )
        else:
            logger.error(f"Failed to place stop loss order for {signal.option}: {sl_response.message}")
            await self._alert("error", f"Failed to place stop loss order for {signal.option}. Manual intervention required.")

        target_response = await self.broker.place_order(
            OrderRequest(
                exchange=exchange,
                symbol=trading_symbol,
                quantity=quantity,
                side=OrderSide.SELL,
                order_type=OrderType.LIMIT,
                product=product,
                price=signal.target_price,
                tag=self._tag(self.trading.target_tag_prefix, signal.id),
            )
        )
        if target_response.is_success:
            logger.info(f"Target order placed for {signal.option}. Order ID: {target_response.order_id}")
            async with self.db.session() as session:
                await OrderRepository(session).update_fields(
                    order_id,
                    target_order_id=target_response.order_id,
                    target_price=signal.target_price,
                    target_status=OPEN,
                )
        else:
            logger.error(f"Failed to place target order for {signal.option}: {target_response.message}")
            await self._alert("error", f"Failed to place target order for {signal.option}. Manual intervention required.")

    # =========================================================================
    # Completion reconciliation
    # =========================================================================

    async def check_completed_orders(self, now: Optional[datetime] = None) -> int:
        """
        Detect filled stop-loss / target legs and close their trades.

        Returns the number of trades closed. Orders without working legs are
        never selected, so repeated runs are no-ops.
        """
        now = self.calendar.localize(now)
        if not self.calendar.is_market_open(now):
            return 0

        async with self.db.session() as session:
            open_orders = await OrderRepository(session).get_with_open_legs()

        if not open_orders:
            return 0

        logger.info(f"Found {len(open_orders)} open orders to check.")
        closed = 0
        for order in open_orders:
            try:
                if await self._reconcile_order(order, now):
                    closed += 1
            except BrokerError as e:
                logger.error(f"Broker error reconciling order {order.id}: {e}")
        return closed

    async def _latest_history(self, broker_order_id: str) -> Optional[OrderHistoryEntry]:
        """Latest history entry, or None when the broker has nothing or fails."""
        try:
            history = await self.broker.get_order_history(broker_order_id)
        except BrokerError as e:
            logger.error(f"Failed to fetch history for order {broker_order_id}: {e}")
            return None
        return history[-1] if history else None

    async def _reconcile_order(self, order: Order, now: datetime) -> bool:
        if order.sl_status == OPEN and order.sl_order_id:
            latest = await self._latest_history(order.sl_order_id)
            if latest is not None:
                if latest.status == OrderStatus.COMPLETE:
                    return await self.handle_completion(order, ExitReason.SL_HIT, latest, now)
                if latest.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                    async with self.db.session() as session:
                        await OrderRepository(session).transition_leg(order.id, "sl", OPEN, latest.status.value)
                    logger.warning(f"Stop loss order {order.sl_order_id} {latest.status.value}")

        if order.target_status == OPEN and order.target_order_id:
            latest = await self._latest_history(order.target_order_id)
            if latest is not None:
                if latest.status == OrderStatus.COMPLETE:
                    return await self.handle_completion(order, ExitReason.TARGET_HIT, latest, now)
                if latest.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
                    async with self.db.session() as session:
                        await OrderRepository(session).transition_leg(order.id, "target", OPEN, latest.status.value)
                    logger.warning(f"Target order {order.target_order_id} {latest.status.value}")

        return False

    async def handle_completion(
        self,
        order: Order,
        exit_reason: ExitReason,
        record: OrderHistoryEntry,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Close the trade for a filled leg: cancel the sibling, book P&L, notify.

        Returns False if the leg was already closed by an earlier run, or if
        the other leg had already closed the trade. In the latter case the
        late fill is recorded as FILLED_AFTER_EXIT and alerted.
        """
        now = self.calendar.localize(now)
        leg, sibling = ("sl", "target") if exit_reason == ExitReason.SL_HIT else ("target", "sl")

        async with self.db.session() as session:
            signal = await SignalRepository(session).get(order.signal_id)
            if signal is None:
                logger.error(f"Signal {order.signal_id} for order {order.id} not found")
                return False
            orders = OrderRepository(session)
            closed = await orders.close_leg(order.id, leg)
            late_fill = not closed and await orders.transition_leg(order.id, leg, OPEN, FILLED_AFTER_EXIT)

        if late_fill:
            logger.error(f"{leg} order for {signal.option} filled after the trade was closed ({signal.exit_reason})")
            await self._alert(
                "error",
                f"Both exit orders filled for {signal.option}. Position is short; manual intervention required.",
            )
        if not closed:
            return False

        sibling_id = order.target_order_id if sibling == "target" else order.sl_order_id
        sibling_status = order.target_status if sibling == "target" else order.sl_status
        if sibling_status == OPEN and sibling_id:
            await self._cancel_leg(order, sibling, sibling_id)

        if exit_reason == ExitReason.SL_HIT:
            fallback = order.sl_trigger_price or signal.stop_loss
        else:
            fallback = order.target_price or signal.target_price
        exit_price = record.average_price or fallback

        await self._close_trade(order, signal, exit_reason, exit_price, now)
        return True

    async def _cancel_leg(self, order: Order, leg: str, broker_order_id: str) -> bool:
        """Best-effort cancel of a working leg; the stored status changes only on success."""
        try:
            response = await self.broker.cancel_order(broker_order_id)
        except BrokerError as e:
            logger.error(f"Failed to cancel {leg} order {broker_order_id}: {e}")
            return False

        if response.status == OrderStatus.REJECTED:
            logger.error(f"Failed to cancel {leg} order {broker_order_id}: {response.message}")
            return False

        async with self.db.session() as session:
            await OrderRepository(session).transition_leg(order.id, leg, OPEN, CANCELLED)
        logger.info(f"Cancelled {leg} order {broker_order_id}")
        return True

    async def _close_trade(
        self,
        order: Order,
        signal: Signal,
        exit_reason: ExitReason,
        exit_price: float,
        exit_at: datetime,
    ) -> float:
        entry_price = order.average_price or signal.entry_price
        quantity = order.filled_quantity

        if signal.signal_type == SignalType.BUY.value:
            profit_loss = (exit_price - entry_price) * quantity
        else:
            profit_loss = (entry_price - exit_price) * quantity
        profit_loss = round(profit_loss, 2)

        async with self.db.session() as session:
            await SignalRepository(session).record_exit(
                signal.id, exit_price, exit_at, exit_reason.value, profit_loss
            )
        signal.exit_price = exit_price
        signal.exit_at = exit_at
        signal.exit_reason = exit_reason.value
        signal.profit_loss = profit_loss

        await self.analytics.record_trade(
            signal_id=signal.id,
            stock=signal.stock,
            trade_type=signal.signal_type,
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            profit_loss=profit_loss,
            exit_reason=exit_reason.value,
            closed_at=exit_at,
            opened_at=signal.executed_at,
        )

        try:
            await self.sink.send_pnl_update(signal, exit_reason.value)
        except Exception as e:
            logger.error(f"P&L notification failed for {signal.id}: {e}")

        logger.info(f"Trade completed for {signal.option}. P&L: {profit_loss}. Reason: {exit_reason.value}")
        return profit_loss

    # =========================================================================
    # Manual exit
    # =========================================================================

    async def square_off_open_positions(
        self,
        reason: ExitReason = ExitReason.MARKET_CLOSE,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Exit every filled position that still has a working leg.

        Both legs are cancelled first; a position whose legs cannot all be
        cancelled is left alone and alerted. Returns the closed order ids.
        """
        now = self.calendar.localize(now)
        async with self.db.session() as session:
            open_orders = await OrderRepository(session).get_with_open_legs()

        closed: List[str] = []
        for order in open_orders:
            async with self.db.session() as session:
                signal = await SignalRepository(session).get(order.signal_id)
            if signal is None:
                continue

            legs = [
                (leg, broker_id)
                for leg, status, broker_id in (
                    ("sl", order.sl_status, order.sl_order_id),
                    ("target", order.target_status, order.target_order_id),
                )
                if status == OPEN and broker_id
            ]
            cancelled = [await self._cancel_leg(order, leg, broker_id) for leg, broker_id in legs]
            if not all(cancelled):
                await self._alert("error", f"Could not square off {signal.option}: exit orders still working.")
                continue

            response = await self.broker.place_order(
                OrderRequest(
                    exchange=order.exchange,
                    symbol=order.trading_symbol,
                    quantity=order.filled_quantity,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    product=ProductType(order.product),
                    tag=self._tag("EXIT_", signal.id),
                )
            )
            if not response.is_success:
                await self._alert("error", f"Square-off order failed for {signal.option}: {response.message}")
                continue

            fill = await self.wait_for_fill(response.order_id)
            if not fill.executed:
                await self._alert("error", f"Square-off order for {signal.option} not filled ({fill.status}).")
                continue

            await self._close_trade(
                order,
                signal,
                reason,
                fill.average_price or order.average_price or signal.entry_price,
                now,
            )
            closed.append(order.id)

        return closed


__all__ = [
    "ExecutionOutcome",
    "ExecutionSummary",
    "ExpiryResolver",
    "FillResult",
    "OrderExecutionService",
]
