"""
Repositories
fotrader - F&O Signal & Execution Engine

Thin async data-access classes over one AsyncSession each:
- Instruments (universe queries)
- Market snapshots (upsert on every tick)
- Signals (guarded single-row updates)
- Orders (account trade counts, open protective legs)

Repositories never commit; the owning `Database.session()` context does.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fotrader.db.models import Instrument, MarketSnapshot, Order, Signal, SignalOrderStatus


class InstrumentRepository:
    """Instrument universe access."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_tradable(self, sectors: Optional[Iterable[str]] = None) -> List[Instrument]:
        """
        Active, derivative-enabled, non-banned instruments ordered by symbol.

        Args:
            sectors: Restrict to these sectors when given
        """
        query = select(Instrument).where(
            Instrument.is_active.is_(True),
            Instrument.in_fo.is_(True),
            Instrument.is_banned.is_(False),
        )
        if sectors is not None:
            query = query.where(Instrument.sector.in_(list(sectors)))
        result = await self.session.execute(query.order_by(Instrument.symbol))
        return list(result.scalars().all())

    async def get_with_tokens(self) -> List[Instrument]:
        """Active instruments that can be subscribed to on the tick stream."""
        result = await self.session.execute(
            select(Instrument)
            .where(Instrument.is_active.is_(True), Instrument.instrument_token.is_not(None))
            .order_by(Instrument.symbol)
        )
        return list(result.scalars().all())


class SnapshotRepository:
    """MarketSnapshot access."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, symbol: str) -> Optional[MarketSnapshot]:
        return await self.session.get(MarketSnapshot, symbol)

    async def get_many(self, symbols: Sequence[str]) -> Dict[str, MarketSnapshot]:
        if not symbols:
            return {}
        result = await self.session.execute(
            select(MarketSnapshot).where(MarketSnapshot.symbol.in_(list(symbols)))
        )
        return {snap.symbol: snap for snap in result.scalars().all()}

    async def get_all(self) -> List[MarketSnapshot]:
        result = await self.session.execute(select(MarketSnapshot))
        return list(result.scalars().all())

    async def upsert(self, symbol: str, **fields: Any) -> MarketSnapshot:
        snapshot = await self.get(symbol)
        if snapshot is None:
            snapshot = MarketSnapshot(symbol=symbol, **fields)
            self.session.add(snapshot)
        else:
            for key, value in fields.items():
                setattr(snapshot, key, value)
        await self.session.flush()
        return snapshot


class SignalRepository:
    """Signal access. State flags only move through guarded UPDATEs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, signal_id: str) -> Optional[Signal]:
        return await self.session.get(Signal, signal_id)

    async def add(self, signal: Signal) -> Signal:
        self.session.add(signal)
        await self.session.flush()
        return signal

    async def count_between(self, start: datetime, end: datetime) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Signal).where(
                Signal.generated_at >= start,
                Signal.generated_at < end,
            )
        )
        return result.scalar() or 0

    async def latest_between(self, start: datetime, end: datetime) -> Optional[Signal]:
        result = await self.session.execute(
            select(Signal)
            .where(Signal.generated_at >= start, Signal.generated_at < end)
            .order_by(Signal.generated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Signal]:
        """Signals newest first, optionally within [start, end)."""
        query = select(Signal)
        if start is not None:
            query = query.where(Signal.generated_at >= start)
        if end is not None:
            query = query.where(Signal.generated_at < end)
        result = await self.session.execute(
            query.order_by(Signal.generated_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_execution(self, start: datetime, end: datetime) -> List[Signal]:
        """
        Notified, not yet executed signals in [start, end), oldest first.

        Signals whose entry order already failed are not offered again.
        """
        result = await self.session.execute(
            select(Signal)
            .where(
                Signal.generated_at >= start,
                Signal.generated_at < end,
                Signal.sent_to_telegram.is_(True),
                Signal.executed_order.is_(False),
                Signal.order_status != SignalOrderStatus.FAILED.value,
            )
            .order_by(Signal.generated_at.asc())
        )
        return list(result.scalars().all())

    async def get_unsent(self, start: datetime, end: datetime) -> List[Signal]:
        result = await self.session.execute(
            select(Signal)
            .where(
                Signal.generated_at >= start,
                Signal.generated_at < end,
                Signal.sent_to_telegram.is_(False),
            )
            .order_by(Signal.generated_at.asc())
        )
        return list(result.scalars().all())

    async def mark_sent(self, signal_id: str, sent_at: datetime) -> bool:
        """Flip sent_to_telegram once. Returns False if it was already set."""
        result = await self.session.execute(
            update(Signal)
            .where(Signal.id == signal_id, Signal.sent_to_telegram.is_(False))
            .values(sent_to_telegram=True, sent_at=sent_at)
        )
        return result.rowcount == 1

    async def mark_executed(
        self,
        signal_id: str,
        executed_at: datetime,
        order_details: Dict[str, Any],
    ) -> bool:
        """Flip executed_order once. Returns False if it was already set."""
        result = await self.session.execute(
            update(Signal)
            .where(Signal.id == signal_id, Signal.executed_order.is_(False))
            .values(
                executed_order=True,
                executed_at=executed_at,
                order_status=SignalOrderStatus.EXECUTED.value,
                order_details=order_details,
            )
        )
        return result.rowcount == 1

    async def mark_failed(self, signal_id: str, order_details: Dict[str, Any]) -> None:
        await self.session.execute(
            update(Signal)
            .where(Signal.id == signal_id, Signal.executed_order.is_(False))
            .values(order_status=SignalOrderStatus.FAILED.value, order_details=order_details)
        )

    async def record_exit(
        self,
        signal_id: str,
        exit_price: float,
        exit_at: datetime,
        exit_reason: str,
        profit_loss: float,
    ) -> None:
        await self.session.execute(
            update(Signal)
            .where(Signal.id == signal_id)
            .values(
                exit_price=exit_price,
                exit_at=exit_at,
                exit_reason=exit_reason,
                profit_loss=profit_loss,
            )
        )


class OrderRepository:
    """Order access."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def add(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        return order

    async def update_fields(self, order_id: str, **values: Any) -> None:
        await self.session.execute(
            update(Order).where(Order.id == order_id).values(**values)
        )

    async def transition_leg(self, order_id: str, leg: str, from_status: str, to_status: str) -> bool:
        """
        Move the `sl` or `target` sub-order between statuses.

        Guarded on the current status so each transition happens once.
        """
        column = {"sl": Order.sl_status, "target": Order.target_status}[leg]
        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, column == from_status)
            .values({column: to_status})
        )
        return result.rowcount == 1

    async def close_leg(self, order_id: str, leg: str) -> bool:
        """
        Mark a working leg COMPLETE unless the other leg already is.

        At most one of the two legs of an order can end COMPLETE.
        """
        column, sibling = {
            "sl": (Order.sl_status, Order.target_status),
            "target": (Order.target_status, Order.sl_status),
        }[leg]
        result = await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                column == "OPEN",
                or_(sibling.is_(None), sibling != "COMPLETE"),
            )
            .values({column: "COMPLETE"})
        )
        return result.rowcount == 1

    async def count_for_account_between(self, account_id: str, start: datetime, end: datetime) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Order).where(
                Order.account_id == account_id,
                Order.order_timestamp >= start,
                Order.order_timestamp < end,
            )
        )
        return result.scalar() or 0

    async def list_recent(self, limit: int = 100, status: Optional[str] = None) -> List[Order]:
        query = select(Order)
        if status is not None:
            query = query.where(Order.status == status)
        result = await self.session.execute(
            query.order_by(Order.order_timestamp.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def get_with_open_legs(self) -> List[Order]:
        """Filled entries whose stop-loss or target leg is still working."""
        result = await self.session.execute(
            select(Order)
            .where(
                Order.status == "COMPLETE",
                or_(Order.sl_status == "OPEN", Order.target_status == "OPEN"),
            )
            .order_by(Order.order_timestamp.asc())
        )
        return list(result.scalars().all())


__all__ = [
    "InstrumentRepository",
    "SnapshotRepository",
    "SignalRepository",
    "OrderRepository",
]
