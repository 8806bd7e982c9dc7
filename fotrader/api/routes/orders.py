"""
Orders API Routes
Query automated orders and trigger execution / reconciliation by hand.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from fotrader.api.deps import get_services
from fotrader.db.models import ExitReason
from fotrader.db.repository import OrderRepository
from fotrader.db.session import get_db
from fotrader.schemas.trading import (
    ExecutionRunResponse,
    OrderResponse,
    ReconciliationResponse,
    SquareOffResponse,
)
from fotrader.services.scheduler import EXECUTION_JOB, RECONCILIATION_JOB


router = APIRouter()


@router.get("", response_model=List[OrderResponse])
async def list_orders(
    status: Optional[str] = Query(default=None, description="Filter by entry order status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Orders newest first."""
    return await OrderRepository(db).list_recent(limit=limit, status=status)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    order = await OrderRepository(db).get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order


@router.post("/process", response_model=ExecutionRunResponse)
async def process_pending_signals(services=Depends(get_services)):
    """Execute pending signals now (serialized with the scheduled job)."""
    logger.info("Manual order execution requested")
    summary = await services.scheduler.run_exclusive(
        EXECUTION_JOB, services.executor.process_pending_signals
    )
    return ExecutionRunResponse(**summary.to_dict())


@router.post("/check-completed", response_model=ReconciliationResponse)
async def check_completed_orders(services=Depends(get_services)):
    """Reconcile stop-loss / target legs now."""
    closed = await services.scheduler.run_exclusive(
        RECONCILIATION_JOB, services.executor.check_completed_orders
    )
    return ReconciliationResponse(closed=closed)


@router.post("/square-off", response_model=SquareOffResponse)
async def square_off(services=Depends(get_services)):
    """Exit every open automated position at market."""
    logger.warning("Manual square-off requested")

    async def run():
        return await services.executor.square_off_open_positions(ExitReason.MANUAL_EXIT)

    closed = await services.scheduler.run_exclusive(RECONCILIATION_JOB, run)
    return SquareOffResponse(closed=closed)
