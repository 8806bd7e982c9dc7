"""
Signals API Routes
Query stored signals and trigger the signal pipeline by hand.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from fotrader.api.deps import get_services
from fotrader.db.repository import SignalRepository
from fotrader.db.session import get_db
from fotrader.schemas.trading import SignalGenerationResponse, SignalResponse
from fotrader.services.scheduler import SIGNAL_JOB


router = APIRouter()


@router.get("", response_model=List[SignalResponse])
async def list_signals(
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Signals newest first, optionally within [from, to)."""
    return await SignalRepository(db).list_recent(from_, to, limit)


@router.get("/{signal_id}", response_model=SignalResponse)
async def get_signal(signal_id: str, db: AsyncSession = Depends(get_db)):
    signal = await SignalRepository(db).get(signal_id)
    if signal is None:
        raise HTTPException(status_code=404, detail=f"Signal {signal_id} not found")
    return signal


@router.post("/generate", response_model=SignalGenerationResponse)
async def generate_signals(services=Depends(get_services)):
    """
    Run the signal pipeline now.

    Serialized with the scheduled pipeline job.
    """
    logger.info("Manual signal generation requested")
    signals = await services.scheduler.run_exclusive(
        SIGNAL_JOB, services.generator.generate_signals
    )
    return SignalGenerationResponse(
        generated=len(signals),
        signals=[SignalResponse.model_validate(s) for s in signals],
    )
