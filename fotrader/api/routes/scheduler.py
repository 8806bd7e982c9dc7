"""
Scheduler API Routes
Start, stop and inspect the market-hours scheduler.
"""
from fastapi import APIRouter, Depends
from loguru import logger

from fotrader.api.deps import get_services
from fotrader.schemas.trading import SchedulerStatus


router = APIRouter()


@router.post("/start", response_model=SchedulerStatus)
async def start_scheduler(services=Depends(get_services)):
    services.scheduler.start()
    logger.info("Scheduler started via API")
    return SchedulerStatus(**services.scheduler.get_status())


@router.post("/stop", response_model=SchedulerStatus)
async def stop_scheduler(services=Depends(get_services)):
    services.scheduler.stop()
    logger.info("Scheduler stopped via API")
    return SchedulerStatus(**services.scheduler.get_status())


@router.get("/status", response_model=SchedulerStatus)
async def scheduler_status(services=Depends(get_services)):
    return SchedulerStatus(**services.scheduler.get_status())
