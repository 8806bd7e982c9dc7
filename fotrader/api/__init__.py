"""API router initialization"""
from fastapi import APIRouter

from fotrader.api.routes import analytics, health, orders, scheduler, signals

api_router = APIRouter()

api_router.include_router(signals.router, prefix="/signals", tags=["signals"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(scheduler.router, prefix="/scheduler", tags=["scheduler"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
api_router.include_router(health.router, tags=["health"])
