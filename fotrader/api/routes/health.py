"""Health check endpoint."""
from fastapi import APIRouter, Request

from fotrader.core.config import settings
from fotrader.db.session import get_database


router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and monitoring.
    """
    health_status = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }

    db_healthy = await get_database().health_check()
    health_status["database"] = "connected" if db_healthy else "disconnected"
    if not db_healthy:
        health_status["status"] = "degraded"

    services = getattr(request.app.state, "services", None)
    if services is not None and services.initialized:
        health_status["services"] = services.get_status()

    return health_status
