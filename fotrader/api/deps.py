"""FastAPI dependencies for the admin API."""

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from fotrader.main import ServiceRegistry


def get_services(request: Request) -> "ServiceRegistry":
    """Service registry attached to the application at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None or not services.initialized:
        raise HTTPException(status_code=503, detail="Trading services not initialized")
    return services
