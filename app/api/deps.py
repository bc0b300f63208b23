"""
FastAPI dependencies.
Services are built once in the application lifespan and kept on app.state.
"""
from fastapi import HTTPException, Request

from app.services.budget.usage_ledger import UsageLedger
from app.services.business.tracking_service import TrackingService
from app.services.orchestration.scheduler import FlightPollingScheduler


def _require(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


def get_tracking_service(request: Request) -> TrackingService:
    return _require(request, "tracking_service")


def get_usage_ledger(request: Request) -> UsageLedger:
    return _require(request, "usage_ledger")


def get_scheduler(request: Request) -> FlightPollingScheduler:
    return _require(request, "scheduler")
