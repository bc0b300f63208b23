"""
API v1 main router.
Aggregates all API endpoint routers.
"""
from fastapi import APIRouter
from app.api.v1.endpoints import flights, sync, usage

api_router = APIRouter()

# Include endpoint routers
api_router.include_router(flights.router, prefix="/flights", tags=["Flights"])
api_router.include_router(usage.router, prefix="/usage", tags=["Usage"])
api_router.include_router(sync.router, prefix="/sync", tags=["Synchronization"])
