"""
Synchronization endpoints.
Manual control over background polling and cleanup.
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_scheduler
from app.services.orchestration.scheduler import FlightPollingScheduler

router = APIRouter()


@router.post("/poll")
async def trigger_manual_poll(scheduler: FlightPollingScheduler = Depends(get_scheduler)):
    """Run one poll cycle now"""
    return await scheduler.trigger_manual_poll()


@router.post("/cleanup")
async def trigger_manual_cleanup(scheduler: FlightPollingScheduler = Depends(get_scheduler)):
    """Run lifecycle cleanup now"""
    return await scheduler.trigger_manual_cleanup()


@router.post("/resume")
async def resume_polling(scheduler: FlightPollingScheduler = Depends(get_scheduler)):
    """Resume polling after it was halted by a credential failure"""
    scheduler.resume_polling()
    return scheduler.get_status()


@router.get("/status")
async def get_sync_status(scheduler: FlightPollingScheduler = Depends(get_scheduler)):
    return scheduler.get_status()
