"""
Flight endpoints.
Subscriber-facing tracking: track, select, list, untrack, status and route search.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_tracking_service
from app.schemas.flight import (
    FlightListResponse,
    FlightSnapshot,
    RouteSearchResponse,
    SelectRequest,
    StatusView,
    TrackOutcome,
    TrackRequest,
)
from app.services.business.tracking_service import TrackingService

router = APIRouter()

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


@router.post("/track", response_model=TrackOutcome)
async def track_flight(
    request: TrackRequest,
    service: TrackingService = Depends(get_tracking_service)
):
    """
    Track a flight on a date.
    
    Returns status "multiple" with numbered candidates when the designator is
    ambiguous; pick one with POST /flights/track/select.
    """
    return await service.track(request.subscriber_key, request.flight_number, request.flight_date)


@router.post("/track/select", response_model=TrackOutcome)
async def select_candidate(
    request: SelectRequest,
    service: TrackingService = Depends(get_tracking_service)
):
    """Resolve a pending multi-candidate lookup (1-based index)"""
    return await service.select(request.subscriber_key, request.index)


@router.get("/route", response_model=RouteSearchResponse)
async def search_route(
    origin: str = Query(..., min_length=3, max_length=3, description="Origin IATA code"),
    destination: str = Query(..., min_length=3, max_length=3, description="Destination IATA code"),
    flight_date: str = Query(..., pattern=DATE_PATTERN, description="YYYY-MM-DD"),
    subscriber_key: Optional[str] = Query(None, description="Store results as this subscriber's pending selection"),
    service: TrackingService = Depends(get_tracking_service)
):
    return await service.lookup_route(origin, destination, flight_date, subscriber_key)


@router.get("", response_model=FlightListResponse)
async def list_flights(
    subscriber_key: str = Query(..., min_length=1),
    service: TrackingService = Depends(get_tracking_service)
):
    """Flights the subscriber is tracking, soonest first"""
    return await service.list_flights(subscriber_key)


@router.delete("/{flight_number}", response_model=FlightSnapshot)
async def untrack_flight(
    flight_number: str,
    subscriber_key: str = Query(..., min_length=1),
    service: TrackingService = Depends(get_tracking_service)
):
    flight = await service.untrack(subscriber_key, flight_number)
    if flight is None:
        raise HTTPException(status_code=404, detail=f"You are not tracking {flight_number.upper()}")
    return flight


@router.get("/{flight_number}/status", response_model=StatusView)
async def get_flight_status(
    flight_number: str,
    subscriber_key: str = Query(..., min_length=1),
    service: TrackingService = Depends(get_tracking_service)
):
    """
    Refresh and return the current status of a tracked flight.
    Falls back to cached or fallback-sourced data when the primary provider is unavailable.
    """
    view = await service.refresh(flight_number, subscriber_key)
    if view is None:
        raise HTTPException(status_code=404, detail=f"You are not tracking {flight_number.upper()}")
    return view
