"""
Ready-to-send chat text (Telegram Markdown) for subscriber-facing responses.
"""
from datetime import datetime
from typing import List, Optional

from app.schemas.flight import FlightCandidate, FlightSnapshot, StatusChangeResponse
from app.utils.time_utils import add_minutes_to_iso, ensure_utc, format_datetime, format_time


def format_candidate_list(candidates: List[FlightCandidate], flight_number: Optional[str] = None) -> str:
    header = (
        f"✈️ *Found {len(candidates)} flights for {flight_number}*"
        if flight_number
        else f"✈️ *Found {len(candidates)} flight(s)*"
    )
    message = f"{header}\n\n"

    for i, candidate in enumerate(candidates, start=1):
        departure = format_time(candidate.scheduled_departure) if candidate.scheduled_departure else "N/A"
        if flight_number:
            message += f"{i}. {candidate.origin} → {candidate.destination}\n"
            message += f"   🛫 {departure}"
            if candidate.terminal:
                message += f" Terminal {candidate.terminal}"
            message += f"\n   📊 {candidate.status or 'unknown'}\n\n"
        else:
            message += f"{i}. *{candidate.flight_number}*\n"
            if candidate.airline:
                message += f"   {candidate.airline}\n"
            message += f"   {departure}\n\n"

    message += f"Reply with the number (1-{len(candidates)}) to track a flight."
    return message


def format_track_confirmation(flight: FlightSnapshot, airline: Optional[str], already_tracking: bool) -> str:
    note = "ℹ️ You were already tracking this flight.\n\n" if already_tracking else ""
    message = f"{note}✅ *Flight Tracked Successfully*\n\n"
    message += f"✈️ {flight.flight_number}\n"
    if airline:
        message += f"{airline}\n"
    message += "\n"
    message += f"📍 Route: {flight.origin} → {flight.destination}\n"
    message += f"📅 Date: {flight.flight_date}\n\n"
    message += f"🛫 Departure: {format_time(flight.scheduled_departure)} ({flight.origin})\n"
    message += f"🛬 Arrival: {format_time(flight.scheduled_arrival)} ({flight.destination})\n\n"
    message += f"📊 Status: {flight.current_status or 'unknown'}\n"
    if flight.gate:
        message += f"🚪 Gate: {flight.gate}\n"
    if flight.terminal:
        message += f"🏢 Terminal: {flight.terminal}\n"
    return message


def format_status_message(
    flight: FlightSnapshot,
    changes: List[StatusChangeResponse],
    updated_minutes_ago: Optional[int],
    notes: List[str]
) -> str:
    delayed = bool(flight.delay_minutes and flight.delay_minutes > 0)

    message = f"✈️ *{flight.flight_number}*\n\n"
    message += f"📍 {flight.origin} → {flight.destination}\n"
    message += f"📅 {flight.flight_date}\n\n"

    message += "*Departure:*\n"
    message += f"   Scheduled: {format_datetime(flight.scheduled_departure)} ({flight.origin})\n"
    estimated_departure = flight.estimated_departure or (
        add_minutes_to_iso(flight.scheduled_departure, flight.delay_minutes) if delayed else None
    )
    if estimated_departure:
        message += f"   Estimated: {format_datetime(estimated_departure)} ({flight.origin})\n"
    if flight.current_status:
        message += f"   Status: {flight.current_status}\n"
    if flight.gate:
        message += f"   🚪 Gate: {flight.gate}\n"
    if flight.terminal:
        message += f"   🏢 Terminal: {flight.terminal}\n"
    if delayed:
        message += f"   ⏱️ Delay: {flight.delay_minutes} min\n"
    message += "\n"

    message += "*Arrival:*\n"
    message += f"   Scheduled: {format_datetime(flight.scheduled_arrival)} ({flight.destination})\n"
    estimated_arrival = flight.estimated_arrival or (
        add_minutes_to_iso(flight.scheduled_arrival, flight.delay_minutes) if delayed else None
    )
    if estimated_arrival:
        message += f"   Estimated: {format_datetime(estimated_arrival)} ({flight.destination})\n"
    message += "\n"

    if changes:
        message += "*Recent Status Changes:*\n"
        for change in changes:
            detected = _format_detected(change.detected_at)
            message += f"   {detected}: "
            if change.old_status:
                message += f"{change.old_status} → "
            message += change.new_status
            if change.details:
                message += f" ({change.details})"
            message += "\n"

    if updated_minutes_ago is not None:
        message += f"\n_Updated {updated_minutes_ago} min ago_"
    for note in notes:
        message += f"\n_⚠️ {note}_"
    return message


def _format_detected(detected_at: Optional[datetime]) -> str:
    if detected_at is None:
        return "--:--"
    return ensure_utc(detected_at).strftime("%I:%M %p UTC")
