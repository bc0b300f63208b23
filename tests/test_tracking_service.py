import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import func, select

from app.exceptions import BudgetExceededException, ProviderException, SelectionExpiredException
from app.models.flight import Flight
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.business.tracking_service import TrackingService
from app.services.cache.pending_selections import PendingSelectionStore
from app.services.notifications.notification_service import NotificationService, NotificationSink
from app.services.reconciliation.reconciliation_engine import ReconciliationEngine
from tests.factories import (
    FLIGHT_DATE,
    NOW,
    PrimaryStub,
    add_flight,
    aviationstack_flight,
    load_flight,
    primary_returning,
)


@pytest.fixture
def sink():
    return AsyncMock(spec=NotificationSink)


@pytest.fixture
def build_service(session_factory, usage_ledger, make_primary, redis_client, sink):
    def factory(stub: PrimaryStub) -> TrackingService:
        primary = make_primary(stub)
        engine = ReconciliationEngine(session_factory, primary, usage_ledger)
        return TrackingService(
            session_factory,
            primary,
            usage_ledger,
            engine,
            PendingSelectionStore(client=redis_client),
            NotificationService(session_factory, sink)
        )
    return factory


async def subscriber_count(session_factory, flight_id):
    async with session_factory() as session:
        return await SubscriptionRepository(session).count_for_flight(flight_id)


@pytest.mark.asyncio
async def test_track_single_match(session_factory, build_service):
    service = build_service(primary_returning(aviationstack_flight(gate="D22", terminal="D")))

    outcome = await service.track("chat-1", "aa123", FLIGHT_DATE, now=NOW)

    assert outcome.status == "tracked"
    assert not outcome.already_tracking
    flight = outcome.flight
    assert flight.flight_number == "AA123"
    assert flight.flight_date == FLIGHT_DATE
    assert (flight.origin, flight.destination) == ("DFW", "LAX")
    assert flight.current_status == "scheduled"
    # Stand info stays hidden while the flight is plainly scheduled
    assert flight.gate is None
    assert flight.terminal is None
    assert flight.last_polled_at is not None
    assert "Flight Tracked Successfully" in outcome.message
    assert "DFW → LAX" in outcome.message
    assert await subscriber_count(session_factory, flight.id) == 1


@pytest.mark.asyncio
async def test_track_twice_is_idempotent(session_factory, build_service):
    service = build_service(primary_returning(aviationstack_flight()))

    first = await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)
    second = await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)

    assert second.already_tracking
    assert second.flight.id == first.flight.id
    assert "already tracking" in second.message
    assert await subscriber_count(session_factory, first.flight.id) == 1


@pytest.mark.asyncio
async def test_concurrent_tracks_share_one_flight(session_factory, build_service):
    service = build_service(primary_returning(aviationstack_flight()))

    first, second = await asyncio.gather(
        service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW),
        service.track("chat-2", "AA123", FLIGHT_DATE, now=NOW),
    )

    assert first.flight.id == second.flight.id
    async with session_factory() as session:
        rows = await session.scalar(
            select(func.count()).select_from(Flight).where(
                Flight.flight_number == "AA123",
                Flight.flight_date == FLIGHT_DATE,
            )
        )
    assert rows == 1
    assert await subscriber_count(session_factory, first.flight.id) == 2


@pytest.mark.asyncio
async def test_retrack_waits_for_flight_lock(session_factory, build_service):
    existing = await add_flight(session_factory, -timedelta(minutes=10))
    service = build_service(primary_returning(aviationstack_flight(status="active", departs_in=-timedelta(minutes=10))))

    async with service.engine.locks.acquire(existing.id):
        pending = asyncio.create_task(service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW))
        for _ in range(20):
            await asyncio.sleep(0.01)
        assert not pending.done()
        assert (await load_flight(session_factory, existing.id)).current_status == "scheduled"

    outcome = await pending
    assert outcome.flight.id == existing.id
    assert outcome.flight.current_status == "active"
    assert len(service.engine.locks) == 0


@pytest.mark.asyncio
async def test_track_future_flight_reported_active(build_service):
    service = build_service(primary_returning(aviationstack_flight(status="active", departs_in=timedelta(hours=3))))

    outcome = await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)

    assert outcome.flight.current_status == "scheduled"
    assert outcome.flight.is_active


@pytest.mark.asyncio
async def test_track_keeps_known_status_of_existing_flight(session_factory, build_service):
    existing = await add_flight(session_factory, -timedelta(minutes=30), current_status="departed", delay_minutes=10)
    service = build_service(primary_returning(aviationstack_flight(departs_in=-timedelta(minutes=30))))

    outcome = await service.track("chat-2", "AA123", FLIGHT_DATE, now=NOW)

    assert outcome.flight.id == existing.id
    assert outcome.flight.current_status == "departed"
    assert outcome.flight.delay_minutes == 10


@pytest.mark.asyncio
async def test_track_not_found(build_service):
    service = build_service(primary_returning())

    outcome = await service.track("chat-1", "ZZ999", FLIGHT_DATE, now=NOW)

    assert outcome.status == "not_found"
    assert outcome.flight is None
    assert "not found" in outcome.message


@pytest.mark.asyncio
async def test_track_over_budget(usage_ledger, build_service):
    await usage_ledger.mark_usage_limit_reached(NOW)
    stub = primary_returning(aviationstack_flight())
    service = build_service(stub)

    with pytest.raises(BudgetExceededException):
        await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_track_provider_failure_propagates(build_service):
    service = build_service(PrimaryStub(httpx.Response(500, text="down")))

    with pytest.raises(ProviderException):
        await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)


@pytest.mark.asyncio
async def test_ambiguous_designator_then_select(session_factory, build_service, redis_client):
    stub = primary_returning(
        aviationstack_flight(),
        aviationstack_flight(origin="LAX", destination="JFK", departs_in=timedelta(hours=7)),
        aviationstack_flight(),
    )
    service = build_service(stub)

    outcome = await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)

    assert outcome.status == "multiple"
    assert [(c.origin, c.destination) for c in outcome.candidates] == [("DFW", "LAX"), ("LAX", "JFK")]
    assert "Reply with the number (1-2)" in outcome.message
    assert "selection:chat-1" in redis_client.data

    selected = await service.select("chat-1", 2, now=NOW)

    assert selected.status == "tracked"
    assert (selected.flight.origin, selected.flight.destination) == ("LAX", "JFK")
    assert selected.flight.flight_date == FLIGHT_DATE
    assert "selection:chat-1" not in redis_client.data
    assert stub.calls == 1


@pytest.mark.asyncio
async def test_select_without_pending_selection(build_service):
    service = build_service(primary_returning())

    with pytest.raises(SelectionExpiredException):
        await service.select("chat-1", 1, now=NOW)


@pytest.mark.asyncio
async def test_select_out_of_range(build_service):
    service = build_service(primary_returning(
        aviationstack_flight(),
        aviationstack_flight(origin="LAX", destination="JFK"),
    ))
    await service.track("chat-1", "AA123", FLIGHT_DATE, now=NOW)

    with pytest.raises(ValueError):
        await service.select("chat-1", 3, now=NOW)


@pytest.mark.asyncio
async def test_untrack_deactivates_when_nobody_is_left(session_factory, build_service):
    flight = await add_flight(session_factory)
    async with session_factory() as session:
        await SubscriptionRepository(session).add("chat-1", flight.id)
        await SubscriptionRepository(session).add("chat-2", flight.id)
    service = build_service(primary_returning())

    assert (await service.untrack("chat-1", "aa123")).id == flight.id
    assert (await load_flight(session_factory, flight.id)).is_active

    removed = await service.untrack("chat-2", "AA123")
    assert removed.is_active is False
    assert not (await load_flight(session_factory, flight.id)).is_active

    assert await service.untrack("chat-2", "AA123") is None


@pytest.mark.asyncio
async def test_list_flights_soonest_first(session_factory, build_service):
    later = await add_flight(session_factory, timedelta(hours=8), flight_number="AA456")
    sooner = await add_flight(session_factory, timedelta(hours=1))
    async with session_factory() as session:
        await SubscriptionRepository(session).add("chat-1", later.id)
        await SubscriptionRepository(session).add("chat-1", sooner.id)
    service = build_service(primary_returning())

    listing = await service.list_flights("chat-1")

    assert listing.total == 2
    assert [f.flight_number for f in listing.flights] == ["AA123", "AA456"]
    assert (await service.list_flights("nobody")).total == 0


@pytest.mark.asyncio
async def test_refresh_reconciles_on_demand_and_notifies(session_factory, build_service, sink):
    flight = await add_flight(session_factory, timedelta(hours=2))
    async with session_factory() as session:
        await SubscriptionRepository(session).add("chat-1", flight.id)
    service = build_service(primary_returning(
        aviationstack_flight(status="delayed", delay=40, gate="C7", departs_in=timedelta(hours=2))
    ))

    view = await service.refresh("AA123", "chat-1", now=NOW)

    assert view.refreshed
    assert not view.degraded
    assert view.flight.current_status == "delayed"
    assert view.flight.delay_minutes == 40
    assert view.flight.gate == "C7"
    assert view.updated_minutes_ago == 0
    assert view.notes == []
    assert [(c.old_status, c.new_status) for c in view.recent_changes] == [("scheduled", "delayed")]
    assert "*Departure:*" in view.message
    assert "⏱️ Delay: 40 min" in view.message
    assert "_Updated 0 min ago_" in view.message
    sink.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_refresh_when_primary_is_down(session_factory, build_service):
    flight = await add_flight(session_factory, timedelta(hours=2), last_polled_at=NOW - timedelta(minutes=42))
    async with session_factory() as session:
        await SubscriptionRepository(session).add("chat-1", flight.id)
    service = build_service(PrimaryStub(httpx.Response(503, text="unavailable")))

    view = await service.refresh("AA123", "chat-1", now=NOW)

    assert view.degraded
    assert view.updated_minutes_ago == 42
    assert view.notes == ["Could not refresh flight data. Showing cached information."]
    assert "Could not refresh flight data" in view.message


@pytest.mark.asyncio
async def test_refresh_unknown_flight(build_service):
    service = build_service(primary_returning())
    assert await service.refresh("AA123", "chat-1", now=NOW) is None


@pytest.mark.asyncio
async def test_lookup_route_offers_selection(build_service, redis_client):
    service = build_service(primary_returning(
        aviationstack_flight(),
        aviationstack_flight(flight_iata="AA456", departs_in=timedelta(hours=4)),
    ))

    response = await service.lookup_route("dfw", "lax", FLIGHT_DATE, subscriber_key="chat-1", now=NOW)

    assert (response.origin, response.destination) == ("DFW", "LAX")
    assert [c.flight_number for c in response.candidates] == ["AA123", "AA456"]
    assert "*AA456*" in response.message
    assert "selection:chat-1" in redis_client.data

    selected = await service.select("chat-1", 2, now=NOW)
    assert selected.flight.flight_number == "AA456"


@pytest.mark.asyncio
async def test_lookup_route_rejects_bad_codes(build_service):
    service = build_service(primary_returning())

    with pytest.raises(ValueError):
        await service.lookup_route("DF1", "LAX", FLIGHT_DATE, now=NOW)
