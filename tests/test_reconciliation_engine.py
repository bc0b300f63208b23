import asyncio
from datetime import timedelta

import httpx
import pytest

from app.repositories.status_change_repository import StatusChangeRepository
from app.schemas.flight import FlightSnapshot, RefreshMode
from app.schemas.provider import ProviderRecord, ProviderSource
from app.services.reconciliation.reconciliation_engine import ReconciliationEngine, diff_snapshots
from tests.factories import (
    NOW,
    PrimaryStub,
    ScriptedFallback,
    add_flight,
    aviationstack_flight,
    load_flight,
    primary_returning,
)

# Departed half an hour ago, last verified twenty minutes ago
DEPARTED_AGO = -timedelta(minutes=30)


def flightstats_record(**fields) -> ProviderRecord:
    return ProviderRecord(source=ProviderSource.FLIGHTSTATS, **fields)


def flightaware_record(**fields) -> ProviderRecord:
    return ProviderRecord(source=ProviderSource.FLIGHTAWARE, **fields)


async def status_changes(session_factory, flight_id):
    async with session_factory() as session:
        return await StatusChangeRepository(session).list_recent(flight_id)


@pytest.fixture
def build_engine(session_factory, usage_ledger, make_primary):
    def factory(stub: PrimaryStub, *fallbacks) -> ReconciliationEngine:
        return ReconciliationEngine(session_factory, make_primary(stub), usage_ledger, fallbacks)
    return factory


@pytest.mark.asyncio
async def test_fallback_fills_in_low_signal_primary_answer(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO, last_polled_at=NOW - timedelta(minutes=20))
    estimated = (NOW - timedelta(minutes=18)).isoformat()
    first = ScriptedFallback(
        ProviderSource.FLIGHTSTATS,
        flightstats_record(status="departed", delay_minutes=12, estimated_departure=estimated)
    )
    second = ScriptedFallback(ProviderSource.FLIGHTAWARE, flightaware_record(status="landed"))
    stub = primary_returning(aviationstack_flight(status="scheduled", delay=0, departs_in=DEPARTED_AGO))
    engine = build_engine(stub, first, second)

    result = await engine.reconcile(flight.id, RefreshMode.POLL, now=NOW)

    assert result.refreshed
    assert result.updated
    assert not result.degraded
    assert result.sources == ["aviationstack", "flightstats"]
    assert result.snapshot.current_status == "departed"
    assert result.snapshot.delay_minutes == 12
    assert result.snapshot.estimated_departure == estimated
    assert result.status_change.old == "scheduled"
    assert result.status_change.new == "departed"
    assert [c.field for c in result.changes] == ["Status", "Delay"]

    # Second fallback is not consulted once the first supplied signal
    assert second.calls == []
    assert stub.calls == 1

    stored = await load_flight(session_factory, flight.id)
    assert stored.current_status == "departed"
    assert stored.delay_minutes == 12
    assert stored.estimated_departure == estimated

    changes = await status_changes(session_factory, flight.id)
    assert [(c.old_status, c.new_status) for c in changes] == [("scheduled", "departed")]
    assert changes[0].details == "sources: aviationstack, flightstats"


@pytest.mark.asyncio
async def test_exhausted_budget_serves_fallback_without_persisting(session_factory, usage_ledger, build_engine):
    last_polled_at = NOW - timedelta(minutes=20)
    flight = await add_flight(session_factory, DEPARTED_AGO, last_polled_at=last_polled_at)
    await usage_ledger.mark_usage_limit_reached(NOW)
    first = ScriptedFallback(
        ProviderSource.FLIGHTSTATS,
        flightstats_record(status="departed", delay_minutes=12)
    )
    stub = primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO))
    engine = build_engine(stub, first)

    result = await engine.reconcile(flight.id, RefreshMode.POLL, now=NOW)

    assert stub.calls == 0
    assert result.degraded
    assert result.budget_skipped
    assert not result.updated
    assert result.data_source == "fallback"
    assert result.snapshot.current_status == "departed"
    assert result.snapshot.delay_minutes == 12
    assert [c.field for c in result.changes] == ["Status", "Delay"]

    stored = await load_flight(session_factory, flight.id)
    assert stored.current_status == "scheduled"
    assert stored.delay_minutes is None
    assert stored.last_polled_at.replace(tzinfo=None) == last_polled_at.replace(tzinfo=None)
    assert await status_changes(session_factory, flight.id) == []


@pytest.mark.asyncio
async def test_reserve_is_available_on_demand_only(session_factory, usage_ledger, build_engine):
    flight = await add_flight(session_factory, timedelta(hours=1))
    for _ in range(96):
        await usage_ledger.record_request(NOW)
    stub = primary_returning(aviationstack_flight(status="delayed", delay=20, departs_in=timedelta(hours=1)))
    engine = build_engine(stub)

    polled = await engine.reconcile(flight.id, RefreshMode.POLL, now=NOW)
    assert polled.budget_skipped
    assert stub.calls == 0

    on_demand = await engine.reconcile(flight.id, RefreshMode.ON_DEMAND, now=NOW)
    assert on_demand.refreshed
    assert stub.calls == 1
    assert on_demand.snapshot.current_status == "delayed"


@pytest.mark.asyncio
async def test_fallbacks_are_consulted_in_rank_order(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    order = []
    first = ScriptedFallback(ProviderSource.FLIGHTSTATS, None, call_log=order)
    second = ScriptedFallback(
        ProviderSource.FLIGHTAWARE, flightaware_record(status="departed", delay_minutes=7), call_log=order
    )
    engine = build_engine(primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO)), first, second)

    result = await engine.reconcile(flight.id, now=NOW)

    assert order == ["flightstats", "flightaware"]
    assert result.sources == ["aviationstack", "flightaware"]
    assert result.snapshot.current_status == "departed"
    assert result.snapshot.delay_minutes == 7
    assert first.calls[0]["carrier_code"] == "AA"
    assert first.calls[0]["flight_number"] == "123"
    assert first.calls[0]["alternate_designators"] == ["AAL123", "AA123"]


@pytest.mark.asyncio
async def test_failing_fallback_does_not_break_reconciliation(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    broken = ScriptedFallback(ProviderSource.FLIGHTSTATS, error=RuntimeError("layout changed"))
    second = ScriptedFallback(ProviderSource.FLIGHTAWARE, flightaware_record(status="departed"))
    engine = build_engine(primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO)), broken, second)

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.error is None
    assert result.snapshot.current_status == "departed"


@pytest.mark.asyncio
async def test_future_flight_cannot_be_in_progress(session_factory, build_engine):
    flight = await add_flight(session_factory, timedelta(hours=2))
    stub = primary_returning(aviationstack_flight(status="active", departs_in=timedelta(hours=2)))
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(status="landed"))
    engine = build_engine(stub, fallback)

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.snapshot.current_status == "scheduled"
    assert await status_changes(session_factory, flight.id) == []


@pytest.mark.asyncio
async def test_known_status_does_not_regress(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO, current_status="departed", delay_minutes=12)
    stub = primary_returning(aviationstack_flight(status="scheduled", departs_in=DEPARTED_AGO))
    engine = build_engine(stub)

    result = await engine.reconcile(flight.id, RefreshMode.ON_DEMAND, now=NOW)

    assert result.refreshed
    assert result.snapshot.current_status == "departed"
    assert result.snapshot.delay_minutes == 12
    assert result.changes == []


@pytest.mark.asyncio
async def test_terminal_flights_are_final(session_factory, build_engine):
    flight = await add_flight(session_factory, -timedelta(hours=4), current_status="landed")
    stub = primary_returning(aviationstack_flight(status="active", departs_in=-timedelta(hours=4)))
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(status="departed"))
    engine = build_engine(stub, fallback)

    for mode in (RefreshMode.POLL, RefreshMode.ON_DEMAND):
        result = await engine.reconcile(flight.id, mode, now=NOW)
        assert result.skipped_reason == "terminal"

    assert stub.calls == 0
    assert fallback.calls == []
    assert (await load_flight(session_factory, flight.id)).current_status == "landed"


@pytest.mark.asyncio
async def test_reaching_terminal_status_deactivates(session_factory, build_engine):
    flight = await add_flight(session_factory, -timedelta(hours=4), current_status="departed")
    engine = build_engine(primary_returning(aviationstack_flight(status="landed", departs_in=-timedelta(hours=4))))

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.snapshot.current_status == "landed"
    assert result.snapshot.is_active is False


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(status="departed", delay_minutes=12))
    engine = build_engine(primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO)), fallback)

    first = await engine.reconcile(flight.id, now=NOW, stale_after=timedelta(0))
    second = await engine.reconcile(flight.id, now=NOW, stale_after=timedelta(0))

    assert first.updated
    assert not second.updated
    assert second.changes == []
    assert second.snapshot.current_status == first.snapshot.current_status
    assert second.snapshot.delay_minutes == first.snapshot.delay_minutes
    assert len(await status_changes(session_factory, flight.id)) == 1


@pytest.mark.asyncio
async def test_stand_info_only_inside_window(session_factory, build_engine):
    far = await add_flight(session_factory, timedelta(hours=10))
    near = await add_flight(session_factory, timedelta(hours=2), flight_number="AA456")

    far_engine = build_engine(primary_returning(
        aviationstack_flight(status="delayed", delay=30, gate="D22", terminal="D", departs_in=timedelta(hours=10))
    ))
    near_engine = build_engine(primary_returning(
        aviationstack_flight(
            flight_iata="AA456", status="delayed", delay=30, gate="D22", terminal="D", departs_in=timedelta(hours=2)
        )
    ))

    far_result = await far_engine.reconcile(far.id, RefreshMode.ON_DEMAND, now=NOW)
    near_result = await near_engine.reconcile(near.id, RefreshMode.ON_DEMAND, now=NOW)

    assert far_result.snapshot.gate is None
    assert far_result.snapshot.terminal is None
    assert near_result.snapshot.gate == "D22"
    assert near_result.snapshot.terminal == "D"
    assert [c.field for c in near_result.changes] == ["Status", "Gate", "Terminal", "Delay"]


@pytest.mark.asyncio
async def test_implausible_estimates_are_dropped(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(
        status="departed",
        estimated_departure=(NOW + timedelta(days=2)).isoformat()
    ))
    engine = build_engine(primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO)), fallback)

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.snapshot.current_status == "departed"
    assert result.snapshot.estimated_departure is None


@pytest.mark.asyncio
async def test_skip_reasons(session_factory, build_engine):
    stub = primary_returning(aviationstack_flight())
    engine = build_engine(stub)
    far = await add_flight(session_factory, timedelta(hours=10))
    fresh = await add_flight(
        session_factory,
        DEPARTED_AGO,
        flight_number="AA456",
        current_status="departed",
        delay_minutes=5,
        last_polled_at=NOW - timedelta(minutes=1)
    )

    assert (await engine.reconcile(999, now=NOW)).skipped_reason == "not_found"
    assert (await engine.reconcile(far.id, RefreshMode.POLL, now=NOW)).skipped_reason == "outside_window"
    assert (await engine.reconcile(fresh.id, RefreshMode.POLL, now=NOW)).skipped_reason == "fresh"
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_primary_failure_degrades_to_fallback(session_factory, build_engine):
    last_polled_at = NOW - timedelta(minutes=30)
    flight = await add_flight(session_factory, DEPARTED_AGO, last_polled_at=last_polled_at)
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(status="departed"))
    engine = build_engine(PrimaryStub(httpx.Response(502, text="bad gateway")), fallback)

    result = await engine.reconcile(flight.id, RefreshMode.ON_DEMAND, now=NOW)

    assert result.degraded
    assert result.error is None
    assert result.data_source == "fallback"
    assert result.snapshot.current_status == "departed"
    stored = await load_flight(session_factory, flight.id)
    assert stored.current_status == "scheduled"


@pytest.mark.asyncio
async def test_credentials_rejected(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    engine = build_engine(PrimaryStub(httpx.Response(401, json={})))

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.error == "auth"
    assert result.degraded
    assert result.data_source == "cache"
    assert result.snapshot.current_status == "scheduled"


@pytest.mark.asyncio
async def test_no_primary_match_degrades(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    engine = build_engine(primary_returning())

    result = await engine.reconcile(flight.id, now=NOW)

    assert result.degraded
    assert not result.refreshed


@pytest.mark.asyncio
async def test_concurrent_passes_on_one_flight_are_serialized(session_factory, build_engine):
    flight = await add_flight(session_factory, DEPARTED_AGO)
    fallback = ScriptedFallback(ProviderSource.FLIGHTSTATS, flightstats_record(status="departed", delay_minutes=9))
    stub = primary_returning(aviationstack_flight(departs_in=DEPARTED_AGO))
    engine = build_engine(stub, fallback)

    results = await asyncio.gather(
        engine.reconcile(flight.id, RefreshMode.POLL, now=NOW),
        engine.reconcile(flight.id, RefreshMode.ON_DEMAND, now=NOW),
    )

    assert stub.calls == 1
    assert sum(1 for r in results if r.skipped_reason == "fresh") == 1
    assert len(await status_changes(session_factory, flight.id)) == 1
    assert len(engine.locks) == 0


def test_diff_snapshots_ignores_cleared_and_zero_values():
    base = dict(
        id=1, flight_number="AA123", flight_date="2026-02-19", origin="DFW", destination="LAX",
        scheduled_departure="2026-02-19T17:35:00-06:00", scheduled_arrival="2026-02-19T19:05:00-08:00",
    )
    before = FlightSnapshot(**base, current_status="delayed", gate="D22", delay_minutes=15)
    after = FlightSnapshot(**base, current_status="delayed", gate=None, delay_minutes=0)

    assert diff_snapshots(before, after) == []
