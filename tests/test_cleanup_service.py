from datetime import timedelta

import pytest

from app.models.status_change import StatusChange
from app.repositories.status_change_repository import StatusChangeRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.orchestration.cleanup_service import CleanupService
from tests.factories import NOW, add_flight, load_flight


@pytest.mark.asyncio
async def test_terminal_flights_are_deactivated_after_a_day(session_factory):
    landed = await add_flight(session_factory, -timedelta(hours=30), current_status="landed")
    recent = await add_flight(session_factory, -timedelta(hours=5), flight_number="AA456", current_status="landed")
    stuck = await add_flight(session_factory, -timedelta(hours=30), flight_number="AA789", current_status="departed")

    counts = await CleanupService(session_factory).cleanup(NOW)

    assert counts == {"deactivated": 1, "deleted": 0}
    assert not (await load_flight(session_factory, landed.id)).is_active
    assert (await load_flight(session_factory, recent.id)).is_active
    assert (await load_flight(session_factory, stuck.id)).is_active


@pytest.mark.asyncio
async def test_old_flights_are_deleted_with_history(session_factory):
    old = await add_flight(session_factory, -timedelta(days=8), current_status="departed")
    kept = await add_flight(session_factory, -timedelta(days=2), flight_number="AA456")
    async with session_factory() as session:
        await SubscriptionRepository(session).add("chat-1", old.id)
        await SubscriptionRepository(session).add("chat-1", kept.id)
        session.add(StatusChange(flight_id=old.id, old_status="scheduled", new_status="departed", detected_at=NOW))
        await session.commit()

    counts = await CleanupService(session_factory).cleanup(NOW)

    assert counts["deleted"] == 1
    assert await load_flight(session_factory, old.id) is None
    assert await load_flight(session_factory, kept.id) is not None
    async with session_factory() as session:
        assert await SubscriptionRepository(session).count_for_flight(old.id) == 0
        assert await SubscriptionRepository(session).count_for_flight(kept.id) == 1
        assert await StatusChangeRepository(session).count_for_flight(old.id) == 0
