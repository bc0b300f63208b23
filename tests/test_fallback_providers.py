import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.schemas.provider import ProviderSource
from app.services.fallback.flightaware_client import FlightAwareProvider, derive_status, get_delay_minutes
from app.services.fallback.flightstats_client import FlightStatsProvider

DEPARTURE = datetime(2026, 2, 19, 17, 35, tzinfo=timezone.utc)
DEPARTURE_TS = int(DEPARTURE.timestamp())


def flightstats_page(flight: dict) -> str:
    next_data = {"props": {"initialState": {"flightTracker": {"flight": flight}}}}
    return (
        "<html><script>__NEXT_DATA__ = "
        f"{json.dumps(next_data)};__NEXT_LOADED_PAGES__=[];</script></html>"
    )


def flightaware_page(flights: dict) -> str:
    return f"<html><script>var trackpollBootstrap = {json.dumps({'flights': flights})};</script></html>"


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def activity_entry(scheduled_offset: int = 0, **fields) -> dict:
    entry = {
        "origin": {"iata": "DFW"},
        "destination": {"iata": "LAX"},
        "gateDepartureTimes": {"scheduled": DEPARTURE_TS + scheduled_offset},
    }
    entry.update(fields)
    return entry


class TestFlightStats:

    def test_parse_takes_larger_leg_delay(self):
        provider = FlightStatsProvider(http_client=client_for(lambda r: httpx.Response(200)))
        html = flightstats_page({
            "status": {"status": "En Route", "delay": {"departure": {"minutes": 12}, "arrival": {"minutes": 20}}},
            "schedule": {"estimatedActualDeparture": "2026-02-19T17:47:00.000", "estimatedActualArrival": None},
            "departureAirport": {"gate": "D22", "terminal": " D "},
            "arrivalAirport": {"gate": None, "terminal": "4"},
        })

        record = provider.parse(html)

        assert record.source == ProviderSource.FLIGHTSTATS
        assert record.status == "en route"
        assert record.delay_minutes == 20
        assert record.estimated_departure == "2026-02-19T17:47:00.000"
        assert record.departure_gate == "D22"
        assert record.departure_terminal == "D"
        assert record.arrival_terminal == "4"

    def test_parse_without_delay(self):
        provider = FlightStatsProvider()
        record = provider.parse(flightstats_page({"status": {"status": "Scheduled", "delay": None}}))

        assert record.status == "scheduled"
        assert record.delay_minutes is None

    @pytest.mark.parametrize("html", [
        "<html>no payload</html>",
        "<html>__NEXT_DATA__ = {not json};__NEXT_LOADED_PAGES__</html>",
        flightstats_page(None),
    ])
    def test_parse_garbage(self, html):
        assert FlightStatsProvider().parse(html) is None

    @pytest.mark.asyncio
    async def test_lookup_builds_tracker_url(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=flightstats_page({"status": {"status": "Departed"}}))

        provider = FlightStatsProvider(http_client=client_for(handler), base_url="https://fs.test/tracker/")
        record = await provider.lookup("AA", "123")

        assert str(requests[0].url) == "https://fs.test/tracker/AA/123"
        assert record.status == "departed"
        assert record.url == "https://fs.test/tracker/AA/123"

    @pytest.mark.asyncio
    async def test_lookup_http_error_is_no_data(self):
        provider = FlightStatsProvider(http_client=client_for(lambda r: httpx.Response(404)))
        assert await provider.lookup("AA", "123") is None

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried_then_swallowed(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("unreachable", request=request)

        provider = FlightStatsProvider(http_client=client_for(handler))

        assert await provider.lookup("AA", "123") is None
        assert len(attempts) == 2


class TestFlightAware:

    def test_delay_is_largest_positive_block(self):
        flight = {
            "gateDepartureTimes": {"scheduled": 1000, "estimated": 1000 + 5 * 60},
            "landingTimes": {"scheduled": 5000, "estimated": 5000 + 18 * 60},
            "gateArrivalTimes": {"scheduled": 6000, "estimated": 6000 - 10 * 60},
        }
        assert get_delay_minutes(flight) == 18
        assert get_delay_minutes({}) is None

    def test_derive_status(self):
        assert derive_status({"cancelled": True, "flightStatus": "scheduled"}, None) == "cancelled"
        assert derive_status({"diverted": True}, None) == "diverted"
        assert derive_status({"flightStatus": "Arrived"}, None) == "arrived"
        assert derive_status({}, 15) == "delayed"
        assert derive_status({}, None) is None

    def test_activity_log_prefers_signal_inside_window(self):
        provider = FlightAwareProvider(match_window_hours=18)
        far_but_rich = activity_entry(
            -24 * 3600,
            flightStatus="landed",
            takeoffTimes={"scheduled": DEPARTURE_TS - 24 * 3600, "estimated": DEPARTURE_TS - 24 * 3600 + 3600},
        )
        nearest = activity_entry(0, flightStatus="scheduled")
        delayed = activity_entry(
            3600,
            gateDepartureTimes={"scheduled": DEPARTURE_TS + 3600, "estimated": DEPARTURE_TS + 3600 + 20 * 60},
        )
        delayed["origin"]["gate"] = "C3"
        off_route = activity_entry(0, flightStatus="en route", origin={"iata": "ORD"})

        selected = provider.select_activity_flight(
            {"activityLog": {"flights": [far_but_rich, nearest, delayed, off_route]}},
            "DFW",
            "LAX",
            DEPARTURE.isoformat()
        )

        assert selected is delayed

    def test_activity_ties_break_on_proximity(self):
        provider = FlightAwareProvider()
        later = activity_entry(2 * 3600, flightStatus="scheduled")
        closer = activity_entry(600, flightStatus="scheduled")

        selected = provider.select_activity_flight(
            {"activityLog": {"flights": [later, closer]}}, "DFW", "LAX", DEPARTURE.isoformat()
        )
        assert selected is closer

    def test_scoring_weights_are_configurable(self):
        provider = FlightAwareProvider(score_delay=0, score_status=0, score_gate=10, score_terminal=0)
        flight = activity_entry(0, flightStatus="delayed")
        flight["origin"]["gate"] = "A1"
        assert provider.signal_score(flight) == 10

    def test_parse_builds_record_from_selected_instance(self):
        provider = FlightAwareProvider()
        entry = activity_entry(
            0,
            gateDepartureTimes={"scheduled": DEPARTURE_TS, "estimated": DEPARTURE_TS + 25 * 60},
        )
        entry["origin"].update({"gate": "D22", "terminal": "D"})
        html = flightaware_page({
            "AAL123-1": {
                "origin": {"iata": "DFW"},
                "destination": {"iata": "LAX"},
                "activityLog": {"flights": [entry]},
            }
        })

        record = provider.parse(html, "DFW", "LAX", DEPARTURE.isoformat())

        assert record.source == ProviderSource.FLIGHTAWARE
        assert record.status == "delayed"
        assert record.delay_minutes == 25
        assert record.departure_gate == "D22"
        assert record.departure_terminal == "D"
        assert record.estimated_departure == (DEPARTURE + timedelta(minutes=25)).isoformat()

    def test_parse_unknown_result(self):
        html = flightaware_page({"x": {"resultUnknown": True, "flightStatus": "scheduled"}})
        assert FlightAwareProvider().parse(html, "DFW", "LAX") is None

    def test_parse_without_signal(self):
        html = flightaware_page({"x": {"origin": {"iata": "DFW"}, "destination": {"iata": "LAX"}}})
        assert FlightAwareProvider().parse(html, "DFW", "LAX") is None

    @pytest.mark.asyncio
    async def test_lookup_walks_designators(self):
        seen = []
        page = flightaware_page({"x": activity_entry(0, flightStatus="departed")})

        def handler(request):
            seen.append(request.url.path.rsplit("/", 1)[-1])
            if request.url.path.endswith("/AAL123"):
                return httpx.Response(404)
            return httpx.Response(200, text=page)

        provider = FlightAwareProvider(http_client=client_for(handler), base_url="https://fa.test/live/flight")
        record = await provider.lookup(
            "AA", "123", "DFW", "LAX", DEPARTURE.isoformat(), alternate_designators=["AAL123", "AA123"]
        )

        assert seen == ["AAL123", "AA123"]
        assert record.status == "departed"
        assert record.url == "https://fa.test/live/flight/AA123"
