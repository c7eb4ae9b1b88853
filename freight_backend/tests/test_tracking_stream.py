"""
Tracking Stream Tests.

Sequence ordering, plausibility, geofencing, trip-state authority and
subscriber fan-out.
"""

import json
from datetime import timedelta

import pytest

from freight_backend.app.core.exceptions import (
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
)
from freight_backend.app.models.dispatch_enums import DriverDecision, TripState
from freight_backend.app.schemas.tracking import PositionReport
from freight_backend.app.services.tracking_stream import ACCEPTED, OUT_OF_ORDER

DRIVER = {"user_id": 101, "role": "DRIVER"}
TRANSPORTER = {"user_id": 10, "role": "TRANSPORTER"}
ADMIN = {"user_id": 1000, "role": "ADMIN"}

# About 30 km out of Mumbai on the Pune road
ON_ROUTE = (18.95, 73.10)


@pytest.fixture
def trip(core, create_broadcast):
    """Accepted single-truck trip for driver 101; returns the tracking session id."""
    async def _trip():
        broadcast = await create_broadcast(trucks_needed=1)
        view = await core.allocation.claim(broadcast.id, 10, 1, candidate_driver_ids=[101])
        outcome = await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.ACCEPT)
        return outcome.tracking_session_id
    return _trip


@pytest.fixture
def report(clock):
    """Position fix recorded ``minutes`` after the test clock's start."""
    start = clock.now()

    def _report(sequence, lat=ON_ROUTE[0], lng=ON_ROUTE[1], minutes=None, **kwargs):
        recorded_at = start + timedelta(minutes=sequence if minutes is None else minutes)
        return PositionReport(sequence=sequence, latitude=lat, longitude=lng, recorded_at=recorded_at, **kwargs)
    return _report


@pytest.mark.asyncio
async def test_out_of_order_fixes_are_dropped(core, trip, report):
    session_id = await trip()

    results = []
    for sequence in [1, 2, 4, 3, 5]:
        result = await core.tracking.ingest(session_id, report(sequence), driver_id=101)
        results.append(result.result)

    assert results == [ACCEPTED, ACCEPTED, ACCEPTED, OUT_OF_ORDER, ACCEPTED]
    positions = await core.tracking.positions(session_id)
    assert [p.sequence for p in positions] == [1, 2, 4, 5]
    assert (await core.tracking.get_live_status(session_id)).last_sequence == 5


@pytest.mark.asyncio
async def test_repeated_sequence_is_dropped(core, trip, report):
    session_id = await trip()
    await core.tracking.ingest(session_id, report(1), driver_id=101)

    again = await core.tracking.ingest(session_id, report(1, lat=18.96), driver_id=101)

    assert again.result == OUT_OF_ORDER
    assert (await core.tracking.get_live_status(session_id)).last_lat == ON_ROUTE[0]


@pytest.mark.asyncio
async def test_implausible_jump_is_kept_but_flagged(core, trip, report):
    session_id = await trip()
    await core.tracking.ingest(session_id, report(1, minutes=0), driver_id=101)

    # Roughly 1,150 km in one minute
    jump = await core.tracking.ingest(session_id, report(2, lat=28.61, lng=77.21, minutes=1), driver_id=101)
    honest = await core.tracking.ingest(session_id, report(3, lat=18.951, lng=73.101, minutes=2), driver_id=101)

    assert jump.result == ACCEPTED
    assert jump.low_confidence is True
    assert honest.low_confidence is False
    session = await core.tracking.get_live_status(session_id)
    assert session.trusted_lat == 18.951
    positions = await core.tracking.positions(session_id)
    assert [p.low_confidence for p in positions] == [False, True, False]


@pytest.mark.asyncio
async def test_reported_speed_above_limit_is_low_confidence(core, trip, report):
    session_id = await trip()

    result = await core.tracking.ingest(session_id, report(1, speed_kmh=240.0), driver_id=101)

    assert result.low_confidence is True


@pytest.mark.asyncio
async def test_geofence_moves_trip_at_pickup_and_drop(core, trip, report):
    session_id = await trip()
    await core.tracking.advance(session_id, TripState.EN_ROUTE_TO_PICKUP, DRIVER)

    at_pickup = await core.tracking.ingest(session_id, report(1, lat=19.0761, lng=72.8778, minutes=0), driver_id=101)
    assert at_pickup.trip_state == TripState.PICKUP_REACHED

    await core.tracking.advance(session_id, TripState.IN_TRANSIT, DRIVER)
    at_drop = await core.tracking.ingest(session_id, report(2, lat=18.5205, lng=73.8566, minutes=150), driver_id=101)
    assert at_drop.trip_state == TripState.DROP_REACHED


@pytest.mark.asyncio
async def test_low_confidence_fix_never_triggers_geofence(core, trip, report):
    session_id = await trip()
    await core.tracking.advance(session_id, TripState.EN_ROUTE_TO_PICKUP, DRIVER)
    await core.tracking.ingest(session_id, report(1, lat=18.5204, lng=73.8567, minutes=0), driver_id=101)

    # Pickup is ~120 km away; arriving a minute later is implausible
    result = await core.tracking.ingest(session_id, report(2, lat=19.0760, lng=72.8777, minutes=1), driver_id=101)

    assert result.low_confidence is True
    assert result.trip_state == TripState.EN_ROUTE_TO_PICKUP


@pytest.mark.asyncio
async def test_trip_state_actor_rules(core, trip):
    session_id = await trip()

    with pytest.raises(InsufficientPermissionsError):
        await core.tracking.advance(session_id, TripState.EN_ROUTE_TO_PICKUP, TRANSPORTER)
    with pytest.raises(InsufficientPermissionsError):
        await core.tracking.advance(session_id, TripState.EN_ROUTE_TO_PICKUP, {"user_id": 102, "role": "DRIVER"})
    with pytest.raises(InsufficientPermissionsError):
        await core.tracking.advance(session_id, TripState.COMPLETED, ADMIN)

    cancelled = await core.tracking.advance(session_id, TripState.CANCELLED, ADMIN, reason="breakdown")
    assert cancelled.trip_state == TripState.CANCELLED


@pytest.mark.asyncio
async def test_trip_cannot_skip_states(core, trip):
    session_id = await trip()

    with pytest.raises(InvalidTransitionError):
        await core.tracking.advance(session_id, TripState.IN_TRANSIT, DRIVER)


@pytest.mark.asyncio
async def test_full_trip_to_completion_stops_ingestion(core, trip, report):
    session_id = await trip()
    for state in (TripState.EN_ROUTE_TO_PICKUP, TripState.PICKUP_REACHED, TripState.IN_TRANSIT, TripState.DROP_REACHED):
        await core.tracking.advance(session_id, state, DRIVER)
    completed = await core.tracking.advance(session_id, TripState.COMPLETED, TRANSPORTER)

    assert completed.trip_state == TripState.COMPLETED
    assert completed.completed_at is not None
    assert await core.tracking.fleet_status(10) == []
    with pytest.raises(ExpiredOrTerminalError):
        await core.tracking.ingest(session_id, report(1), driver_id=101)


@pytest.mark.asyncio
async def test_only_assigned_driver_reports_positions(core, trip, report):
    session_id = await trip()

    with pytest.raises(InsufficientPermissionsError):
        await core.tracking.ingest(session_id, report(1), driver_id=102)


@pytest.mark.asyncio
async def test_positions_fan_out_to_customer_transporter_and_archive(core, trip, report, mock_redis):
    session_id = await trip()

    await core.tracking.ingest(session_id, report(1), driver_id=101)
    await core.drain()

    customer = [json.loads(m) for m in mock_redis.channel_messages("tracking:customer:1")]
    transporter = [json.loads(m) for m in mock_redis.channel_messages("tracking:transporter:10")]
    assert [e["sequence"] for e in customer if e["type"] == "position"] == [1]
    assert [e["sequence"] for e in transporter if e["type"] == "position"] == [1]
    assert len(mock_redis.streams[f"tracking:archive:{session_id}"]) == 1


@pytest.mark.asyncio
async def test_subscriber_outage_never_blocks_ingestion(core, trip, report, mock_redis):
    session_id = await trip()
    mock_redis.fail = True

    result = await core.tracking.ingest(session_id, report(1), driver_id=101)
    await core.drain()

    assert result.result == ACCEPTED
    assert [p.sequence for p in await core.tracking.positions(session_id)] == [1]


@pytest.mark.asyncio
async def test_broadcast_cancel_aborts_running_trip(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, 10, 1, candidate_driver_ids=[101])
    outcome = await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.ACCEPT)

    await core.registry.cancel(broadcast.id, {"user_id": 1, "role": "CUSTOMER"})

    session = await core.tracking.get_live_status(outcome.tracking_session_id)
    assert session.trip_state == TripState.CANCELLED


@pytest.mark.asyncio
async def test_broadcast_expiry_leaves_accepted_trip_running(core, clock, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, 10, 1, candidate_driver_ids=[101])
    outcome = await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.ACCEPT)

    clock.advance(minutes=61)
    await core.sweep()

    session = await core.tracking.get_live_status(outcome.tracking_session_id)
    assert session.trip_state == TripState.ASSIGNED
    assert (await core.registry.get(broadcast.id)).trucks_filled == 1
