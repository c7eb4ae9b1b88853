"""
Broadcast Registry Tests.

Lifecycle, counter transitions and capacity errors.
"""

from datetime import timedelta

import pytest

from freight_backend.app.core.exceptions import (
    CapacityConflictError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ValidationFailedError,
)
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    BroadcastStatus,
    ReservationStatus,
    VehicleClass,
)
from freight_backend.app.schemas.broadcast import GeoPoint
from freight_backend.app.services.geo import buckets_within, geo_bucket
from freight_backend.app.services.unit_of_work import transaction

CUSTOMER = {"user_id": 1, "role": "CUSTOMER"}


@pytest.mark.asyncio
async def test_create_prices_and_schedules_expiry(core, clock, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=4)

    assert broadcast.status == BroadcastStatus.ACTIVE
    assert broadcast.trucks_filled == 0
    assert broadcast.trucks_remaining == 4
    assert 110 < broadcast.distance_km < 130
    assert broadcast.fare_per_truck > 0
    assert broadcast.expires_at == clock.now() + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_urgent_broadcast_costs_more(core, create_broadcast):
    normal = await create_broadcast()
    urgent = await create_broadcast(is_urgent=True)

    assert urgent.fare_per_truck > normal.fare_per_truck


@pytest.mark.asyncio
async def test_create_rejects_ttl_above_maximum(core, make_request):
    with pytest.raises(ValidationFailedError):
        await core.registry.create(make_request(ttl_minutes=5000), customer_id=1)


@pytest.mark.asyncio
async def test_claims_move_status_through_partial_to_full(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=3)

    await core.allocation.claim(broadcast.id, transporter_id=10, n=2)
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.PARTIALLY_FILLED

    await core.allocation.claim(broadcast.id, transporter_id=11, n=1)
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.status == BroadcastStatus.FULLY_FILLED
    assert refreshed.trucks_filled == 3


@pytest.mark.asyncio
async def test_over_claim_reports_remaining_and_changes_nothing(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=3)
    await core.allocation.claim(broadcast.id, transporter_id=10, n=2)

    with pytest.raises(CapacityConflictError) as exc_info:
        await core.allocation.claim(broadcast.id, transporter_id=11, n=2)

    assert exc_info.value.details["trucks_remaining"] == 1
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.trucks_filled == 2
    assert refreshed.status == BroadcastStatus.PARTIALLY_FILLED


@pytest.mark.asyncio
async def test_claim_after_expiry_time_is_rejected_before_sweep(core, clock, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=2)
    clock.advance(minutes=61)

    with pytest.raises(ExpiredOrTerminalError) as exc_info:
        await core.allocation.claim(broadcast.id, transporter_id=10, n=1)

    assert exc_info.value.details["status"] == BroadcastStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_release_reverts_full_to_partial_then_active(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, transporter_id=10, n=2)

    async with transaction(core.session_factory) as db:
        reservation = await core.registry.release(db, view.reservation.id, 1)
    assert reservation.trucks_held == 1
    assert reservation.status == ReservationStatus.PARTIALLY_RELEASED
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.PARTIALLY_FILLED

    async with transaction(core.session_factory) as db:
        reservation = await core.registry.release(db, view.reservation.id, 1)
    assert reservation.status == ReservationStatus.RELEASED
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.status == BroadcastStatus.ACTIVE
    assert refreshed.trucks_filled == 0


@pytest.mark.asyncio
async def test_sweep_expires_and_releases_unresolved_slots(core, clock, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=5)
    first = await core.allocation.claim(broadcast.id, transporter_id=10, n=2)
    second = await core.allocation.claim(broadcast.id, transporter_id=11, n=1)

    clock.advance(minutes=61)
    result = await core.sweep()

    assert result.expired_broadcasts == [broadcast.id]
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.status == BroadcastStatus.EXPIRED
    assert refreshed.trucks_filled == 0
    assert refreshed.closed_at == clock.now()
    for view in (first, second):
        reloaded = await core.allocation.get_reservation(view.reservation.id)
        assert reloaded.reservation.status == ReservationStatus.RELEASED
        assert all(a.status == AssignmentStatus.CANCELLED for a in reloaded.assignments)


@pytest.mark.asyncio
async def test_sweep_ignores_live_broadcasts(core, clock, create_broadcast):
    broadcast = await create_broadcast()
    clock.advance(minutes=30)

    result = await core.sweep()

    assert result.expired_broadcasts == []
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.ACTIVE


@pytest.mark.asyncio
async def test_cancel_requires_owner(core, create_broadcast):
    broadcast = await create_broadcast(customer_id=1)

    with pytest.raises(InsufficientPermissionsError):
        await core.registry.cancel(broadcast.id, {"user_id": 2, "role": "CUSTOMER"})


@pytest.mark.asyncio
async def test_cancel_is_terminal(core, create_broadcast):
    broadcast = await create_broadcast()

    cancelled = await core.registry.cancel(broadcast.id, CUSTOMER, reason="plans changed")
    assert cancelled.status == BroadcastStatus.CANCELLED
    assert cancelled.cancel_reason == "plans changed"

    with pytest.raises(ExpiredOrTerminalError):
        await core.registry.cancel(broadcast.id, CUSTOMER)
    with pytest.raises(ExpiredOrTerminalError):
        await core.allocation.claim(broadcast.id, transporter_id=10, n=1)


@pytest.mark.asyncio
async def test_fully_filled_broadcast_cannot_be_cancelled(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    await core.allocation.claim(broadcast.id, transporter_id=10, n=1)

    with pytest.raises(InvalidTransitionError):
        await core.registry.cancel(broadcast.id, CUSTOMER)


@pytest.mark.asyncio
async def test_list_active_filters_and_sorts_by_distance(core, create_broadcast, make_request):
    near = await create_broadcast()
    far_request = make_request()
    far_request.pickup = GeoPoint(lat=19.9, lng=73.8)
    far = await core.registry.create(far_request, customer_id=1)
    await create_broadcast(vehicle_class=VehicleClass.TANKER)
    full = await create_broadcast(trucks_needed=1)
    await core.allocation.claim(full.id, transporter_id=10, n=1)

    active = await core.registry.list_active(vehicle_class=VehicleClass.CONTAINER, lat=19.07, lng=72.88)

    assert [b.id for b in active] == [near.id, far.id]
    assert active[0].distance_from_caller_km < active[1].distance_from_caller_km
    assert active[0].trucks_remaining == 3


@pytest.mark.asyncio
async def test_list_active_radius_excludes_distant_pickups(core, create_broadcast):
    near = await create_broadcast()

    within = await core.registry.list_active(lat=19.08, lng=72.88, radius_km=10)
    beyond = await core.registry.list_active(lat=28.61, lng=77.21, radius_km=10)

    assert [b.id for b in within] == [near.id]
    assert beyond == []


@pytest.mark.asyncio
async def test_list_active_radius_reaches_across_antimeridian(core, make_request):
    request = make_request()
    request.pickup = GeoPoint(lat=-17.8, lng=179.95, address="Levuka wharf")
    request.drop = GeoPoint(lat=-17.6, lng=179.4, address="Savusavu")
    across = await core.registry.create(request, customer_id=1)

    nearby = await core.registry.list_active(lat=-17.8, lng=-179.95, radius_km=50)

    assert [b.id for b in nearby] == [across.id]
    assert nearby[0].distance_from_caller_km < 15


def test_grid_cells_wrap_at_antimeridian():
    assert geo_bucket(0.0, 179.9, 0.5) in buckets_within(0.0, -179.9, 30, 0.5)
    assert geo_bucket(0.0, -179.9, 0.5) in buckets_within(0.0, 179.9, 30, 0.5)
    assert geo_bucket(0.0, 180.0, 0.5) == geo_bucket(0.0, -180.0, 0.5)


def test_grid_that_does_not_tile_globe_skips_prefilter_at_antimeridian():
    assert buckets_within(0.0, 179.9, 30, 0.7) == []
    assert buckets_within(0.0, 10.0, 30, 0.7) != []
