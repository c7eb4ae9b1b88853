"""
Allocation Engine Tests.

Claims, driver binding, acceptance and the decline/retarget path.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from freight_backend.app.core.exceptions import (
    AlreadyBoundError,
    CapacityConflictError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ValidationFailedError,
)
from freight_backend.app.models.audit_log import AuditLog
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    BroadcastStatus,
    DriverDecision,
    NotificationPriority,
    ReservationStatus,
    TripState,
)
from freight_backend.app.models.notification import Notification, NotificationType
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.services.audit import AuditAction

TRANSPORTER = 10


async def inbox(session_factory, user_id, notification_type=None):
    query = select(Notification).where(Notification.user_id == user_id)
    if notification_type is not None:
        query = query.where(Notification.type == notification_type)
    async with session_factory() as db:
        result = await db.execute(query.order_by(Notification.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_claim_binds_candidates_in_order_and_notifies(core, create_broadcast, push_channel):
    broadcast = await create_broadcast(trucks_needed=3)

    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2, candidate_driver_ids=[101, 102, 103])
    await core.drain()

    assert view.reservation.trucks_held == 2
    assert view.reservation.candidate_driver_ids == [101, 102, 103]
    assert [a.driver_id for a in view.assignments] == [101, 102]
    assert all(a.status == AssignmentStatus.NOTIFIED for a in view.assignments)
    assert all(a.response_deadline_at is not None for a in view.assignments)
    assert len(push_channel.offers_to(101)) == 1
    assert len(push_channel.offers_to(102)) == 1
    assert push_channel.offers_to(103) == []


@pytest.mark.asyncio
async def test_offer_is_alarm_priority_with_trip_details(core, create_broadcast, push_channel, session_factory):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=[101])
    await core.drain()

    target, payload, priority = push_channel.sent[-1]
    assert target == 101
    assert priority == NotificationPriority.ALARM
    assert payload["assignment_id"] == view.assignments[0].id
    assert payload["pickup"]["address"] == "JNPT Gate 2"
    assert payload["fare_per_truck"] == broadcast.fare_per_truck

    offers = await inbox(session_factory, 101, NotificationType.ASSIGNMENT_OFFER)
    assert len(offers) == 1
    assert offers[0].priority == NotificationPriority.ALARM


@pytest.mark.asyncio
async def test_claim_without_drivers_leaves_slots_unbound(core, create_broadcast, push_channel):
    broadcast = await create_broadcast(trucks_needed=2)

    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2)

    assert [a.driver_id for a in view.assignments] == [None, None]
    assert all(a.status == AssignmentStatus.PENDING_NOTIFY for a in view.assignments)
    assert push_channel.sent == []


@pytest.mark.asyncio
async def test_assign_driver_binds_once(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1)
    slot = view.assignments[0]

    assignment = await core.allocation.assign_driver(slot.id, driver_id=201, transporter_id=TRANSPORTER)
    assert assignment.driver_id == 201
    assert assignment.status == AssignmentStatus.NOTIFIED

    with pytest.raises(AlreadyBoundError):
        await core.allocation.assign_driver(slot.id, driver_id=202, transporter_id=TRANSPORTER)


@pytest.mark.asyncio
async def test_assign_driver_rejects_other_transporter(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1)

    with pytest.raises(InsufficientPermissionsError):
        await core.allocation.assign_driver(view.assignments[0].id, driver_id=201, transporter_id=99)


@pytest.mark.asyncio
async def test_busy_driver_is_skipped_on_claim_and_refused_on_assign(core, create_broadcast):
    first = await create_broadcast(trucks_needed=1)
    second = await create_broadcast(trucks_needed=2)
    await core.allocation.claim(first.id, TRANSPORTER, 1, candidate_driver_ids=[101])

    view = await core.allocation.claim(second.id, TRANSPORTER, 2, candidate_driver_ids=[101, 102])
    assert [a.driver_id for a in view.assignments] == [102, None]

    with pytest.raises(ValidationFailedError):
        await core.allocation.assign_driver(view.assignments[1].id, driver_id=101, transporter_id=TRANSPORTER)


@pytest.mark.asyncio
async def test_accept_confirms_unit_and_opens_tracking(core, create_broadcast, session_factory):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=[101])
    assignment_id = view.assignments[0].id

    outcome = await core.dispatcher.on_response(assignment_id, 101, DriverDecision.ACCEPT)

    assert outcome.status == AssignmentStatus.ACCEPTED
    assert outcome.tracking_session_id is not None
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    assert reloaded.reservation.trucks_confirmed == 1
    assert reloaded.reservation.status == ReservationStatus.CONFIRMED

    async with session_factory() as db:
        session = (await db.execute(
            select(TrackingSession).where(TrackingSession.id == outcome.tracking_session_id)
        )).scalar_one()
    assert session.assignment_id == assignment_id
    assert session.driver_id == 101
    assert session.customer_id == broadcast.customer_id
    assert session.trip_state == TripState.ASSIGNED


@pytest.mark.asyncio
async def test_decline_retargets_to_next_alternate(core, create_broadcast, push_channel):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=[101, 102])
    original = view.assignments[0]

    outcome = await core.dispatcher.on_response(original.id, 101, DriverDecision.DECLINE, reason="truck in service")
    await core.drain()

    assert outcome.status == AssignmentStatus.DECLINED
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    replacement = [a for a in reloaded.assignments if a.id != original.id][0]
    assert replacement.driver_id == 102
    assert replacement.status == AssignmentStatus.NOTIFIED
    assert replacement.retarget_count == 1
    assert replacement.replaces_assignment_id == original.id
    assert replacement.slot_index == original.slot_index
    assert reloaded.reservation.trucks_held == 1
    assert (await core.registry.get(broadcast.id)).trucks_filled == 1
    assert len(push_channel.offers_to(102)) == 1


@pytest.mark.asyncio
async def test_decline_without_alternate_releases_slot_and_tells_transporter(
    core, create_broadcast, push_channel, session_factory
):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2, candidate_driver_ids=[101, 102])

    await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.DECLINE)
    await core.drain()

    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.trucks_filled == 1
    assert refreshed.status == BroadcastStatus.PARTIALLY_FILLED
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    assert reloaded.reservation.trucks_held == 1
    assert reloaded.reservation.status == ReservationStatus.PARTIALLY_RELEASED

    notices = await inbox(session_factory, TRANSPORTER, NotificationType.SLOT_UNFULFILLED)
    assert len(notices) == 1
    assert notices[0].priority == NotificationPriority.HIGH
    assert [target for target, _ in push_channel.of_type("SLOT_UNFULFILLED")] == [TRANSPORTER]


@pytest.mark.asyncio
@pytest.mark.parametrize("settings_overrides", [{"max_retarget": 1}])
async def test_retarget_budget_is_bounded(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=[101, 102, 103])

    await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.DECLINE)
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    replacement = reloaded.assignments[-1]
    assert replacement.driver_id == 102

    await core.dispatcher.on_response(replacement.id, 102, DriverDecision.DECLINE)

    reloaded = await core.allocation.get_reservation(view.reservation.id)
    assert [a.driver_id for a in reloaded.assignments] == [101, 102]
    assert reloaded.reservation.status == ReservationStatus.RELEASED
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.ACTIVE


@pytest.mark.asyncio
async def test_released_unit_becomes_claimable_again(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=[101])

    with pytest.raises(CapacityConflictError):
        await core.allocation.claim(broadcast.id, 11, 1)

    await core.dispatcher.on_response(view.assignments[0].id, 101, DriverDecision.DECLINE)
    second = await core.allocation.claim(broadcast.id, 11, 1)

    assert second.reservation.trucks_held == 1
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.FULLY_FILLED


@pytest.mark.asyncio
async def test_unstaffed_slot_times_out_at_bind_deadline(core, clock, create_broadcast, session_factory, settings):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2)
    slot_ids = [a.id for a in view.assignments]
    assert all(core.dispatcher.timers.pending(slot_id) for slot_id in slot_ids)
    assert (await core.registry.get(broadcast.id)).status == BroadcastStatus.FULLY_FILLED

    clock.advance(seconds=settings.bind_timeout_seconds + 1)
    result = await core.sweep()

    assert sorted(result.timed_out_assignments) == sorted(slot_ids)
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.status == BroadcastStatus.ACTIVE
    assert refreshed.trucks_filled == 0
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    assert reloaded.reservation.status == ReservationStatus.RELEASED
    assert [a.status for a in reloaded.assignments] == [AssignmentStatus.TIMED_OUT] * 2
    assert len(await inbox(session_factory, TRANSPORTER, NotificationType.SLOT_UNFULFILLED)) == 2


@pytest.mark.asyncio
async def test_binding_a_driver_replaces_the_bind_deadline(core, clock, create_broadcast, settings):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1)
    clock.advance(seconds=settings.bind_timeout_seconds - 10)

    assignment = await core.allocation.assign_driver(view.assignments[0].id, driver_id=201, transporter_id=TRANSPORTER)

    assert assignment.response_deadline_at == clock.now() + timedelta(seconds=settings.response_timeout_seconds)
    clock.advance(seconds=30)
    assert (await core.sweep()).timed_out_assignments == []


@pytest.mark.asyncio
async def test_release_slot_returns_unit_to_broadcast(core, create_broadcast, session_factory):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2)
    slot = view.assignments[0]

    released = await core.allocation.release_slot(slot.id, transporter_id=TRANSPORTER)

    assert released.status == AssignmentStatus.RELEASED
    assert not core.dispatcher.timers.pending(slot.id)
    refreshed = await core.registry.get(broadcast.id)
    assert refreshed.status == BroadcastStatus.PARTIALLY_FILLED
    assert refreshed.trucks_remaining == 1
    reloaded = await core.allocation.get_reservation(view.reservation.id)
    assert reloaded.reservation.status == ReservationStatus.PARTIALLY_RELEASED
    assert reloaded.reservation.status == reloaded.reservation.derive_status()

    other = await core.allocation.claim(broadcast.id, 11, 1)
    assert other.reservation.trucks_held == 1
    assert (await core.registry.check_integrity(broadcast.id)).healthy is True

    async with session_factory() as db:
        rows = (await db.execute(
            select(AuditLog).where(AuditLog.action == AuditAction.SLOT_RELEASED, AuditLog.entity_id == slot.id)
        )).scalars().all()
    assert [(row.actor_id, row.meta_data["outcome"]) for row in rows] == [(TRANSPORTER, "RELEASED")]


@pytest.mark.asyncio
async def test_release_slot_refuses_sent_offers_and_other_transporters(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=2)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 2, candidate_driver_ids=[101])
    offered, unbound = view.assignments

    with pytest.raises(InvalidTransitionError):
        await core.allocation.release_slot(offered.id, transporter_id=TRANSPORTER)
    with pytest.raises(InsufficientPermissionsError):
        await core.allocation.release_slot(unbound.id, transporter_id=99)

    await core.allocation.release_slot(unbound.id, transporter_id=TRANSPORTER)
    with pytest.raises(InvalidTransitionError):
        await core.allocation.release_slot(unbound.id, transporter_id=TRANSPORTER)
    assert (await core.registry.get(broadcast.id)).trucks_filled == 1


@pytest.mark.asyncio
async def test_release_reservation_gives_back_every_unsent_slot(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=3)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 3, candidate_driver_ids=[101])

    released = await core.allocation.release_reservation(view.reservation.id, transporter_id=TRANSPORTER)

    assert [a.status for a in released.assignments] == [
        AssignmentStatus.NOTIFIED, AssignmentStatus.RELEASED, AssignmentStatus.RELEASED,
    ]
    assert released.reservation.trucks_held == 1
    assert released.reservation.status == ReservationStatus.PARTIALLY_RELEASED
    assert (await core.registry.get(broadcast.id)).trucks_filled == 1

    with pytest.raises(InvalidTransitionError):
        await core.allocation.release_reservation(view.reservation.id, transporter_id=TRANSPORTER)


@pytest.mark.asyncio
async def test_released_slot_cannot_be_staffed(core, create_broadcast):
    broadcast = await create_broadcast(trucks_needed=1)
    view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1)
    await core.allocation.release_slot(view.assignments[0].id, transporter_id=TRANSPORTER)

    with pytest.raises(ExpiredOrTerminalError):
        await core.allocation.assign_driver(view.assignments[0].id, driver_id=201, transporter_id=TRANSPORTER)
