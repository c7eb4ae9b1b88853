"""
Notification Dispatcher Tests.

Deadlines, exactly-once resolution, delivery retry/fallback and the DLQ.
"""

import asyncio

import pytest
from sqlalchemy import select

from freight_backend.app.core.exceptions import (
    AlreadyResolvedError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
)
from freight_backend.app.models.audit_log import AuditLog
from freight_backend.app.models.dispatch_enums import AssignmentStatus, DriverDecision, NotificationPriority
from freight_backend.app.models.dlq import DLQStatus
from freight_backend.app.services.audit import AuditAction

TRANSPORTER = 10
CUSTOMER = {"user_id": 1, "role": "CUSTOMER"}


@pytest.fixture
def offer(core, create_broadcast):
    """Create a broadcast and a single notified offer to driver 101."""
    async def _offer(trucks_needed=1, candidates=(101,)):
        broadcast = await create_broadcast(trucks_needed=trucks_needed)
        view = await core.allocation.claim(broadcast.id, TRANSPORTER, 1, candidate_driver_ids=list(candidates))
        return broadcast, view.assignments[0]
    return _offer


@pytest.mark.asyncio
async def test_notify_is_idempotent(core, offer, push_channel):
    _, assignment = await offer()
    await core.drain()

    again = await core.dispatcher.notify(assignment.id)
    await core.drain()

    assert again.status == AssignmentStatus.NOTIFIED
    assert again.notified_at == assignment.notified_at
    assert again.response_deadline_at == assignment.response_deadline_at
    assert len(push_channel.offers_to(101)) == 1


@pytest.mark.asyncio
async def test_deadline_is_anchored_at_notification(core, clock, offer, settings):
    _, assignment = await offer()

    assert assignment.notified_at == clock.now()
    assert (assignment.response_deadline_at - assignment.notified_at).total_seconds() == settings.response_timeout_seconds
    assert core.dispatcher.timers.pending(assignment.id)


@pytest.mark.asyncio
async def test_duplicate_accept_is_reported_not_reapplied(core, offer):
    _, assignment = await offer()

    first = await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)
    second = await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.status == AssignmentStatus.ACCEPTED
    assert second.tracking_session_id == first.tracking_session_id
    assert not core.dispatcher.timers.pending(assignment.id)


@pytest.mark.asyncio
async def test_conflicting_response_after_resolution_is_rejected(core, offer):
    _, assignment = await offer()
    await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)

    with pytest.raises(AlreadyResolvedError) as exc_info:
        await core.dispatcher.on_response(assignment.id, 101, DriverDecision.DECLINE)

    assert exc_info.value.details["status"] == AssignmentStatus.ACCEPTED.value


@pytest.mark.asyncio
async def test_only_the_offered_driver_may_respond(core, offer):
    _, assignment = await offer()

    with pytest.raises(InsufficientPermissionsError):
        await core.dispatcher.on_response(assignment.id, 999, DriverDecision.ACCEPT)


@pytest.mark.asyncio
async def test_overdue_offer_times_out_and_late_accept_fails(core, clock, offer):
    broadcast, assignment = await offer()
    clock.advance(seconds=61)

    result = await core.sweep()

    assert result.timed_out_assignments == [assignment.id]
    assert (await core.allocation.get_assignment(assignment.id)).status == AssignmentStatus.TIMED_OUT
    assert (await core.registry.get(broadcast.id)).trucks_filled == 0
    with pytest.raises(AlreadyResolvedError):
        await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)


@pytest.mark.asyncio
@pytest.mark.parametrize("settings_overrides", [{"response_timeout_seconds": 0.2}])
async def test_deadline_timer_fires_without_sweep(core, offer):
    _, assignment = await offer()

    status = await core.dispatcher.wait_for_resolution(assignment.id, timeout=5)

    assert status == AssignmentStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_expiry_after_accept_is_a_noop(core, offer):
    _, assignment = await offer()
    await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)

    assert await core.dispatcher.expire(assignment.id) is None
    assert (await core.allocation.get_assignment(assignment.id)).status == AssignmentStatus.ACCEPTED


@pytest.mark.asyncio
async def test_racing_accept_and_timeout_resolve_once(core, offer):
    _, assignment = await offer()

    results = await asyncio.gather(
        core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT),
        core.dispatcher.expire(assignment.id),
        return_exceptions=True,
    )

    final = (await core.allocation.get_assignment(assignment.id)).status
    if final == AssignmentStatus.ACCEPTED:
        assert results[1] is None
    else:
        assert final == AssignmentStatus.TIMED_OUT
        assert isinstance(results[0], AlreadyResolvedError)


@pytest.mark.asyncio
async def test_push_is_retried_on_backoff_schedule(core, offer, push_channel, sms_channel):
    push_channel.outcomes = ["error", "miss", "ok"]
    _, assignment = await offer()
    await core.drain()

    reloaded = await core.allocation.get_assignment(assignment.id)
    assert reloaded.delivery_channel == "push"
    assert reloaded.delivery_attempts == 3
    assert len(push_channel.offers_to(101)) == 3
    assert sms_channel.sent == []


@pytest.mark.asyncio
async def test_sms_fallback_after_push_exhausted(core, offer, push_channel, sms_channel):
    push_channel.outcomes = ["miss", "miss", "miss"]
    _, assignment = await offer()
    await core.drain()

    reloaded = await core.allocation.get_assignment(assignment.id)
    assert reloaded.delivery_channel == "sms"
    assert reloaded.delivery_attempts == 4
    target, payload, priority = sms_channel.sent[0]
    assert (target, priority) == (101, NotificationPriority.ALARM)
    assert payload["assignment_id"] == assignment.id


@pytest.mark.asyncio
async def test_undeliverable_offer_is_dead_lettered_and_keeps_deadline(
    core, offer, push_channel, sms_channel, session_factory
):
    push_channel.outcomes = ["miss", "miss", "miss"]
    sms_channel.outcomes = ["error"]
    _, assignment = await offer()
    await core.drain()

    items = await core.dispatcher.list_dead_letters()
    assert len(items) == 1
    assert items[0].status == DLQStatus.FAILED
    assert items[0].payload["assignment_id"] == assignment.id
    assert "4 attempt" in items[0].error_message

    reloaded = await core.allocation.get_assignment(assignment.id)
    assert reloaded.status == AssignmentStatus.NOTIFIED
    assert core.dispatcher.timers.pending(assignment.id)

    async with session_factory() as db:
        audit = (await db.execute(
            select(AuditLog).where(AuditLog.action == AuditAction.DELIVERY_FAILED)
        )).scalars().all()
    assert [row.entity_id for row in audit] == [assignment.id]


@pytest.mark.asyncio
async def test_dead_letter_retry_redelivers(core, offer, push_channel, sms_channel):
    push_channel.outcomes = ["miss", "miss", "miss"]
    sms_channel.outcomes = ["miss"]
    _, assignment = await offer()
    await core.drain()
    item = (await core.dispatcher.list_dead_letters())[0]

    retried = await core.dispatcher.retry_dead_letter(item.id)
    assert retried.status == DLQStatus.RETRYING
    await core.drain()

    item = (await core.dispatcher.list_dead_letters())[0]
    assert item.status == DLQStatus.PROCESSED
    assert item.retry_count == 1
    assert (await core.allocation.get_assignment(assignment.id)).delivery_channel == "push"


@pytest.mark.asyncio
async def test_dead_letter_for_resolved_offer_is_archived(core, offer, push_channel, sms_channel):
    push_channel.outcomes = ["miss", "miss", "miss"]
    sms_channel.outcomes = ["miss"]
    _, assignment = await offer()
    await core.drain()
    await core.dispatcher.on_response(assignment.id, 101, DriverDecision.DECLINE)
    item = (await core.dispatcher.list_dead_letters())[0]

    retried = await core.dispatcher.retry_dead_letter(item.id)

    assert retried.status == DLQStatus.ARCHIVED


@pytest.mark.asyncio
async def test_cancel_stops_deadline_and_tells_driver(core, offer, push_channel):
    broadcast, assignment = await offer(trucks_needed=2)
    waiter = asyncio.create_task(core.dispatcher.wait_for_resolution(assignment.id, timeout=5))
    await asyncio.sleep(0.05)

    await core.registry.cancel(broadcast.id, CUSTOMER, reason="order withdrawn")
    await core.drain()

    assert await waiter == AssignmentStatus.CANCELLED
    assert not core.dispatcher.timers.pending(assignment.id)
    assert [target for target, _ in push_channel.of_type("BROADCAST_CLOSED")] == [101]
    with pytest.raises(ExpiredOrTerminalError):
        await core.dispatcher.on_response(assignment.id, 101, DriverDecision.ACCEPT)


@pytest.mark.asyncio
async def test_new_broadcast_alerts_nearby_supply_of_matching_class(core, create_broadcast, push_channel):
    await core.geo_index.update_candidate(50, 19.08, 72.88, ["CONTAINER"])
    await core.geo_index.update_candidate(51, 28.61, 77.21, ["CONTAINER"])
    await core.geo_index.update_candidate(52, 19.08, 72.88, ["TANKER"])

    broadcast = await create_broadcast()
    await core.drain()

    alerts = push_channel.of_type("NEW_BROADCAST")
    assert [target for target, _ in alerts] == [50]
    assert alerts[0][1]["broadcast_id"] == broadcast.id


@pytest.mark.asyncio
async def test_restore_timers_rearms_notified_offers(core, offer):
    _, assignment = await offer()
    await core.dispatcher.timers.shutdown()
    assert not core.dispatcher.timers.pending(assignment.id)

    restored = await core.dispatcher.restore_timers()

    assert restored == 1
    assert core.dispatcher.timers.pending(assignment.id)
