"""
Notification Dispatcher.

Drives each driver assignment from PENDING_NOTIFY to a final outcome:

1. ``notify`` moves the assignment to NOTIFIED, anchors the response
   deadline at that moment and schedules a cancellable deadline timer.
2. Delivery runs in the background: alarm-priority push on the backoff
   schedule, then SMS. Exhaustion is logged, dead-lettered and left to the
   deadline; a slot is never dropped silently.
3. ``on_response`` and the deadline both resolve through the same
   compare-and-swap on ``status = NOTIFIED``, so exactly one of them wins
   and the other becomes a no-op. A slot that never got an offer out times
   out the same way once its bind deadline passes.
4. Every resolution row-locks the broadcast before the assignment, the
   same order closing a broadcast takes them in.

Nothing here holds a connection while waiting for a driver; callers that
need the outcome await ``wait_for_resolution``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.core.exceptions import (
    AlreadyResolvedError,
    AppException,
    DeliveryFailureError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from freight_backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    DriverDecision,
    NotificationPriority,
    UNRESOLVED_ASSIGNMENT_STATUSES,
)
from freight_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from freight_backend.app.models.driver_assignment import DriverAssignment
from freight_backend.app.models.notification import NotificationType
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.services.allocation_engine import AllocationEngine, ResolutionEffects
from freight_backend.app.services.audit import AuditAction, log_event
from freight_backend.app.services.broadcast_registry import BroadcastClosed
from freight_backend.app.services.geo_index import GeoIndex
from freight_backend.app.services.notification_channels import ChannelError, DeliveryResult, NotificationChannel
from freight_backend.app.services.notification_service import NotificationService
from freight_backend.app.services.timers import DeadlineTimers
from freight_backend.app.services.unit_of_work import transaction

logger = logging.getLogger(__name__)

DELIVERY_TASK = "deliver_assignment_offer"

RESOLUTION_AUDIT = {
    AssignmentStatus.ACCEPTED: AuditAction.DRIVER_ACCEPTED,
    AssignmentStatus.DECLINED: AuditAction.DRIVER_DECLINED,
    AssignmentStatus.TIMED_OUT: AuditAction.ASSIGNMENT_TIMED_OUT,
}


@dataclass
class RespondOutcome:
    assignment_id: int
    status: AssignmentStatus
    duplicate: bool = False
    tracking_session_id: Optional[int] = None


class NotificationDispatcher:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        allocation: AllocationEngine,
        channels: Dict[str, NotificationChannel],
        geo_index: GeoIndex,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.allocation = allocation
        self.channels = channels
        self.geo_index = geo_index
        self.clock = clock
        self.settings = settings
        self.timers = DeadlineTimers()
        self._breakers = {
            name: CircuitBreaker(
                name=f"notify:{name}",
                failure_threshold=settings.channel_failure_threshold,
                reset_timeout=settings.channel_reset_timeout,
            )
            for name in channels
        }
        self._waiters: Dict[int, List[asyncio.Future]] = {}
        self._background: set = set()

    # ------------------------------------------------------------------
    # Notify
    # ------------------------------------------------------------------

    async def notify(self, assignment_id: int) -> DriverAssignment:
        """
        Send the offer for a bound assignment. Idempotent: an assignment that
        is already NOTIFIED keeps its original deadline.
        """
        now = self.clock.now()
        deadline = now + timedelta(seconds=self.settings.response_timeout_seconds)

        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(DriverAssignment)
                .where(
                    DriverAssignment.id == assignment_id,
                    DriverAssignment.status == AssignmentStatus.PENDING_NOTIFY,
                    DriverAssignment.driver_id.isnot(None),
                )
                .values(status=AssignmentStatus.NOTIFIED, notified_at=now, response_deadline_at=deadline)
                .execution_options(synchronize_session=False)
            )
            assignment = await self._load_assignment(db, assignment_id)
            if assignment is None:
                raise ResourceNotFoundError("Driver assignment", assignment_id)

            newly_notified = result.rowcount == 1
            if not newly_notified and assignment.status == AssignmentStatus.PENDING_NOTIFY:
                raise ValidationFailedError(
                    "Assignment has no driver bound yet",
                    details={"assignment_id": assignment_id},
                )

            if newly_notified:
                broadcast = (
                    await db.execute(select(Broadcast).where(Broadcast.id == assignment.broadcast_id))
                ).scalar_one()
                offer = self._offer_payload(assignment, broadcast)
                await NotificationService.create_notification(
                    db,
                    user_id=assignment.driver_id,
                    title=offer["title"],
                    message=offer["message"],
                    type=NotificationType.ASSIGNMENT_OFFER,
                    priority=NotificationPriority.ALARM,
                    metadata=offer,
                )

        if not newly_notified:
            if assignment.status == AssignmentStatus.NOTIFIED and not self.timers.pending(assignment_id):
                self._schedule_deadline(assignment)
            logger.debug(
                "Notify skipped, assignment already %s", assignment.status.value,
                extra={"assignment_id": assignment_id},
            )
            return assignment

        self._schedule_deadline(assignment)
        self._spawn(self._deliver(assignment.id, assignment.driver_id, offer), "delivery")
        logger.info(
            "Driver notified, deadline %s", assignment.response_deadline_at.isoformat(),
            extra={"assignment_id": assignment_id, "driver_id": assignment.driver_id},
        )
        return assignment

    @staticmethod
    def _offer_payload(assignment: DriverAssignment, broadcast: Broadcast) -> Dict[str, Any]:
        pickup = broadcast.pickup_address or f"{broadcast.pickup_lat:.4f},{broadcast.pickup_lng:.4f}"
        drop = broadcast.drop_address or f"{broadcast.drop_lat:.4f},{broadcast.drop_lng:.4f}"
        return {
            "type": NotificationType.ASSIGNMENT_OFFER.value,
            "title": "New trip request",
            "message": f"{broadcast.vehicle_class.value} load from {pickup} to {drop}",
            "assignment_id": assignment.id,
            "broadcast_id": broadcast.id,
            "vehicle_class": broadcast.vehicle_class.value,
            "goods_type": broadcast.goods_type,
            "weight": broadcast.weight,
            "is_urgent": broadcast.is_urgent,
            "pickup": {"lat": broadcast.pickup_lat, "lng": broadcast.pickup_lng, "address": broadcast.pickup_address},
            "drop": {"lat": broadcast.drop_lat, "lng": broadcast.drop_lng, "address": broadcast.drop_address},
            "distance_km": broadcast.distance_km,
            "fare_per_truck": broadcast.fare_per_truck,
            "response_deadline_at": assignment.response_deadline_at.isoformat(),
        }

    def _schedule_deadline(self, assignment: DriverAssignment) -> None:
        self.schedule_deadline(assignment.id, assignment.response_deadline_at)

    def schedule_deadline(self, assignment_id: int, deadline_at) -> None:
        """Arm the timer that times the slot out at ``deadline_at``, replacing any earlier one."""
        delay = (deadline_at - self.clock.now()).total_seconds()
        self.timers.schedule(assignment_id, delay, partial(self.expire, assignment_id))

    async def restore_timers(self) -> int:
        """Re-arm deadline timers for unresolved assignments, e.g. after a restart."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(DriverAssignment).where(
                    DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
                    DriverAssignment.response_deadline_at.isnot(None),
                )
            )
            assignments = result.scalars().all()
        for assignment in assignments:
            if not self.timers.pending(assignment.id):
                self._schedule_deadline(assignment)
        return len(assignments)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, assignment_id: int, driver_id: int, offer: Dict[str, Any], dlq_id: int = None) -> None:
        attempts = 0
        last_error = None

        for delay in self.settings.delivery_backoff_seconds:
            if delay > 0:
                await asyncio.sleep(delay)
            if not await self._awaiting_response(assignment_id):
                return
            attempts += 1
            result = await self._send("push", driver_id, offer, NotificationPriority.ALARM)
            if result.delivered:
                await self._record_delivery(assignment_id, result.channel, attempts, dlq_id)
                return
            last_error = result.error
            logger.warning(
                "Push attempt %s failed: %s", attempts, result.error,
                extra={"assignment_id": assignment_id, "driver_id": driver_id, "channel": "push"},
            )

        if not await self._awaiting_response(assignment_id):
            return
        attempts += 1
        result = await self._send("sms", driver_id, offer, NotificationPriority.ALARM)
        if result.delivered:
            await self._record_delivery(assignment_id, result.channel, attempts, dlq_id)
            return

        failure = DeliveryFailureError(driver_id, attempts, result.error or last_error)
        logger.error(
            failure.message,
            extra={"assignment_id": assignment_id, "driver_id": driver_id, "channel": "sms"},
        )
        await self._dead_letter(assignment_id, driver_id, offer, failure, dlq_id)

    async def _send(
        self,
        channel_name: str,
        target_id: int,
        payload: Dict[str, Any],
        priority: NotificationPriority,
    ) -> DeliveryResult:
        channel = self.channels.get(channel_name)
        if channel is None:
            return DeliveryResult(delivered=False, channel=channel_name, error="channel not configured")
        try:
            return await self._breakers[channel_name].call(channel.send, target_id, payload, priority)
        except (ChannelError, CircuitOpenError) as exc:
            return DeliveryResult(delivered=False, channel=channel_name, error=str(exc))

    async def _awaiting_response(self, assignment_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(DriverAssignment.status).where(DriverAssignment.id == assignment_id)
            )
            return result.scalar_one_or_none() == AssignmentStatus.NOTIFIED

    async def _record_delivery(self, assignment_id: int, channel: str, attempts: int, dlq_id: int = None) -> None:
        async with transaction(self.session_factory) as db:
            await db.execute(
                update(DriverAssignment)
                .where(DriverAssignment.id == assignment_id)
                .values(delivery_channel=channel, delivery_attempts=attempts)
                .execution_options(synchronize_session=False)
            )
            if dlq_id is not None:
                await db.execute(
                    update(DeadLetterQueue)
                    .where(DeadLetterQueue.id == dlq_id)
                    .values(status=DLQStatus.PROCESSED)
                    .execution_options(synchronize_session=False)
                )
        logger.info(
            "Offer delivered via %s after %s attempt(s)", channel, attempts,
            extra={"assignment_id": assignment_id, "channel": channel},
        )

    async def _dead_letter(
        self,
        assignment_id: int,
        driver_id: int,
        offer: Dict[str, Any],
        failure: DeliveryFailureError,
        dlq_id: int = None,
    ) -> None:
        async with transaction(self.session_factory) as db:
            await db.execute(
                update(DriverAssignment)
                .where(DriverAssignment.id == assignment_id)
                .values(delivery_attempts=failure.details["attempts"])
                .execution_options(synchronize_session=False)
            )
            if dlq_id is not None:
                await db.execute(
                    update(DeadLetterQueue)
                    .where(DeadLetterQueue.id == dlq_id)
                    .values(status=DLQStatus.FAILED, error_message=failure.message)
                    .execution_options(synchronize_session=False)
                )
            else:
                db.add(
                    DeadLetterQueue(
                        task_name=DELIVERY_TASK,
                        error_message=failure.message,
                        payload={"assignment_id": assignment_id, "driver_id": driver_id, "offer": offer},
                        status=DLQStatus.FAILED,
                        retry_count=0,
                        created_at=self.clock.now(),
                    )
                )
            await log_event(
                db,
                AuditAction.DELIVERY_FAILED,
                entity_type="driver_assignment",
                entity_id=assignment_id,
                metadata=failure.details,
            )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def on_response(
        self,
        assignment_id: int,
        driver_id: int,
        decision: DriverDecision,
        reason: Optional[str] = None,
    ) -> RespondOutcome:
        """
        Record a driver's ACCEPT or DECLINE.

        Repeating the recorded decision is a no-op reported as
        ``duplicate``; anything else after resolution is rejected.

        Raises:
            AlreadyResolvedError: the assignment was resolved differently
            ExpiredOrTerminalError: the broadcast closed first
            InvalidTransitionError: the offer has not been sent yet
        """
        decision = DriverDecision(decision)
        target = AssignmentStatus.ACCEPTED if decision == DriverDecision.ACCEPT else AssignmentStatus.DECLINED

        effects, assignment = await self._resolve(assignment_id, target, driver_id=driver_id, reason=reason)
        if effects is not None:
            return RespondOutcome(
                assignment_id=assignment_id,
                status=target,
                tracking_session_id=effects.tracking_session_id,
            )

        if assignment.status == target:
            logger.info(
                "Duplicate %s response ignored", decision.value,
                extra={"assignment_id": assignment_id, "driver_id": driver_id},
            )
            return RespondOutcome(
                assignment_id=assignment_id,
                status=target,
                duplicate=True,
                tracking_session_id=await self._session_id_for(assignment_id),
            )
        if assignment.status in (AssignmentStatus.CANCELLED, AssignmentStatus.RELEASED):
            raise ExpiredOrTerminalError("Driver assignment", assignment_id, assignment.status.value)
        if assignment.status == AssignmentStatus.PENDING_NOTIFY:
            raise InvalidTransitionError("Driver assignment", assignment_id, assignment.status.value, target.value)
        raise AlreadyResolvedError(assignment_id, assignment.status.value)

    async def expire(self, assignment_id: int) -> Optional[DriverAssignment]:
        """
        Resolve as TIMED_OUT; returns None if something else resolved it first.

        Covers both a NOTIFIED offer past its response deadline and a
        PENDING_NOTIFY slot that never got an offer out before its bind
        deadline.
        """
        effects, assignment = await self._resolve(assignment_id, AssignmentStatus.TIMED_OUT)
        if effects is None:
            return None
        logger.info("Assignment timed out", extra={"assignment_id": assignment_id, "driver_id": assignment.driver_id})
        return assignment

    def on_slot_released(self, assignment_id: int) -> None:
        """Drop the timer and waiters of a slot the transporter gave back."""
        self.timers.cancel(assignment_id)
        self._resolve_waiters(assignment_id, AssignmentStatus.RELEASED)

    async def _resolve(
        self,
        assignment_id: int,
        target: AssignmentStatus,
        driver_id: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        now = self.clock.now()
        async with transaction(self.session_factory) as db:
            assignment = await self._load_assignment(db, assignment_id)
            if assignment is None:
                raise ResourceNotFoundError("Driver assignment", assignment_id)
            if driver_id is not None and assignment.driver_id != driver_id:
                raise InsufficientPermissionsError("This assignment belongs to another driver")
            await self.allocation.registry.lock_broadcast(db, assignment.broadcast_id)

            values = dict(status=target, responded_at=now)
            if target == AssignmentStatus.DECLINED:
                values["decline_reason"] = reason
            if target == AssignmentStatus.TIMED_OUT:
                resolvable = DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES)
            else:
                resolvable = DriverAssignment.status == AssignmentStatus.NOTIFIED
            result = await db.execute(
                update(DriverAssignment)
                .where(DriverAssignment.id == assignment_id, resolvable)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            assignment = await self._load_assignment(db, assignment_id)
            if result.rowcount != 1:
                return None, assignment

            effects = await self.allocation.handle_resolution(db, assignment, target)
            await log_event(
                db,
                RESOLUTION_AUDIT[target],
                entity_type="driver_assignment",
                entity_id=assignment_id,
                actor_id=driver_id,
                actor_role="DRIVER" if driver_id is not None else None,
                metadata={"reason": reason, "retarget_count": assignment.retarget_count},
            )

        self.timers.cancel(assignment_id)
        self._resolve_waiters(assignment_id, target)
        await self._apply_effects(effects)
        return effects, assignment

    async def _apply_effects(self, effects: ResolutionEffects) -> None:
        for replacement_id in effects.replacement_assignment_ids:
            try:
                await self.notify(replacement_id)
            except AppException as exc:
                logger.error(
                    "Replacement notify failed: %s", exc.message,
                    extra={"assignment_id": replacement_id},
                )
        for transporter_id, notice in effects.transporter_notices:
            self._spawn(
                self._send("push", transporter_id, notice, NotificationPriority.HIGH),
                "transporter notice",
            )

    async def sweep_overdue(self, batch_size: int = 500) -> List[int]:
        """Time out unresolved assignments whose deadline passed without a timer firing."""
        now = self.clock.now()
        async with self.session_factory() as db:
            result = await db.execute(
                select(DriverAssignment.id)
                .where(
                    DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
                    DriverAssignment.response_deadline_at <= now,
                )
                .order_by(DriverAssignment.response_deadline_at)
                .limit(batch_size)
            )
            overdue = list(result.scalars().all())

        timed_out = []
        for assignment_id in overdue:
            try:
                if await self.expire(assignment_id) is not None:
                    timed_out.append(assignment_id)
            except AppException as exc:
                logger.error("Overdue resolution failed: %s", exc.message, extra={"assignment_id": assignment_id})
            except DBAPIError as exc:
                logger.error("Overdue resolution deferred to next sweep: %s", exc.orig, extra={"assignment_id": assignment_id})
        return timed_out

    async def wait_for_resolution(self, assignment_id: int, timeout: Optional[float] = None) -> AssignmentStatus:
        """Await the assignment's outcome without polling or holding a session."""
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(assignment_id, []).append(future)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(DriverAssignment.status).where(DriverAssignment.id == assignment_id)
                )
                status = result.scalar_one_or_none()
            if status is None:
                raise ResourceNotFoundError("Driver assignment", assignment_id)
            if status not in UNRESOLVED_ASSIGNMENT_STATUSES:
                return status
            return await asyncio.wait_for(future, timeout)
        finally:
            waiters = self._waiters.get(assignment_id)
            if waiters and future in waiters:
                waiters.remove(future)
                if not waiters:
                    del self._waiters[assignment_id]

    def _resolve_waiters(self, assignment_id: int, status: AssignmentStatus) -> None:
        for future in self._waiters.pop(assignment_id, []):
            if not future.done():
                future.set_result(status)

    # ------------------------------------------------------------------
    # Broadcast events
    # ------------------------------------------------------------------

    async def on_broadcast_closed(self, closed: BroadcastClosed) -> None:
        """Stop timers for cancelled slots and tell notified drivers the load is gone."""
        for slot in closed.cancelled_slots:
            self.timers.cancel(slot.assignment_id)
            self._resolve_waiters(slot.assignment_id, AssignmentStatus.CANCELLED)

        notified = [
            slot for slot in closed.cancelled_slots
            if slot.previous_status == AssignmentStatus.NOTIFIED and slot.driver_id is not None
        ]
        if notified:
            self._spawn(self._send_closed_notices(closed, notified), "closed notices")

    async def _send_closed_notices(self, closed: BroadcastClosed, slots) -> None:
        notice = {
            "type": NotificationType.BROADCAST_CLOSED.value,
            "title": "Trip request withdrawn",
            "message": f"The load was {closed.status.value.lower()} and is no longer available",
            "broadcast_id": closed.broadcast_id,
            "reason": closed.reason,
        }
        async with transaction(self.session_factory) as db:
            for slot in slots:
                await NotificationService.create_notification(
                    db,
                    user_id=slot.driver_id,
                    title=notice["title"],
                    message=notice["message"],
                    type=NotificationType.BROADCAST_CLOSED,
                    metadata={**notice, "assignment_id": slot.assignment_id},
                )
        for slot in slots:
            result = await self._send(
                "push", slot.driver_id, {**notice, "assignment_id": slot.assignment_id}, NotificationPriority.NORMAL
            )
            if not result.delivered:
                logger.warning(
                    "Closed notice not delivered: %s", result.error,
                    extra={"assignment_id": slot.assignment_id, "driver_id": slot.driver_id},
                )

    async def alert_transporters(self, broadcast: Broadcast) -> None:
        """Alert supply near the pickup point in the background."""
        self._spawn(self._alert(broadcast), "transporter alert")

    async def _alert(self, broadcast: Broadcast) -> None:
        try:
            candidates = await self.geo_index.query(
                broadcast.pickup_lat,
                broadcast.pickup_lng,
                self.settings.transporter_alert_radius_km,
                broadcast.vehicle_class.value,
            )
        except ChannelError as exc:
            logger.warning("Candidate lookup failed: %s", exc, extra={"broadcast_id": broadcast.id})
            return
        if not candidates:
            logger.info("No nearby transporters to alert", extra={"broadcast_id": broadcast.id})
            return

        alert = {
            "type": NotificationType.NEW_BROADCAST.value,
            "title": "New load nearby",
            "message": f"{broadcast.trucks_needed} x {broadcast.vehicle_class.value} needed",
            "broadcast_id": broadcast.id,
            "vehicle_class": broadcast.vehicle_class.value,
            "trucks_needed": broadcast.trucks_needed,
            "fare_per_truck": broadcast.fare_per_truck,
            "is_urgent": broadcast.is_urgent,
            "expires_at": broadcast.expires_at.isoformat(),
        }
        async with transaction(self.session_factory) as db:
            for transporter_id in candidates:
                await NotificationService.create_notification(
                    db,
                    user_id=transporter_id,
                    title=alert["title"],
                    message=alert["message"],
                    type=NotificationType.NEW_BROADCAST,
                    priority=NotificationPriority.HIGH,
                    metadata=alert,
                )

        delivered = 0
        for transporter_id in candidates:
            result = await self._send("push", transporter_id, alert, NotificationPriority.HIGH)
            delivered += int(result.delivered)
        logger.info(
            "Alerted %s/%s nearby transporters", delivered, len(candidates),
            extra={"broadcast_id": broadcast.id},
        )

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    async def list_dead_letters(self, status: Optional[DLQStatus] = None, limit: int = 100) -> List[DeadLetterQueue]:
        query = select(DeadLetterQueue).order_by(DeadLetterQueue.created_at.desc(), DeadLetterQueue.id.desc())
        if status is not None:
            query = query.where(DeadLetterQueue.status == DLQStatus(status))
        async with self.session_factory() as db:
            result = await db.execute(query.limit(limit))
            return list(result.scalars().all())

    async def retry_dead_letter(self, dlq_id: int) -> DeadLetterQueue:
        """
        Re-run delivery for a dead-lettered offer that is still awaiting a
        response; offers resolved in the meantime are archived instead.
        """
        now = self.clock.now()
        async with transaction(self.session_factory) as db:
            result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
            item = result.scalar_one_or_none()
            if item is None:
                raise ResourceNotFoundError("DLQ item", dlq_id)
            if item.status in (DLQStatus.PROCESSED, DLQStatus.ARCHIVED):
                raise InvalidTransitionError("DLQ item", dlq_id, item.status.value, DLQStatus.RETRYING.value)

            assignment = await self._load_assignment(db, item.payload["assignment_id"])
            item.retry_count = item.retry_count + 1
            item.last_retry_at = now
            redeliver = assignment is not None and assignment.status == AssignmentStatus.NOTIFIED
            item.status = DLQStatus.RETRYING if redeliver else DLQStatus.ARCHIVED

        if redeliver:
            self._spawn(
                self._deliver(assignment.id, assignment.driver_id, item.payload["offer"], dlq_id=item.id),
                "dlq redelivery",
            )
        logger.info("DLQ item %s -> %s", dlq_id, item.status.value, extra={"assignment_id": item.payload["assignment_id"]})
        return item

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _session_id_for(self, assignment_id: int) -> Optional[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession.id).where(TrackingSession.assignment_id == assignment_id)
            )
            return result.scalar_one_or_none()

    @staticmethod
    async def _load_assignment(db: AsyncSession, assignment_id: int) -> Optional[DriverAssignment]:
        result = await db.execute(
            select(DriverAssignment)
            .where(DriverAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.create_task(self._guarded(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guarded(coro, label: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background %s failed", label)

    async def drain(self) -> None:
        """Wait for background deliveries and notices to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.timers.shutdown()
        for task in list(self._background):
            task.cancel()
        await self.drain()
