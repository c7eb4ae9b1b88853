"""
Allocation Engine.

Turns transporter claims into reservations and per-truck driver
assignments, and applies driver outcomes back onto the reservation:

- ACCEPTED confirms one unit and opens the trip's tracking session.
- DECLINED / TIMED_OUT release one unit. If an untried, free alternate
  driver is left and the retarget budget allows, the unit is re-reserved
  in the same transaction and a replacement assignment is created.
  Otherwise the transporter is told the slot went unfulfilled.
- A slot still waiting for a driver at its bind deadline times out the
  same way. Before that, the transporter may give it back with
  ``release_slot``.

Capacity is never checked here; every unit goes through
BroadcastRegistry.try_reserve.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.core.exceptions import (
    AlreadyBoundError,
    BroadcastQuarantinedError,
    CapacityConflictError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    NotificationPriority,
    ReservationStatus,
    TERMINAL_TRIP_STATES,
    UNRESOLVED_ASSIGNMENT_STATUSES,
)
from freight_backend.app.models.driver_assignment import DriverAssignment
from freight_backend.app.models.enums import UserRole
from freight_backend.app.models.notification import NotificationType
from freight_backend.app.models.reservation import Reservation
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.services.audit import AuditAction, log_event
from freight_backend.app.services.broadcast_registry import BroadcastRegistry
from freight_backend.app.services.notification_service import NotificationService
from freight_backend.app.services.tracking_stream import TrackingStream
from freight_backend.app.services.unit_of_work import transaction

logger = logging.getLogger(__name__)


@dataclass
class ReservationView:
    reservation: Reservation
    assignments: List[DriverAssignment]


@dataclass
class ResolutionEffects:
    """Work to run after the resolving transaction commits."""
    replacement_assignment_ids: List[int] = field(default_factory=list)
    tracking_session_id: Optional[int] = None
    transporter_notices: List[Tuple[int, dict]] = field(default_factory=list)


class AllocationEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: BroadcastRegistry,
        tracking: TrackingStream,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.tracking = tracking
        self.clock = clock
        self.settings = settings
        self.dispatcher = None

    def set_dispatcher(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    async def claim(
        self,
        broadcast_id: int,
        transporter_id: int,
        n: int,
        candidate_driver_ids: Optional[List[int]] = None,
    ) -> ReservationView:
        """
        Reserve ``n`` trucks and create one assignment per truck.

        The first free candidates are bound in order, one per slot, and
        notified once the claim commits. Slots left without a driver wait
        for ``assign_driver`` until the bind deadline; surplus candidates
        are kept as alternates.

        Raises:
            CapacityConflictError: fewer than ``n`` trucks remain (not retried)
            ExpiredOrTerminalError: broadcast expired or cancelled
        """
        if n < 1:
            raise ValidationFailedError("Claim must be for at least one truck", details={"trucks": n})
        candidates = list(dict.fromkeys(candidate_driver_ids or []))
        now = self.clock.now()
        bind_deadline = now + timedelta(seconds=self.settings.bind_timeout_seconds)

        async with transaction(self.session_factory) as db:
            reservation = await self.registry.try_reserve(
                db, broadcast_id, n,
                transporter_id=transporter_id,
                candidate_driver_ids=candidates,
            )

            busy = await self.busy_drivers(db, candidates)
            free = [driver_id for driver_id in candidates if driver_id not in busy]

            assignments = []
            for slot in range(n):
                assignment = DriverAssignment(
                    reservation_id=reservation.id,
                    broadcast_id=broadcast_id,
                    transporter_id=transporter_id,
                    slot_index=slot,
                    driver_id=free[slot] if slot < len(free) else None,
                    status=AssignmentStatus.PENDING_NOTIFY,
                    retarget_count=0,
                    delivery_attempts=0,
                    created_at=now,
                    response_deadline_at=bind_deadline,
                )
                db.add(assignment)
                assignments.append(assignment)
            await db.flush()

            slot_ids = [a.id for a in assignments]
            bound_ids = [a.id for a in assignments if a.driver_id is not None]
            await log_event(
                db,
                AuditAction.TRUCKS_CLAIMED,
                entity_type="reservation",
                entity_id=reservation.id,
                actor_id=transporter_id,
                actor_role=UserRole.TRANSPORTER.value,
                metadata={
                    "broadcast_id": broadcast_id,
                    "trucks": n,
                    "bound_drivers": [a.driver_id for a in assignments if a.driver_id is not None],
                    "skipped_busy": sorted(busy),
                },
            )
            reservation_id = reservation.id

        logger.info(
            "Claimed %s truck(s), %s bound", n, len(bound_ids),
            extra={"broadcast_id": broadcast_id, "reservation_id": reservation_id, "transporter_id": transporter_id},
        )

        for assignment_id in slot_ids:
            self.dispatcher.schedule_deadline(assignment_id, bind_deadline)
        for assignment_id in bound_ids:
            await self.dispatcher.notify(assignment_id)

        return await self.get_reservation(reservation_id)

    async def assign_driver(self, assignment_id: int, driver_id: int, transporter_id: int) -> DriverAssignment:
        """
        Bind a driver to a deferred slot and notify them.

        Raises:
            AlreadyBoundError: slot already has a driver or is past PENDING_NOTIFY
        """
        async with transaction(self.session_factory) as db:
            assignment = await self._load_assignment(db, assignment_id)
            if assignment is None:
                raise ResourceNotFoundError("Driver assignment", assignment_id)
            if assignment.transporter_id != transporter_id:
                raise InsufficientPermissionsError("Only the claiming transporter can assign drivers")
            if assignment.status in (AssignmentStatus.CANCELLED, AssignmentStatus.RELEASED):
                raise ExpiredOrTerminalError("Driver assignment", assignment_id, assignment.status.value)
            if assignment.status != AssignmentStatus.PENDING_NOTIFY or assignment.driver_id is not None:
                raise AlreadyBoundError(assignment_id, assignment.status.value, assignment.driver_id)
            if driver_id in await self.busy_drivers(db, [driver_id]):
                raise ValidationFailedError(
                    f"Driver {driver_id} already has an open assignment or active trip",
                    details={"driver_id": driver_id},
                )

            result = await db.execute(
                update(DriverAssignment)
                .where(
                    DriverAssignment.id == assignment_id,
                    DriverAssignment.status == AssignmentStatus.PENDING_NOTIFY,
                    DriverAssignment.driver_id.is_(None),
                )
                .values(driver_id=driver_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                assignment = await self._load_assignment(db, assignment_id)
                raise AlreadyBoundError(assignment_id, assignment.status.value, assignment.driver_id)

            await log_event(
                db,
                AuditAction.DRIVER_ASSIGNED,
                entity_type="driver_assignment",
                entity_id=assignment_id,
                actor_id=transporter_id,
                actor_role=UserRole.TRANSPORTER.value,
                metadata={"driver_id": driver_id},
            )

        logger.info("Driver bound", extra={"assignment_id": assignment_id, "driver_id": driver_id})
        return await self.dispatcher.notify(assignment_id)

    async def release_slot(self, assignment_id: int, transporter_id: int) -> DriverAssignment:
        """
        Give back a slot the transporter cannot staff.

        Only a slot whose offer has not gone out yet (PENDING_NOTIFY) can be
        released; its unit returns to the broadcast.

        Raises:
            InvalidTransitionError: the offer was already sent or resolved
            ExpiredOrTerminalError: the broadcast closed first
        """
        async with transaction(self.session_factory) as db:
            assignment = await self._load_assignment(db, assignment_id)
            if assignment is None:
                raise ResourceNotFoundError("Driver assignment", assignment_id)
            if assignment.transporter_id != transporter_id:
                raise InsufficientPermissionsError("Only the claiming transporter can release this slot")
            await self.registry.lock_broadcast(db, assignment.broadcast_id)
            await self._give_back(db, assignment, transporter_id)

        self.dispatcher.on_slot_released(assignment_id)
        logger.info(
            "Slot released by transporter",
            extra={"assignment_id": assignment_id, "transporter_id": transporter_id},
        )
        return await self.get_assignment(assignment_id)

    async def release_reservation(self, reservation_id: int, transporter_id: int) -> ReservationView:
        """Give back every slot of a reservation whose offer has not gone out."""
        async with transaction(self.session_factory) as db:
            reservation = await self.registry.load_reservation(db, reservation_id)
            if reservation is None:
                raise ResourceNotFoundError("Reservation", reservation_id)
            if reservation.transporter_id != transporter_id:
                raise InsufficientPermissionsError("Only the claiming transporter can release this reservation")
            await self.registry.lock_broadcast(db, reservation.broadcast_id)

            result = await db.execute(
                select(DriverAssignment)
                .where(
                    DriverAssignment.reservation_id == reservation_id,
                    DriverAssignment.status == AssignmentStatus.PENDING_NOTIFY,
                )
                .order_by(DriverAssignment.id)
                .execution_options(populate_existing=True)
            )
            slots = list(result.scalars().all())
            if not slots:
                raise InvalidTransitionError(
                    "Reservation", reservation_id, reservation.status.value, ReservationStatus.RELEASED.value
                )
            for slot in slots:
                await self._give_back(db, slot, transporter_id)
            released_ids = [slot.id for slot in slots]

        for assignment_id in released_ids:
            self.dispatcher.on_slot_released(assignment_id)
        logger.info(
            "Released %s slot(s) of reservation", len(released_ids),
            extra={"reservation_id": reservation_id, "transporter_id": transporter_id},
        )
        return await self.get_reservation(reservation_id)

    async def _give_back(self, db: AsyncSession, assignment: DriverAssignment, transporter_id: int) -> None:
        result = await db.execute(
            update(DriverAssignment)
            .where(DriverAssignment.id == assignment.id, DriverAssignment.status == AssignmentStatus.PENDING_NOTIFY)
            .values(status=AssignmentStatus.RELEASED, responded_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self._load_assignment(db, assignment.id)
            if current.status == AssignmentStatus.CANCELLED:
                raise ExpiredOrTerminalError("Driver assignment", assignment.id, current.status.value)
            raise InvalidTransitionError(
                "Driver assignment", assignment.id, current.status.value, AssignmentStatus.RELEASED.value
            )

        await self.registry.release(db, assignment.reservation_id, 1)
        await log_event(
            db,
            AuditAction.SLOT_RELEASED,
            entity_type="driver_assignment",
            entity_id=assignment.id,
            actor_id=transporter_id,
            actor_role=UserRole.TRANSPORTER.value,
            metadata={
                "outcome": AssignmentStatus.RELEASED.value,
                "reservation_id": assignment.reservation_id,
                "driver_id": assignment.driver_id,
            },
        )

    async def handle_resolution(
        self,
        db: AsyncSession,
        assignment: DriverAssignment,
        outcome: AssignmentStatus,
    ) -> ResolutionEffects:
        """
        Apply a driver outcome inside the resolving transaction.

        ``assignment`` has already been moved to ``outcome`` by the caller's
        compare-and-swap, so this runs at most once per assignment.
        """
        effects = ResolutionEffects()

        if outcome == AssignmentStatus.ACCEPTED:
            await self.registry.confirm(db, assignment.reservation_id)
            broadcast = (
                await db.execute(select(Broadcast).where(Broadcast.id == assignment.broadcast_id))
            ).scalar_one()
            session = await self.tracking.open_session(db, assignment, broadcast)
            effects.tracking_session_id = session.id
            return effects

        reservation = await self.registry.release(db, assignment.reservation_id, 1)
        replacement = await self._retarget(db, assignment, reservation)
        if replacement is not None:
            effects.replacement_assignment_ids.append(replacement.id)
            return effects

        notice = {
            "type": NotificationType.SLOT_UNFULFILLED.value,
            "title": "Truck slot unfulfilled",
            "message": f"Slot {assignment.slot_index + 1} of your claim could not be filled and was released",
            "broadcast_id": assignment.broadcast_id,
            "reservation_id": assignment.reservation_id,
            "assignment_id": assignment.id,
            "outcome": outcome.value,
        }
        await NotificationService.create_notification(
            db,
            user_id=assignment.transporter_id,
            title=notice["title"],
            message=notice["message"],
            type=NotificationType.SLOT_UNFULFILLED,
            priority=NotificationPriority.HIGH,
            metadata=notice,
        )
        await log_event(
            db,
            AuditAction.SLOT_RELEASED,
            entity_type="driver_assignment",
            entity_id=assignment.id,
            metadata={"outcome": outcome.value, "retarget_count": assignment.retarget_count},
        )
        effects.transporter_notices.append((assignment.transporter_id, notice))
        return effects

    async def _retarget(
        self,
        db: AsyncSession,
        assignment: DriverAssignment,
        reservation: Reservation,
    ) -> Optional[DriverAssignment]:
        if assignment.retarget_count >= self.settings.max_retarget:
            return None

        result = await db.execute(
            select(DriverAssignment.driver_id).where(
                DriverAssignment.reservation_id == reservation.id,
                DriverAssignment.driver_id.isnot(None),
            )
        )
        tried = set(result.scalars().all())
        busy = await self.busy_drivers(db, reservation.candidate_driver_ids)
        alternates = [d for d in reservation.candidate_driver_ids if d not in tried and d not in busy]
        if not alternates:
            return None

        try:
            await self.registry.try_reserve(db, assignment.broadcast_id, 1, reservation=reservation)
        except (CapacityConflictError, ExpiredOrTerminalError, BroadcastQuarantinedError) as exc:
            logger.info(
                "Retarget not possible: %s", exc.message,
                extra={"assignment_id": assignment.id, "broadcast_id": assignment.broadcast_id},
            )
            return None

        replacement = DriverAssignment(
            reservation_id=reservation.id,
            broadcast_id=assignment.broadcast_id,
            transporter_id=assignment.transporter_id,
            slot_index=assignment.slot_index,
            driver_id=alternates[0],
            status=AssignmentStatus.PENDING_NOTIFY,
            retarget_count=assignment.retarget_count + 1,
            replaces_assignment_id=assignment.id,
            delivery_attempts=0,
            created_at=self.clock.now(),
            response_deadline_at=self.clock.now() + timedelta(seconds=self.settings.bind_timeout_seconds),
        )
        db.add(replacement)
        await db.flush()

        await log_event(
            db,
            AuditAction.ASSIGNMENT_RETARGETED,
            entity_type="driver_assignment",
            entity_id=replacement.id,
            metadata={
                "replaces_assignment_id": assignment.id,
                "driver_id": replacement.driver_id,
                "retarget_count": replacement.retarget_count,
            },
        )
        logger.info(
            "Slot retargeted to driver %s", replacement.driver_id,
            extra={"assignment_id": replacement.id, "reservation_id": reservation.id},
        )
        return replacement

    @staticmethod
    async def busy_drivers(db: AsyncSession, driver_ids: List[int]) -> Set[int]:
        """Drivers holding an unresolved assignment or an unfinished trip."""
        if not driver_ids:
            return set()
        pending = await db.execute(
            select(DriverAssignment.driver_id).where(
                DriverAssignment.driver_id.in_(driver_ids),
                DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
            )
        )
        on_trip = await db.execute(
            select(TrackingSession.driver_id).where(
                TrackingSession.driver_id.in_(driver_ids),
                TrackingSession.trip_state.notin_(TERMINAL_TRIP_STATES),
            )
        )
        return set(pending.scalars().all()) | set(on_trip.scalars().all())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_reservation(self, reservation_id: int) -> ReservationView:
        async with self.session_factory() as db:
            reservation = await self.registry.load_reservation(db, reservation_id)
            if reservation is None:
                raise ResourceNotFoundError("Reservation", reservation_id)
            result = await db.execute(
                select(DriverAssignment)
                .where(DriverAssignment.reservation_id == reservation_id)
                .order_by(DriverAssignment.slot_index, DriverAssignment.id)
            )
            return ReservationView(reservation=reservation, assignments=list(result.scalars().all()))

    async def get_assignment(self, assignment_id: int) -> DriverAssignment:
        async with self.session_factory() as db:
            assignment = await self._load_assignment(db, assignment_id)
        if assignment is None:
            raise ResourceNotFoundError("Driver assignment", assignment_id)
        return assignment

    async def driver_assignments(
        self,
        driver_id: int,
        status: Optional[AssignmentStatus] = None,
        limit: int = 50,
    ) -> List[DriverAssignment]:
        query = select(DriverAssignment).where(DriverAssignment.driver_id == driver_id)
        if status is not None:
            query = query.where(DriverAssignment.status == AssignmentStatus(status))
        query = query.order_by(DriverAssignment.created_at.desc(), DriverAssignment.id.desc()).limit(limit)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    @staticmethod
    async def _load_assignment(db: AsyncSession, assignment_id: int) -> Optional[DriverAssignment]:
        result = await db.execute(
            select(DriverAssignment)
            .where(DriverAssignment.id == assignment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
