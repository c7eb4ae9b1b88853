"""
Broadcast Registry.

Owns the broadcast lifecycle and its fulfillment counter. ``trucks_filled``
changes only through the conditional UPDATEs in this module:

- ``try_reserve`` is a single statement that checks capacity, status,
  expiry and quarantine and increments the counter; there is no
  read-modify-write anywhere on the counter.
- ``release`` is the matching conditional decrement.
- Expiry and cancellation use the same conditional path, so a reservation
  committed before the close observes ``now < expires_at`` is kept and one
  arriving after is rejected.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.core.exceptions import (
    BroadcastQuarantinedError,
    CapacityConflictError,
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    InvariantViolationError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from freight_backend.app.domain.pricing.rate_card import PricingFunction, RateCardPricing
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    BroadcastStatus,
    OPEN_BROADCAST_STATUSES,
    RESERVABLE_BROADCAST_STATUSES,
    ReservationStatus,
    UNRESOLVED_ASSIGNMENT_STATUSES,
    VehicleClass,
)
from freight_backend.app.models.driver_assignment import DriverAssignment
from freight_backend.app.models.enums import UserRole
from freight_backend.app.models.reservation import Reservation
from freight_backend.app.schemas.admin import IntegrityReport, ReconcileResponse
from freight_backend.app.schemas.broadcast import BroadcastCreate, BroadcastSummary
from freight_backend.app.services.audit import AuditAction, log_event
from freight_backend.app.services.geo import buckets_within, geo_bucket, haversine_distance, validate_coordinates
from freight_backend.app.services.unit_of_work import quarantine_broadcast, transaction

logger = logging.getLogger(__name__)

DistanceFunction = Callable[[float, float, float, float], float]


@dataclass
class CancelledSlot:
    """An unresolved assignment closed together with its broadcast."""
    assignment_id: int
    reservation_id: int
    transporter_id: int
    driver_id: Optional[int]
    previous_status: AssignmentStatus


@dataclass
class BroadcastClosed:
    broadcast_id: int
    customer_id: int
    status: BroadcastStatus
    reason: Optional[str]
    cancelled_slots: List[CancelledSlot] = field(default_factory=list)


def _broadcast_status(value: BroadcastStatus):
    return literal(value, Broadcast.__table__.c.status.type)


def _reservation_status(value: ReservationStatus):
    return literal(value, Reservation.__table__.c.status.type)


def reservation_status_expr(held, confirmed):
    """SQL form of Reservation.derive_status for use inside an UPDATE."""
    return case(
        (held <= 0, _reservation_status(ReservationStatus.RELEASED)),
        (held < Reservation.trucks_requested, _reservation_status(ReservationStatus.PARTIALLY_RELEASED)),
        (confirmed >= Reservation.trucks_requested, _reservation_status(ReservationStatus.CONFIRMED)),
        else_=_reservation_status(ReservationStatus.PENDING),
    )


def _expirable(broadcast_id):
    """Open, or FULLY_FILLED with a slot still waiting on a driver."""
    pending_slot = (
        select(DriverAssignment.id)
        .where(
            DriverAssignment.broadcast_id == broadcast_id,
            DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
        )
        .exists()
    )
    return or_(
        Broadcast.status.in_(OPEN_BROADCAST_STATUSES),
        and_(Broadcast.status == BroadcastStatus.FULLY_FILLED, pending_slot),
    )


def expected_open_status(trucks_filled: int, trucks_needed: int) -> BroadcastStatus:
    if trucks_filled <= 0:
        return BroadcastStatus.ACTIVE
    if trucks_filled >= trucks_needed:
        return BroadcastStatus.FULLY_FILLED
    return BroadcastStatus.PARTIALLY_FILLED


class BroadcastRegistry:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
        pricing: PricingFunction = None,
        distance_fn: DistanceFunction = haversine_distance,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.pricing = pricing or RateCardPricing()
        self.distance_fn = distance_fn
        self._created_listeners: List[Callable[[Broadcast], Awaitable[None]]] = []
        self._close_listeners: List[Callable[[BroadcastClosed], Awaitable[None]]] = []

    def add_created_listener(self, listener: Callable[[Broadcast], Awaitable[None]]) -> None:
        self._created_listeners.append(listener)

    def add_close_listener(self, listener: Callable[[BroadcastClosed], Awaitable[None]]) -> None:
        self._close_listeners.append(listener)

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create(self, data: BroadcastCreate, customer_id: int) -> Broadcast:
        """
        Validate and persist a new broadcast in ACTIVE status.

        Raises:
            ValidationFailedError: truck count, coordinates or ttl out of range
        """
        self._validate(data)

        now = self.clock.now()
        ttl_minutes = data.ttl_minutes or self.settings.broadcast_default_ttl_minutes
        distance_km = round(
            self.distance_fn(data.pickup.lat, data.pickup.lng, data.drop.lat, data.drop.lng), 2
        )
        fare = self.pricing.quote(distance_km, data.vehicle_class, data.is_urgent)

        async with transaction(self.session_factory) as db:
            broadcast = Broadcast(
                customer_id=customer_id,
                pickup_lat=data.pickup.lat,
                pickup_lng=data.pickup.lng,
                pickup_address=data.pickup.address,
                drop_lat=data.drop.lat,
                drop_lng=data.drop.lng,
                drop_address=data.drop.address,
                vehicle_class=data.vehicle_class,
                goods_type=data.goods_type,
                weight=data.weight,
                notes=data.notes,
                is_urgent=data.is_urgent,
                distance_km=distance_km,
                fare_per_truck=fare,
                trucks_needed=data.trucks_needed,
                trucks_filled=0,
                status=BroadcastStatus.ACTIVE,
                version=0,
                geo_bucket=geo_bucket(data.pickup.lat, data.pickup.lng, self.settings.geo_bucket_degrees),
                is_quarantined=False,
                created_at=now,
                expires_at=now + timedelta(minutes=ttl_minutes),
            )
            db.add(broadcast)
            await db.flush()

            await log_event(
                db,
                AuditAction.BROADCAST_CREATED,
                entity_type="broadcast",
                entity_id=broadcast.id,
                actor_id=customer_id,
                actor_role=UserRole.CUSTOMER.value,
                metadata={
                    "trucks_needed": broadcast.trucks_needed,
                    "vehicle_class": broadcast.vehicle_class.value,
                    "expires_at": broadcast.expires_at.isoformat(),
                },
            )

        logger.info(
            "Broadcast created: %s x %s", broadcast.trucks_needed, broadcast.vehicle_class.value,
            extra={"broadcast_id": broadcast.id},
        )
        for listener in self._created_listeners:
            await self._run_listener(listener, broadcast)
        return broadcast

    def _validate(self, data: BroadcastCreate) -> None:
        if not 1 <= data.trucks_needed <= self.settings.max_trucks_per_broadcast:
            raise ValidationFailedError(
                f"trucks_needed must be between 1 and {self.settings.max_trucks_per_broadcast}",
                details={"trucks_needed": data.trucks_needed},
            )
        for label, point in (("pickup", data.pickup), ("drop", data.drop)):
            if not validate_coordinates(point.lat, point.lng):
                raise ValidationFailedError(
                    f"Invalid {label} coordinates",
                    details={"lat": point.lat, "lng": point.lng},
                )
        if data.ttl_minutes is not None and not 1 <= data.ttl_minutes <= self.settings.broadcast_max_ttl_minutes:
            raise ValidationFailedError(
                f"ttl_minutes must be between 1 and {self.settings.broadcast_max_ttl_minutes}",
                details={"ttl_minutes": data.ttl_minutes},
            )

    async def get(self, broadcast_id: int) -> Broadcast:
        async with self.session_factory() as db:
            broadcast = await self._load_broadcast(db, broadcast_id)
        if broadcast is None:
            raise ResourceNotFoundError("Broadcast", broadcast_id)
        return broadcast

    async def list_active(
        self,
        vehicle_class: Optional[VehicleClass] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius_km: Optional[float] = None,
        limit: int = 100,
    ) -> List[BroadcastSummary]:
        """
        Open broadcasts a transporter can still claim on.

        With a caller location the result is sorted nearest first and, if
        ``radius_km`` is given, restricted to pickups inside it (grid-cell
        prefilter in SQL, exact haversine here). Without one, urgent loads
        come first, then the soonest to expire.
        """
        now = self.clock.now()
        has_location = lat is not None and lng is not None
        if (lat is None) != (lng is None):
            raise ValidationFailedError("lat and lng must be given together")
        if has_location and not validate_coordinates(lat, lng):
            raise ValidationFailedError("Invalid caller coordinates", details={"lat": lat, "lng": lng})

        query = select(Broadcast).where(
            Broadcast.status.in_(OPEN_BROADCAST_STATUSES),
            Broadcast.expires_at > now,
            Broadcast.is_quarantined == False,  # noqa: E712
        )
        if vehicle_class is not None:
            query = query.where(Broadcast.vehicle_class == VehicleClass(vehicle_class))
        if has_location and radius_km is not None:
            buckets = buckets_within(lat, lng, radius_km, self.settings.geo_bucket_degrees)
            if buckets:
                query = query.where(Broadcast.geo_bucket.in_(buckets))

        async with self.session_factory() as db:
            result = await db.execute(query)
            broadcasts = result.scalars().all()

        summaries = []
        for broadcast in broadcasts:
            distance = None
            if has_location:
                distance = haversine_distance(lat, lng, broadcast.pickup_lat, broadcast.pickup_lng)
                if radius_km is not None and distance > radius_km:
                    continue
            summaries.append(
                BroadcastSummary(
                    id=broadcast.id,
                    vehicle_class=broadcast.vehicle_class,
                    pickup_lat=broadcast.pickup_lat,
                    pickup_lng=broadcast.pickup_lng,
                    pickup_address=broadcast.pickup_address,
                    drop_address=broadcast.drop_address,
                    goods_type=broadcast.goods_type,
                    is_urgent=broadcast.is_urgent,
                    distance_km=broadcast.distance_km,
                    fare_per_truck=broadcast.fare_per_truck,
                    trucks_needed=broadcast.trucks_needed,
                    trucks_remaining=broadcast.trucks_remaining,
                    status=broadcast.status,
                    expires_at=broadcast.expires_at,
                    time_remaining_seconds=max(int((broadcast.expires_at - now).total_seconds()), 0),
                    distance_from_caller_km=round(distance, 2) if distance is not None else None,
                )
            )

        if has_location:
            summaries.sort(key=lambda s: s.distance_from_caller_km)
        else:
            summaries.sort(key=lambda s: (not s.is_urgent, s.expires_at))
        return summaries[:limit]

    # ------------------------------------------------------------------
    # Counter primitives (join the caller's transaction)
    # ------------------------------------------------------------------

    async def try_reserve(
        self,
        db: AsyncSession,
        broadcast_id: int,
        n: int,
        transporter_id: int = None,
        candidate_driver_ids: List[int] = None,
        reservation: Reservation = None,
    ) -> Reservation:
        """
        Atomically take ``n`` units of capacity.

        Creates a new reservation for ``transporter_id``, or, when an
        existing ``reservation`` is given, grows it back toward its
        requested count (used when a released slot is retargeted).

        Raises:
            ResourceNotFoundError: no such broadcast
            BroadcastQuarantinedError: broadcast frozen pending reconciliation
            ExpiredOrTerminalError: broadcast expired or cancelled
            CapacityConflictError: fewer than ``n`` trucks remain
        """
        if n < 1:
            raise ValidationFailedError("Truck count must be at least 1", details={"trucks": n})

        now = self.clock.now()
        new_filled = Broadcast.trucks_filled + n
        result = await db.execute(
            update(Broadcast)
            .where(
                Broadcast.id == broadcast_id,
                Broadcast.status.in_(RESERVABLE_BROADCAST_STATUSES),
                Broadcast.expires_at > now,
                Broadcast.is_quarantined == False,  # noqa: E712
                new_filled <= Broadcast.trucks_needed,
            )
            .values(
                trucks_filled=new_filled,
                status=case(
                    (new_filled >= Broadcast.trucks_needed, _broadcast_status(BroadcastStatus.FULLY_FILLED)),
                    else_=_broadcast_status(BroadcastStatus.PARTIALLY_FILLED),
                ),
                version=Broadcast.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._raise_reserve_failure(db, broadcast_id, n, now)

        if reservation is None:
            reservation = Reservation(
                broadcast_id=broadcast_id,
                transporter_id=transporter_id,
                trucks_requested=n,
                trucks_held=n,
                trucks_confirmed=0,
                candidate_driver_ids=list(candidate_driver_ids or []),
                status=ReservationStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            db.add(reservation)
            await db.flush()
            return reservation

        held = Reservation.trucks_held + n
        result = await db.execute(
            update(Reservation)
            .where(Reservation.id == reservation.id, held <= Reservation.trucks_requested)
            .values(
                trucks_held=held,
                status=reservation_status_expr(held, Reservation.trucks_confirmed),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvariantViolationError(
                broadcast_id, f"reservation {reservation.id} would hold more trucks than it requested"
            )
        return await self.load_reservation(db, reservation.id)

    async def _raise_reserve_failure(self, db: AsyncSession, broadcast_id: int, n: int, now) -> None:
        broadcast = await self._load_broadcast(db, broadcast_id)
        if broadcast is None:
            raise ResourceNotFoundError("Broadcast", broadcast_id)
        if broadcast.is_quarantined:
            raise BroadcastQuarantinedError(broadcast_id, broadcast.quarantine_reason)
        if broadcast.status not in (BroadcastStatus.FULLY_FILLED, *RESERVABLE_BROADCAST_STATUSES):
            raise ExpiredOrTerminalError(
                "Broadcast", broadcast_id, broadcast.status.value,
                details={"trucks_remaining": 0},
            )
        if broadcast.expires_at <= now:
            raise ExpiredOrTerminalError(
                "Broadcast", broadcast_id, BroadcastStatus.EXPIRED.value,
                details={"trucks_remaining": 0},
            )
        raise CapacityConflictError(broadcast_id, n, broadcast.trucks_remaining)

    async def release(self, db: AsyncSession, reservation_id: int, n: int = 1) -> Reservation:
        """
        Give ``n`` held units of a reservation back to its broadcast.

        FULLY_FILLED drops to PARTIALLY_FILLED, and an open broadcast left
        with nothing filled returns to ACTIVE. EXPIRED and CANCELLED are
        never revived.

        Raises:
            BroadcastQuarantinedError: broadcast frozen pending reconciliation
            InvariantViolationError: the release would underflow a counter
        """
        reservation = await self.load_reservation(db, reservation_id)
        if reservation is None:
            raise ResourceNotFoundError("Reservation", reservation_id)
        broadcast_id = reservation.broadcast_id
        now = self.clock.now()

        filled = Broadcast.trucks_filled - n
        result = await db.execute(
            update(Broadcast)
            .where(
                Broadcast.id == broadcast_id,
                Broadcast.trucks_filled >= n,
                Broadcast.is_quarantined == False,  # noqa: E712
            )
            .values(
                trucks_filled=filled,
                status=case(
                    (
                        and_(Broadcast.status.in_(OPEN_BROADCAST_STATUSES + (BroadcastStatus.FULLY_FILLED,)), filled == 0),
                        _broadcast_status(BroadcastStatus.ACTIVE),
                    ),
                    (
                        Broadcast.status == BroadcastStatus.FULLY_FILLED,
                        _broadcast_status(BroadcastStatus.PARTIALLY_FILLED),
                    ),
                    else_=Broadcast.status,
                ),
                version=Broadcast.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            broadcast = await self._load_broadcast(db, broadcast_id)
            if broadcast.is_quarantined:
                raise BroadcastQuarantinedError(broadcast_id, broadcast.quarantine_reason)
            raise InvariantViolationError(
                broadcast_id,
                f"release of {n} would drive trucks_filled below zero (trucks_filled={broadcast.trucks_filled})",
            )

        held = Reservation.trucks_held - n
        result = await db.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, held >= Reservation.trucks_confirmed)
            .values(
                trucks_held=held,
                status=reservation_status_expr(held, Reservation.trucks_confirmed),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvariantViolationError(
                broadcast_id,
                f"release of {n} from reservation {reservation_id} exceeds its unconfirmed units",
            )

        logger.info(
            "Released %s truck(s)", n,
            extra={"broadcast_id": broadcast_id, "reservation_id": reservation_id},
        )
        return await self.load_reservation(db, reservation_id)

    async def confirm(self, db: AsyncSession, reservation_id: int) -> Reservation:
        """Count one held unit as accepted by a driver."""
        confirmed = Reservation.trucks_confirmed + 1
        result = await db.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, confirmed <= Reservation.trucks_held)
            .values(
                trucks_confirmed=confirmed,
                status=reservation_status_expr(Reservation.trucks_held, confirmed),
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        reservation = await self.load_reservation(db, reservation_id)
        if result.rowcount != 1:
            raise InvariantViolationError(
                reservation.broadcast_id,
                f"reservation {reservation_id} would confirm more trucks than it holds",
            )
        return reservation

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def cancel(self, broadcast_id: int, actor: dict, reason: Optional[str] = None) -> Broadcast:
        """
        Cancel an open broadcast on behalf of its customer (or an admin).

        Every unresolved driver slot is released and cancelled; listeners
        then stop timers, notify drivers and abort in-flight trips.
        """
        async with transaction(self.session_factory) as db:
            broadcast = await self._load_broadcast(db, broadcast_id)
            if broadcast is None:
                raise ResourceNotFoundError("Broadcast", broadcast_id)
            if actor.get("role") != UserRole.ADMIN.value and actor.get("user_id") != broadcast.customer_id:
                raise InsufficientPermissionsError("Only the owning customer can cancel this broadcast")
            if broadcast.is_quarantined:
                raise BroadcastQuarantinedError(broadcast_id, broadcast.quarantine_reason)

            closed = await self._close(db, broadcast_id, BroadcastStatus.CANCELLED, reason)
            if closed is None:
                broadcast = await self._load_broadcast(db, broadcast_id)
                if broadcast.status == BroadcastStatus.FULLY_FILLED:
                    raise InvalidTransitionError(
                        "Broadcast", broadcast_id, broadcast.status.value, BroadcastStatus.CANCELLED.value
                    )
                raise ExpiredOrTerminalError("Broadcast", broadcast_id, broadcast.status.value)

            await log_event(
                db,
                AuditAction.BROADCAST_CANCELLED,
                entity_type="broadcast",
                entity_id=broadcast_id,
                actor_id=actor.get("user_id"),
                actor_role=actor.get("role"),
                metadata={"reason": reason, "released_slots": len(closed.cancelled_slots)},
            )
            broadcast = await self._load_broadcast(db, broadcast_id)

        logger.info(
            "Broadcast cancelled, %s slot(s) released", len(closed.cancelled_slots),
            extra={"broadcast_id": broadcast_id},
        )
        await self._emit_closed(closed)
        return broadcast

    async def sweep_expired(self, batch_size: int = 500) -> List[int]:
        """
        Expire every open broadcast past its ``expires_at``.

        A FULLY_FILLED broadcast past ``expires_at`` is expired too while any
        of its slots is still unresolved; its accepted units stay counted.
        Each broadcast is closed in its own transaction through the same
        conditional update a reservation races against, and a database
        error on one broadcast leaves it for the next sweep.

        Returns:
            IDs of the broadcasts expired by this sweep
        """
        now = self.clock.now()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Broadcast.id)
                .where(
                    _expirable(Broadcast.id),
                    Broadcast.expires_at <= now,
                    Broadcast.is_quarantined == False,  # noqa: E712
                )
                .order_by(Broadcast.expires_at)
                .limit(batch_size)
            )
            candidate_ids = list(result.scalars().all())

        expired = []
        for broadcast_id in candidate_ids:
            try:
                async with transaction(self.session_factory) as db:
                    closed = await self._close(db, broadcast_id, BroadcastStatus.EXPIRED, None)
                    if closed is not None:
                        await log_event(
                            db,
                            AuditAction.BROADCAST_EXPIRED,
                            entity_type="broadcast",
                            entity_id=broadcast_id,
                            metadata={"released_slots": len(closed.cancelled_slots)},
                        )
            except (InvariantViolationError, BroadcastQuarantinedError) as exc:
                logger.error("Expiry skipped: %s", exc.message, extra={"broadcast_id": broadcast_id})
                continue
            except DBAPIError as exc:
                logger.error(
                    "Expiry deferred to next sweep: %s", exc.orig,
                    extra={"broadcast_id": broadcast_id},
                )
                continue
            if closed is None:
                continue
            expired.append(broadcast_id)
            logger.info(
                "Broadcast expired, %s slot(s) released", len(closed.cancelled_slots),
                extra={"broadcast_id": broadcast_id},
            )
            await self._emit_closed(closed)

        return expired

    async def _close(
        self,
        db: AsyncSession,
        broadcast_id: int,
        target: BroadcastStatus,
        reason: Optional[str],
    ) -> Optional[BroadcastClosed]:
        now = self.clock.now()
        stmt = update(Broadcast).where(
            Broadcast.id == broadcast_id,
            Broadcast.is_quarantined == False,  # noqa: E712
        )
        if target == BroadcastStatus.EXPIRED:
            stmt = stmt.where(_expirable(broadcast_id), Broadcast.expires_at <= now)
        else:
            stmt = stmt.where(Broadcast.status.in_(OPEN_BROADCAST_STATUSES))
        result = await db.execute(
            stmt.values(
                status=target,
                closed_at=now,
                cancel_reason=reason,
                version=Broadcast.version + 1,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        broadcast = await self._load_broadcast(db, broadcast_id)
        closed = BroadcastClosed(
            broadcast_id=broadcast_id,
            customer_id=broadcast.customer_id,
            status=target,
            reason=reason,
        )

        result = await db.execute(
            select(DriverAssignment)
            .where(
                DriverAssignment.broadcast_id == broadcast_id,
                DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
            )
            .order_by(DriverAssignment.id)
            .execution_options(populate_existing=True)
        )
        for assignment in result.scalars().all():
            previous = assignment.status
            cas = await db.execute(
                update(DriverAssignment)
                .where(DriverAssignment.id == assignment.id, DriverAssignment.status == previous)
                .values(status=AssignmentStatus.CANCELLED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            if cas.rowcount != 1:
                continue
            await self.release(db, assignment.reservation_id, 1)
            closed.cancelled_slots.append(
                CancelledSlot(
                    assignment_id=assignment.id,
                    reservation_id=assignment.reservation_id,
                    transporter_id=assignment.transporter_id,
                    driver_id=assignment.driver_id,
                    previous_status=previous,
                )
            )

        return closed

    async def _emit_closed(self, closed: BroadcastClosed) -> None:
        for listener in self._close_listeners:
            await self._run_listener(listener, closed)

    @staticmethod
    async def _run_listener(listener, payload) -> None:
        try:
            await listener(payload)
        except Exception:
            logger.exception("Broadcast listener %s failed", getattr(listener, "__qualname__", listener))

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def check_integrity(self, broadcast_id: int) -> IntegrityReport:
        """
        Compare the counter with the units its reservations hold.

        A mismatch, an out-of-bounds counter or a status that disagrees with
        the counter quarantines the broadcast. Nothing is corrected.
        """
        async with self.session_factory() as db:
            broadcast = await self._load_broadcast(db, broadcast_id)
            if broadcast is None:
                raise ResourceNotFoundError("Broadcast", broadcast_id)
            held_total = await self._held_total(db, broadcast_id)

        reason = None
        if not 0 <= broadcast.trucks_filled <= broadcast.trucks_needed:
            reason = f"trucks_filled={broadcast.trucks_filled} outside [0, {broadcast.trucks_needed}]"
        elif held_total != broadcast.trucks_filled:
            reason = f"trucks_filled={broadcast.trucks_filled} but reservations hold {held_total}"
        elif broadcast.status in (BroadcastStatus.FULLY_FILLED, *OPEN_BROADCAST_STATUSES):
            expected = expected_open_status(broadcast.trucks_filled, broadcast.trucks_needed)
            if broadcast.status != expected:
                reason = f"status {broadcast.status.value} disagrees with counter (expected {expected.value})"

        quarantined = broadcast.is_quarantined
        if reason is not None and not quarantined:
            await quarantine_broadcast(self.session_factory, broadcast_id, reason)
            quarantined = True

        return IntegrityReport(
            broadcast_id=broadcast_id,
            trucks_needed=broadcast.trucks_needed,
            trucks_filled=broadcast.trucks_filled,
            held_total=held_total,
            healthy=reason is None,
            is_quarantined=quarantined,
            reason=reason or (broadcast.quarantine_reason if quarantined else None),
        )

    async def quarantine(self, broadcast_id: int, reason: str, actor_id: int = None) -> bool:
        return await quarantine_broadcast(self.session_factory, broadcast_id, reason, actor_id=actor_id)

    async def reconcile(self, broadcast_id: int, actor_id: int) -> ReconcileResponse:
        """
        Operator repair: set the counter to the held total and lift quarantine.

        Raises:
            ValidationFailedError: reservations hold more than the broadcast
                needs; those must be released by hand first
        """
        async with transaction(self.session_factory) as db:
            broadcast = await self._load_broadcast(db, broadcast_id)
            if broadcast is None:
                raise ResourceNotFoundError("Broadcast", broadcast_id)
            held_total = await self._held_total(db, broadcast_id)
            if held_total > broadcast.trucks_needed:
                raise ValidationFailedError(
                    "Reservations hold more trucks than the broadcast needs",
                    details={"held_total": held_total, "trucks_needed": broadcast.trucks_needed},
                )

            previous_filled = broadcast.trucks_filled
            broadcast.trucks_filled = held_total
            if broadcast.status in (BroadcastStatus.FULLY_FILLED, *OPEN_BROADCAST_STATUSES):
                broadcast.status = expected_open_status(held_total, broadcast.trucks_needed)
            broadcast.is_quarantined = False
            broadcast.quarantine_reason = None
            broadcast.version = broadcast.version + 1

            await log_event(
                db,
                AuditAction.BROADCAST_RECONCILED,
                entity_type="broadcast",
                entity_id=broadcast_id,
                actor_id=actor_id,
                actor_role=UserRole.ADMIN.value,
                metadata={"previous_filled": previous_filled, "trucks_filled": held_total},
            )

        logger.warning(
            "Broadcast reconciled: trucks_filled %s -> %s", previous_filled, held_total,
            extra={"broadcast_id": broadcast_id},
        )
        return ReconcileResponse(
            broadcast_id=broadcast_id,
            previous_filled=previous_filled,
            trucks_filled=held_total,
            status=broadcast.status.value,
            is_quarantined=False,
        )

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _held_total(db: AsyncSession, broadcast_id: int) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(Reservation.trucks_held), 0)).where(
                Reservation.broadcast_id == broadcast_id,
                Reservation.status != ReservationStatus.RELEASED,
            )
        )
        return int(result.scalar() or 0)

    @staticmethod
    async def lock_broadcast(db: AsyncSession, broadcast_id: int) -> None:
        """
        Row-lock the broadcast before touching any of its slots.

        Closing locks the broadcast and then its assignments; every other
        writer that ends up changing both must take them in that order.
        """
        await db.execute(select(Broadcast.id).where(Broadcast.id == broadcast_id).with_for_update())

    @staticmethod
    async def _load_broadcast(db: AsyncSession, broadcast_id: int) -> Optional[Broadcast]:
        result = await db.execute(
            select(Broadcast)
            .where(Broadcast.id == broadcast_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def load_reservation(db: AsyncSession, reservation_id: int) -> Optional[Reservation]:
        result = await db.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
