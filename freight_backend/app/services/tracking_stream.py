"""
Tracking Stream.

Post-acceptance position ingestion for live trips:
- ordering by a per-session sequence number, enforced with a conditional
  update on ``last_sequence`` (stale or duplicated fixes are dropped and
  reported as OUT_OF_ORDER, never raised)
- plausibility against the last trusted fix (implausible jumps are kept
  but flagged ``low_confidence``)
- geofence auto-transitions at pickup and drop
- fire-and-forget fan-out to subscribers with bounded retry
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock, to_naive_utc
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.core.exceptions import (
    ExpiredOrTerminalError,
    InsufficientPermissionsError,
    InvalidTransitionError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from freight_backend.app.core.reliability import CircuitBreaker, CircuitOpenError
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.models.dispatch_enums import BroadcastStatus, TERMINAL_TRIP_STATES, TRIP_TRANSITIONS, TripState
from freight_backend.app.models.driver_assignment import DriverAssignment
from freight_backend.app.models.enums import UserRole
from freight_backend.app.models.tracking_position import TrackingPosition
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.schemas.tracking import PositionReport
from freight_backend.app.services.audit import AuditAction, log_event
from freight_backend.app.services.geo import haversine_distance, validate_coordinates
from freight_backend.app.services.notification_channels import ChannelError
from freight_backend.app.services.tracking_subscribers import TrackingSubscriber
from freight_backend.app.services.unit_of_work import transaction

logger = logging.getLogger(__name__)

ACCEPTED = "ACCEPTED"
OUT_OF_ORDER = "OUT_OF_ORDER"

# Movement below this between fixes with no elapsed time is GPS jitter
JITTER_KM = 0.05

# Who may move a trip into each state; unlisted targets are driver-only
TRIP_STATE_ACTORS = {
    TripState.COMPLETED: {UserRole.DRIVER, UserRole.TRANSPORTER},
    TripState.CANCELLED: {UserRole.DRIVER, UserRole.TRANSPORTER, UserRole.ADMIN},
}


@dataclass
class IngestResult:
    session_id: int
    sequence: int
    result: str
    low_confidence: bool
    trip_state: TripState


class TrackingStream:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
        subscribers: List[TrackingSubscriber] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.subscribers: List[TrackingSubscriber] = []
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._background: set = set()
        for subscriber in subscribers or []:
            self.add_subscriber(subscriber)

    def add_subscriber(self, subscriber: TrackingSubscriber) -> None:
        self.subscribers.append(subscriber)
        self._breakers[subscriber.name] = CircuitBreaker(
            name=f"tracking:{subscriber.name}",
            failure_threshold=self.settings.channel_failure_threshold,
            reset_timeout=self.settings.channel_reset_timeout,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def open_session(self, db: AsyncSession, assignment: DriverAssignment, broadcast: Broadcast) -> TrackingSession:
        """Create the session for an accepted assignment; returns the existing one if already open."""
        result = await db.execute(
            select(TrackingSession).where(TrackingSession.assignment_id == assignment.id)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        now = self.clock.now()
        session = TrackingSession(
            assignment_id=assignment.id,
            broadcast_id=broadcast.id,
            driver_id=assignment.driver_id,
            transporter_id=assignment.transporter_id,
            customer_id=broadcast.customer_id,
            trip_state=TripState.ASSIGNED,
            pickup_lat=broadcast.pickup_lat,
            pickup_lng=broadcast.pickup_lng,
            drop_lat=broadcast.drop_lat,
            drop_lng=broadcast.drop_lng,
            last_sequence=0,
            last_low_confidence=False,
            created_at=now,
            updated_at=now,
        )
        db.add(session)
        await db.flush()

        logger.info(
            "Tracking session opened",
            extra={"session_id": session.id, "assignment_id": assignment.id, "driver_id": assignment.driver_id},
        )
        return session

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, session_id: int, report: PositionReport, driver_id: Optional[int] = None) -> IngestResult:
        """
        Apply one GPS fix.

        Raises:
            ValidationFailedError: bad coordinates or sequence
            ResourceNotFoundError: unknown session
            ExpiredOrTerminalError: the trip already ended
        """
        if report.sequence < 1:
            raise ValidationFailedError("sequence must be a positive integer", details={"sequence": report.sequence})
        if not validate_coordinates(report.latitude, report.longitude):
            raise ValidationFailedError(
                "Invalid coordinates",
                details={"latitude": report.latitude, "longitude": report.longitude},
            )

        now = self.clock.now()
        recorded_at = to_naive_utc(report.recorded_at) or now
        events: List[Dict[str, Any]] = []

        async with transaction(self.session_factory) as db:
            session = await self._load(db, session_id)
            if session is None:
                raise ResourceNotFoundError("Tracking session", session_id)
            if driver_id is not None and session.driver_id != driver_id:
                raise InsufficientPermissionsError("Only the assigned driver can report positions")
            if session.trip_state in TERMINAL_TRIP_STATES:
                raise ExpiredOrTerminalError("Tracking session", session_id, session.trip_state.value)

            low_confidence = self._is_implausible(session, report, recorded_at)
            values = dict(
                last_sequence=report.sequence,
                last_lat=report.latitude,
                last_lng=report.longitude,
                last_speed_kmh=report.speed_kmh,
                last_bearing=report.bearing,
                last_accuracy_meters=report.accuracy_meters,
                last_recorded_at=recorded_at,
                last_low_confidence=low_confidence,
                updated_at=now,
            )
            if not low_confidence:
                values.update(trusted_lat=report.latitude, trusted_lng=report.longitude, trusted_recorded_at=recorded_at)

            result = await db.execute(
                update(TrackingSession)
                .where(
                    TrackingSession.id == session_id,
                    TrackingSession.last_sequence < report.sequence,
                    TrackingSession.trip_state.notin_(TERMINAL_TRIP_STATES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session = await self._load(db, session_id)

            if result.rowcount != 1:
                if session.trip_state in TERMINAL_TRIP_STATES:
                    raise ExpiredOrTerminalError("Tracking session", session_id, session.trip_state.value)
                outcome = IngestResult(session_id, report.sequence, OUT_OF_ORDER, False, session.trip_state)
            else:
                position = TrackingPosition(
                    session_id=session_id,
                    sequence=report.sequence,
                    latitude=report.latitude,
                    longitude=report.longitude,
                    speed_kmh=report.speed_kmh,
                    bearing=report.bearing,
                    accuracy_meters=report.accuracy_meters,
                    low_confidence=low_confidence,
                    recorded_at=recorded_at,
                    received_at=now,
                )
                db.add(position)
                await db.flush()
                events.append(self._position_event(session, position))

                target = self._geofence_target(session, report, low_confidence)
                if target is not None:
                    previous = session.trip_state
                    session = await self._transition(db, session, target, source="geofence")
                    events.append(self._state_event(session, previous, "geofence"))

                outcome = IngestResult(session_id, report.sequence, ACCEPTED, low_confidence, session.trip_state)

        if outcome.result == OUT_OF_ORDER:
            logger.info(
                "Dropped out-of-order fix %s (last accepted %s)", report.sequence, session.last_sequence,
                extra={"session_id": session_id},
            )
        elif low_confidence:
            logger.warning("Low-confidence fix %s", report.sequence, extra={"session_id": session_id})

        for event in events:
            self._fan_out(event)
        return outcome

    def _is_implausible(self, session: TrackingSession, report: PositionReport, recorded_at) -> bool:
        max_speed = self.settings.max_plausible_speed_kmh
        if report.speed_kmh is not None and report.speed_kmh > max_speed:
            return True
        if session.trusted_lat is None:
            return False

        distance_km = haversine_distance(session.trusted_lat, session.trusted_lng, report.latitude, report.longitude)
        elapsed_hours = (recorded_at - session.trusted_recorded_at).total_seconds() / 3600
        if elapsed_hours <= 0:
            return distance_km > JITTER_KM
        return distance_km / elapsed_hours > max_speed

    def _geofence_target(self, session: TrackingSession, report: PositionReport, low_confidence: bool) -> Optional[TripState]:
        if low_confidence:
            return None
        radius = self.settings.geofence_radius_km
        if session.trip_state == TripState.EN_ROUTE_TO_PICKUP:
            if haversine_distance(report.latitude, report.longitude, session.pickup_lat, session.pickup_lng) <= radius:
                return TripState.PICKUP_REACHED
        elif session.trip_state == TripState.IN_TRANSIT:
            if haversine_distance(report.latitude, report.longitude, session.drop_lat, session.drop_lng) <= radius:
                return TripState.DROP_REACHED
        return None

    # ------------------------------------------------------------------
    # Trip state
    # ------------------------------------------------------------------

    async def advance(self, session_id: int, target: TripState, actor: dict, reason: Optional[str] = None) -> TrackingSession:
        """
        Move a trip to ``target`` on behalf of ``actor``.

        Raises:
            InsufficientPermissionsError: actor may not make this move
            InvalidTransitionError: move not in the trip state table
        """
        target = TripState(target)
        async with transaction(self.session_factory) as db:
            session = await self._load(db, session_id)
            if session is None:
                raise ResourceNotFoundError("Tracking session", session_id)
            self._authorize(session, target, actor)
            previous = session.trip_state
            session = await self._transition(
                db, session, target,
                source="manual",
                actor_id=actor.get("user_id"),
                actor_role=actor.get("role"),
                reason=reason,
            )

        self._fan_out(self._state_event(session, previous, "manual"))
        return session

    @staticmethod
    def _authorize(session: TrackingSession, target: TripState, actor: dict) -> None:
        role = UserRole(actor.get("role"))
        user_id = actor.get("user_id")
        allowed = TRIP_STATE_ACTORS.get(target, {UserRole.DRIVER})
        if role not in allowed:
            raise InsufficientPermissionsError(
                f"{role.value} cannot move a trip to {target.value}",
                details={"allowed_roles": sorted(r.value for r in allowed)},
            )
        if role == UserRole.DRIVER and user_id != session.driver_id:
            raise InsufficientPermissionsError("Only the assigned driver can update this trip")
        if role == UserRole.TRANSPORTER and user_id != session.transporter_id:
            raise InsufficientPermissionsError("Only the owning transporter can update this trip")

    async def _transition(
        self,
        db: AsyncSession,
        session: TrackingSession,
        target: TripState,
        source: str,
        actor_id: Optional[int] = None,
        actor_role: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TrackingSession:
        current = session.trip_state
        if target not in TRIP_TRANSITIONS[current]:
            raise InvalidTransitionError("Tracking session", session.id, current.value, target.value)

        now = self.clock.now()
        values = dict(trip_state=target, updated_at=now)
        if target in TERMINAL_TRIP_STATES:
            values["completed_at"] = now
        result = await db.execute(
            update(TrackingSession)
            .where(TrackingSession.id == session.id, TrackingSession.trip_state == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session = await self._load(db, session.id)
        if result.rowcount != 1:
            raise InvalidTransitionError("Tracking session", session.id, session.trip_state.value, target.value)

        await log_event(
            db,
            AuditAction.TRIP_STATE_CHANGED,
            entity_type="tracking_session",
            entity_id=session.id,
            actor_id=actor_id,
            actor_role=actor_role,
            metadata={"from": current.value, "to": target.value, "source": source, "reason": reason},
        )
        logger.info(
            "Trip %s -> %s (%s)", current.value, target.value, source,
            extra={"session_id": session.id, "driver_id": session.driver_id},
        )
        return session

    async def on_broadcast_closed(self, closed) -> None:
        """Abort in-flight trips of a cancelled broadcast. Expiry leaves accepted trips running."""
        if closed.status != BroadcastStatus.CANCELLED:
            return

        events = []
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                select(TrackingSession).where(
                    TrackingSession.broadcast_id == closed.broadcast_id,
                    TrackingSession.trip_state.notin_(TERMINAL_TRIP_STATES),
                )
            )
            for session in result.scalars().all():
                previous = session.trip_state
                try:
                    session = await self._transition(
                        db, session, TripState.CANCELLED, source="broadcast_cancelled", reason=closed.reason
                    )
                except InvalidTransitionError:
                    continue
                events.append(self._state_event(session, previous, "broadcast_cancelled"))

        for event in events:
            self._fan_out(event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_live_status(self, session_id: int) -> TrackingSession:
        async with self.session_factory() as db:
            session = await self._load(db, session_id)
        if session is None:
            raise ResourceNotFoundError("Tracking session", session_id)
        return session

    async def fleet_status(self, transporter_id: int) -> List[TrackingSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingSession)
                .where(
                    TrackingSession.transporter_id == transporter_id,
                    TrackingSession.trip_state.notin_(TERMINAL_TRIP_STATES),
                )
                .order_by(TrackingSession.id)
            )
            return list(result.scalars().all())

    async def positions(self, session_id: int, limit: int = 100) -> List[TrackingPosition]:
        """Most recent ``limit`` fixes, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackingPosition)
                .where(TrackingPosition.session_id == session_id)
                .order_by(TrackingPosition.sequence.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    @staticmethod
    async def _load(db: AsyncSession, session_id: int) -> Optional[TrackingSession]:
        result = await db.execute(
            select(TrackingSession)
            .where(TrackingSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    @staticmethod
    def _base_event(session: TrackingSession) -> Dict[str, Any]:
        return {
            "session_id": session.id,
            "broadcast_id": session.broadcast_id,
            "customer_id": session.customer_id,
            "transporter_id": session.transporter_id,
            "driver_id": session.driver_id,
            "trip_state": session.trip_state.value,
        }

    def _position_event(self, session: TrackingSession, position: TrackingPosition) -> Dict[str, Any]:
        return {
            **self._base_event(session),
            "type": "position",
            "sequence": position.sequence,
            "latitude": position.latitude,
            "longitude": position.longitude,
            "speed_kmh": position.speed_kmh,
            "bearing": position.bearing,
            "accuracy_meters": position.accuracy_meters,
            "low_confidence": position.low_confidence,
            "recorded_at": position.recorded_at.isoformat(),
        }

    def _state_event(self, session: TrackingSession, previous: TripState, source: str) -> Dict[str, Any]:
        return {
            **self._base_event(session),
            "type": "trip_state",
            "from": previous.value,
            "to": session.trip_state.value,
            "source": source,
        }

    def _fan_out(self, event: Dict[str, Any]) -> None:
        for subscriber in self.subscribers:
            task = asyncio.create_task(self._publish_with_retry(subscriber, event))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _publish_with_retry(self, subscriber: TrackingSubscriber, event: Dict[str, Any]) -> None:
        breaker = self._breakers[subscriber.name]
        max_attempts = self.settings.subscriber_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                await breaker.call(subscriber.publish, event)
                return
            except CircuitOpenError:
                logger.debug("Subscriber %s circuit open, event skipped", subscriber.name,
                             extra={"session_id": event["session_id"]})
                return
            except ChannelError as exc:
                if attempt == max_attempts:
                    logger.warning(
                        "Subscriber %s dropped %s event after %s attempts: %s",
                        subscriber.name, event["type"], attempt, exc,
                        extra={"session_id": event["session_id"]},
                    )
                    return
                await asyncio.sleep(self.settings.subscriber_retry_delay_seconds * attempt)

    async def drain(self) -> None:
        """Wait for in-flight fan-out to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.drain()
