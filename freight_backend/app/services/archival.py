"""
Archival of finished dispatch data.

Moves hot rows into cold tables in batches: position logs of finished trips
into ``archived_tracking_positions``, then whole broadcasts (with their
reservations, assignments and tracking sessions) into a JSON snapshot in
``archived_broadcasts``.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List

from sqlalchemy import delete, exists, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from freight_backend.app.core.clock import Clock, system_clock
from freight_backend.app.core.config import Settings, settings as default_settings
from freight_backend.app.models.archived_broadcast import ArchivedBroadcast
from freight_backend.app.models.archived_tracking_position import ArchivedTrackingPosition
from freight_backend.app.models.broadcast import Broadcast
from freight_backend.app.models.dispatch_enums import (
    BroadcastStatus,
    TERMINAL_BROADCAST_STATUSES,
    TERMINAL_TRIP_STATES,
    UNRESOLVED_ASSIGNMENT_STATUSES,
)
from freight_backend.app.models.driver_assignment import DriverAssignment
from freight_backend.app.models.reservation import Reservation
from freight_backend.app.models.tracking_position import TrackingPosition
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.services.unit_of_work import transaction

logger = logging.getLogger(__name__)

# A filled broadcast never closes; it becomes archivable once its window has passed
ARCHIVABLE_BROADCAST_STATUSES = TERMINAL_BROADCAST_STATUSES + (BroadcastStatus.FULLY_FILLED,)


def _row_to_dict(row) -> Dict[str, Any]:
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        data[column.key] = value
    return data


class ArchivalService:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Clock = system_clock,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings

    async def archive_tracking(self, days_to_keep: int = None, batch_size: int = 1000) -> int:
        """
        Archive position logs of sessions that ended more than ``days_to_keep``
        days ago.

        Returns:
            Number of positions moved
        """
        days = self.settings.tracking_retention_days if days_to_keep is None else days_to_keep
        now = self.clock.now()
        cutoff = now - timedelta(days=days)
        moved = 0

        while True:
            async with transaction(self.session_factory) as db:
                result = await db.execute(
                    select(TrackingPosition)
                    .join(TrackingSession, TrackingSession.id == TrackingPosition.session_id)
                    .where(
                        TrackingSession.trip_state.in_(TERMINAL_TRIP_STATES),
                        TrackingSession.completed_at < cutoff,
                    )
                    .order_by(TrackingPosition.id)
                    .limit(batch_size)
                )
                rows = result.scalars().all()
                if not rows:
                    break

                await db.execute(
                    insert(ArchivedTrackingPosition),
                    [
                        {
                            "original_id": r.id,
                            "session_id": r.session_id,
                            "sequence": r.sequence,
                            "latitude": r.latitude,
                            "longitude": r.longitude,
                            "speed_kmh": r.speed_kmh,
                            "accuracy_meters": r.accuracy_meters,
                            "low_confidence": r.low_confidence,
                            "recorded_at": r.recorded_at,
                            "archived_at": now,
                        }
                        for r in rows
                    ],
                )
                await db.execute(delete(TrackingPosition).where(TrackingPosition.id.in_([r.id for r in rows])))
            moved += len(rows)
            if len(rows) < batch_size:
                break

        if moved:
            logger.info("Archived %s tracking position(s)", moved, extra={"cutoff": cutoff.isoformat()})
        return moved

    async def archive_broadcasts(self, days_to_keep: int = None, batch_size: int = 100) -> int:
        """
        Snapshot and remove finished broadcasts older than ``days_to_keep`` days.

        A broadcast is skipped while any assignment is unresolved, any trip
        under it is still running, or its position log is still hot.

        Returns:
            Number of broadcasts archived
        """
        days = self.settings.broadcast_retention_days if days_to_keep is None else days_to_keep
        now = self.clock.now()
        cutoff = now - timedelta(days=days)

        async with self.session_factory() as db:
            result = await db.execute(
                select(Broadcast.id)
                .where(
                    Broadcast.status.in_(ARCHIVABLE_BROADCAST_STATUSES),
                    func.coalesce(Broadcast.closed_at, Broadcast.expires_at) < cutoff,
                    Broadcast.is_quarantined == False,  # noqa: E712
                    ~exists().where(
                        DriverAssignment.broadcast_id == Broadcast.id,
                        DriverAssignment.status.in_(UNRESOLVED_ASSIGNMENT_STATUSES),
                    ),
                    ~exists().where(
                        TrackingSession.broadcast_id == Broadcast.id,
                        or_(
                            TrackingSession.trip_state.notin_(TERMINAL_TRIP_STATES),
                            exists().where(TrackingPosition.session_id == TrackingSession.id),
                        ),
                    ),
                )
                .order_by(Broadcast.id)
                .limit(batch_size)
            )
            candidate_ids = list(result.scalars().all())

        archived = 0
        for broadcast_id in candidate_ids:
            async with transaction(self.session_factory) as db:
                if await self._archive_one(db, broadcast_id, now):
                    archived += 1

        if archived:
            logger.info("Archived %s broadcast(s)", archived, extra={"cutoff": cutoff.isoformat()})
        return archived

    async def _archive_one(self, db: AsyncSession, broadcast_id: int, now) -> bool:
        broadcast = (await db.execute(select(Broadcast).where(Broadcast.id == broadcast_id))).scalar_one_or_none()
        if broadcast is None:
            return False

        reservations = await self._all(db, Reservation, Reservation.broadcast_id == broadcast_id)
        assignments = await self._all(db, DriverAssignment, DriverAssignment.broadcast_id == broadcast_id)
        sessions = await self._all(db, TrackingSession, TrackingSession.broadcast_id == broadcast_id)

        db.add(
            ArchivedBroadcast(
                original_id=broadcast.id,
                customer_id=broadcast.customer_id,
                final_status=broadcast.status.value,
                snapshot={
                    "broadcast": _row_to_dict(broadcast),
                    "reservations": [_row_to_dict(r) for r in reservations],
                    "assignments": [_row_to_dict(a) for a in assignments],
                    "tracking_sessions": [_row_to_dict(s) for s in sessions],
                },
                closed_at=broadcast.closed_at,
                archived_at=now,
            )
        )

        await db.execute(delete(TrackingSession).where(TrackingSession.broadcast_id == broadcast_id))
        await db.execute(delete(DriverAssignment).where(DriverAssignment.broadcast_id == broadcast_id))
        await db.execute(delete(Reservation).where(Reservation.broadcast_id == broadcast_id))
        await db.execute(delete(Broadcast).where(Broadcast.id == broadcast_id))
        return True

    @staticmethod
    async def _all(db: AsyncSession, model, condition) -> List[Any]:
        result = await db.execute(select(model).where(condition).order_by(model.id))
        return list(result.scalars().all())
