"""
Live Tracking API Endpoints.

Drivers stream GPS fixes for accepted trips; customers and transporters
read the latest position and trip state.
"""

from fastapi import APIRouter, Depends, Path, Query
from typing import List

from freight_backend.app.core.dependencies import get_dispatch_core
from freight_backend.app.core.guards import require_role, ownership_guard
from freight_backend.app.models.enums import UserRole
from freight_backend.app.models.tracking_session import TrackingSession
from freight_backend.app.schemas.tracking import (
    FleetStatusResponse,
    IngestResponse,
    LastPosition,
    LiveStatusResponse,
    PositionReport,
    TrackingPositionResponse,
    TripStateUpdate,
)

router = APIRouter(prefix="/tracking", tags=["Live Tracking"])

VIEWER_ROLES = [UserRole.CUSTOMER, UserRole.TRANSPORTER, UserRole.DRIVER, UserRole.ADMIN]


def live_status(session: TrackingSession) -> LiveStatusResponse:
    position = None
    if session.last_recorded_at is not None:
        position = LastPosition(
            latitude=session.last_lat,
            longitude=session.last_lng,
            speed_kmh=session.last_speed_kmh,
            bearing=session.last_bearing,
            accuracy_meters=session.last_accuracy_meters,
            recorded_at=session.last_recorded_at,
            low_confidence=session.last_low_confidence,
            sequence=session.last_sequence,
        )
    return LiveStatusResponse(
        session_id=session.id,
        assignment_id=session.assignment_id,
        broadcast_id=session.broadcast_id,
        driver_id=session.driver_id,
        trip_state=session.trip_state,
        position=position,
        updated_at=session.updated_at,
    )


def enforce_viewer(session: TrackingSession, current_user: dict) -> None:
    ownership_guard.enforce_any(
        [session.customer_id, session.transporter_id, session.driver_id], current_user, "trip"
    )


@router.get("/fleet", response_model=FleetStatusResponse)
async def get_fleet_status(
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    """Every running trip of the calling transporter."""
    sessions = await core.tracking.fleet_status(current_user["user_id"])
    return FleetStatusResponse(
        transporter_id=current_user["user_id"],
        sessions=[live_status(s) for s in sessions],
        total=len(sessions),
    )


@router.post("/{session_id}/positions", response_model=IngestResponse)
async def report_position(
    data: PositionReport,
    session_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    core=Depends(get_dispatch_core),
):
    """
    Report one GPS fix.

    Stale or repeated sequence numbers are dropped and answered with
    ``result: OUT_OF_ORDER`` rather than an error.
    """
    result = await core.tracking.ingest(session_id, data, driver_id=current_user["user_id"])
    return IngestResponse(
        session_id=result.session_id,
        sequence=result.sequence,
        result=result.result,
        low_confidence=result.low_confidence,
        trip_state=result.trip_state,
    )


@router.patch("/{session_id}/trip-state", response_model=LiveStatusResponse)
async def update_trip_state(
    data: TripStateUpdate,
    session_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.DRIVER, UserRole.TRANSPORTER, UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    session = await core.tracking.advance(session_id, data.state, current_user, reason=data.reason)
    return live_status(session)


@router.get("/{session_id}/live", response_model=LiveStatusResponse)
async def get_live_status(
    session_id: int = Path(...),
    current_user: dict = Depends(require_role(VIEWER_ROLES)),
    core=Depends(get_dispatch_core),
):
    session = await core.tracking.get_live_status(session_id)
    enforce_viewer(session, current_user)
    return live_status(session)


@router.get("/{session_id}/positions", response_model=List[TrackingPositionResponse])
async def list_positions(
    session_id: int = Path(...),
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_role(VIEWER_ROLES)),
    core=Depends(get_dispatch_core),
):
    """Recent position log, oldest first."""
    session = await core.tracking.get_live_status(session_id)
    enforce_viewer(session, current_user)
    return await core.tracking.positions(session_id, limit=limit)
