"""
Reservation and Driver Assignment API Endpoints.
"""

from fastapi import APIRouter, Depends, Path, Query
from typing import Optional

from freight_backend.app.core.dependencies import get_dispatch_core
from freight_backend.app.core.guards import require_role, ownership_guard
from freight_backend.app.models.dispatch_enums import AssignmentStatus
from freight_backend.app.models.enums import UserRole
from freight_backend.app.schemas.reservation import (
    AssignDriverRequest,
    DriverAssignmentList,
    DriverAssignmentResponse,
    ReservationResponse,
    RespondRequest,
    RespondResponse,
)

router = APIRouter(tags=["Assignments"])


def reservation_response(view) -> ReservationResponse:
    response = ReservationResponse.model_validate(view.reservation)
    response.assignments = [DriverAssignmentResponse.model_validate(a) for a in view.assignments]
    return response


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER, UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    view = await core.allocation.get_reservation(reservation_id)
    ownership_guard.enforce(view.reservation.transporter_id, current_user, "reservation")
    return reservation_response(view)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationResponse)
async def release_reservation(
    reservation_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    """Give back every slot of the reservation whose offer has not gone out yet."""
    view = await core.allocation.release_reservation(reservation_id, transporter_id=current_user["user_id"])
    return reservation_response(view)


@router.post("/assignments/{assignment_id}/release", response_model=DriverAssignmentResponse)
async def release_slot(
    assignment_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    return await core.allocation.release_slot(assignment_id, transporter_id=current_user["user_id"])


@router.patch("/assignments/{assignment_id}/driver", response_model=DriverAssignmentResponse)
async def assign_driver(
    data: AssignDriverRequest,
    assignment_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    """Bind a driver to a slot claimed without one; the driver is notified immediately."""
    return await core.allocation.assign_driver(
        assignment_id, driver_id=data.driver_id, transporter_id=current_user["user_id"]
    )


@router.post("/assignments/{assignment_id}/respond", response_model=RespondResponse)
async def respond_to_assignment(
    data: RespondRequest,
    assignment_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    core=Depends(get_dispatch_core),
):
    """
    Accept or decline an offer.

    Repeating the same answer returns the recorded outcome with
    ``duplicate: true``; a different answer after resolution is a conflict.
    """
    outcome = await core.dispatcher.on_response(
        assignment_id, current_user["user_id"], data.decision, reason=data.reason
    )
    return RespondResponse(
        assignment_id=outcome.assignment_id,
        status=outcome.status,
        duplicate=outcome.duplicate,
        tracking_session_id=outcome.tracking_session_id,
    )


@router.get("/driver/assignments", response_model=DriverAssignmentList)
async def list_driver_assignments(
    status: Optional[AssignmentStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_role([UserRole.DRIVER])),
    core=Depends(get_dispatch_core),
):
    """Offers and past assignments for the calling driver, newest first."""
    assignments = await core.allocation.driver_assignments(current_user["user_id"], status=status, limit=limit)
    return DriverAssignmentList(
        assignments=[DriverAssignmentResponse.model_validate(a) for a in assignments],
        total=len(assignments),
    )
