"""
Broadcast API Endpoints.

Customers post truck demand; transporters browse open broadcasts and claim
trucks on them.
"""

from fastapi import APIRouter, Depends, Path, Query, status
from typing import Optional

from freight_backend.app.core.dependencies import get_dispatch_core
from freight_backend.app.core.exceptions import ValidationFailedError
from freight_backend.app.core.guards import require_role, ownership_guard
from freight_backend.app.models.dispatch_enums import BroadcastStatus, VehicleClass
from freight_backend.app.models.enums import UserRole
from freight_backend.app.schemas.broadcast import (
    BroadcastCreate,
    BroadcastListResponse,
    BroadcastResponse,
    BroadcastStatusUpdate,
)
from freight_backend.app.schemas.reservation import ClaimRequest, ReservationResponse
from freight_backend.app.api.v1.endpoints.assignments import reservation_response

router = APIRouter(prefix="/broadcasts", tags=["Broadcasts"])


@router.post("", response_model=BroadcastResponse, status_code=status.HTTP_201_CREATED)
async def create_broadcast(
    data: BroadcastCreate,
    current_user: dict = Depends(require_role([UserRole.CUSTOMER])),
    core=Depends(get_dispatch_core),
):
    """
    Post a new broadcast.

    Distance and per-truck fare are computed server-side; nearby
    transporters are alerted once the broadcast is stored.
    """
    return await core.registry.create(data, customer_id=current_user["user_id"])


@router.get("/active", response_model=BroadcastListResponse)
async def list_active_broadcasts(
    vehicle_class: Optional[VehicleClass] = Query(None),
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=500),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER, UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """Open broadcasts, nearest first when the caller's location is given."""
    broadcasts = await core.registry.list_active(
        vehicle_class=vehicle_class, lat=lat, lng=lng, radius_km=radius_km, limit=limit
    )
    return BroadcastListResponse(broadcasts=broadcasts, total=len(broadcasts))


@router.get("/{broadcast_id}", response_model=BroadcastResponse)
async def get_broadcast(
    broadcast_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.CUSTOMER, UserRole.TRANSPORTER, UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    broadcast = await core.registry.get(broadcast_id)
    if current_user["role"] == UserRole.CUSTOMER.value:
        ownership_guard.enforce(broadcast.customer_id, current_user, "broadcast")
    return broadcast


@router.patch("/{broadcast_id}/status", response_model=BroadcastResponse)
async def update_broadcast_status(
    data: BroadcastStatusUpdate,
    broadcast_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.CUSTOMER, UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """
    Cancel a broadcast. Other statuses follow the truck counter and the
    expiry sweep and cannot be set directly.
    """
    if data.status != BroadcastStatus.CANCELLED:
        raise ValidationFailedError(
            "Only CANCELLED can be requested",
            details={"status": data.status.value},
        )
    return await core.registry.cancel(broadcast_id, current_user, reason=data.reason)


@router.post("/{broadcast_id}/claims", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def claim_trucks(
    data: ClaimRequest,
    broadcast_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    """
    Reserve trucks on a broadcast.

    All-or-nothing: a claim for more trucks than remain fails with
    ERR_CAPACITY_001 and ``details.trucks_remaining``.
    """
    view = await core.allocation.claim(
        broadcast_id,
        transporter_id=current_user["user_id"],
        n=data.trucks,
        candidate_driver_ids=data.candidate_driver_ids,
    )
    return reservation_response(view)
