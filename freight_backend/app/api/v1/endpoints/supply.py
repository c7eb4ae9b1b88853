"""
Supply Presence API Endpoints.

Transporters keep their position current so new broadcasts can alert
nearby supply.
"""

from fastapi import APIRouter, Depends, Query
from typing import List

from freight_backend.app.core.dependencies import get_dispatch_core
from freight_backend.app.core.guards import require_role
from freight_backend.app.models.dispatch_enums import VehicleClass
from freight_backend.app.models.enums import UserRole
from freight_backend.app.schemas.tracking import SupplyLocationUpdate

router = APIRouter(prefix="/supply", tags=["Supply"])


@router.put("/location")
async def update_supply_location(
    data: SupplyLocationUpdate,
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    vehicle_classes = [vc.value for vc in data.vehicle_classes]
    await core.geo_index.update_candidate(current_user["user_id"], data.lat, data.lng, vehicle_classes)
    return {"status": "success", "vehicle_classes": vehicle_classes}


@router.delete("/location")
async def clear_supply_location(
    vehicle_classes: List[VehicleClass] = Query(list(VehicleClass)),
    current_user: dict = Depends(require_role([UserRole.TRANSPORTER])),
    core=Depends(get_dispatch_core),
):
    """Stop receiving new-load alerts, for the given vehicle classes or all of them."""
    await core.geo_index.remove_candidate(current_user["user_id"], [vc.value for vc in vehicle_classes])
    return {"status": "success"}
