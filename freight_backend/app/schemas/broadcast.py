"""
Broadcast schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from freight_backend.app.models.dispatch_enums import BroadcastStatus, VehicleClass


class GeoPoint(BaseModel):
    """A WGS84 coordinate with optional street address."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)


class BroadcastCreate(BaseModel):
    """Schema for a customer's truck demand."""
    pickup: GeoPoint
    drop: GeoPoint
    vehicle_class: VehicleClass
    trucks_needed: int = Field(..., ge=1, le=100)
    goods_type: Optional[str] = Field(None, max_length=100)
    weight: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None
    is_urgent: bool = False
    ttl_minutes: Optional[int] = Field(None, ge=1, description="Overrides the default broadcast lifetime")


class BroadcastResponse(BaseModel):
    """Full broadcast view."""
    id: int
    customer_id: int
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str]
    drop_lat: float
    drop_lng: float
    drop_address: Optional[str]
    vehicle_class: VehicleClass
    goods_type: Optional[str]
    weight: Optional[str]
    notes: Optional[str]
    is_urgent: bool
    distance_km: float
    fare_per_truck: float
    trucks_needed: int
    trucks_filled: int
    status: BroadcastStatus
    is_quarantined: bool
    created_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime]
    cancel_reason: Optional[str]

    class Config:
        from_attributes = True


class BroadcastSummary(BaseModel):
    """Transporter-facing row of the active broadcast feed."""
    id: int
    vehicle_class: VehicleClass
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str]
    drop_address: Optional[str]
    goods_type: Optional[str]
    is_urgent: bool
    distance_km: float
    fare_per_truck: float
    trucks_needed: int
    trucks_remaining: int
    status: BroadcastStatus
    expires_at: datetime
    time_remaining_seconds: int
    distance_from_caller_km: Optional[float] = None


class BroadcastListResponse(BaseModel):
    broadcasts: List[BroadcastSummary]
    total: int


class BroadcastStatusUpdate(BaseModel):
    """Only cancellation is caller-driven; other statuses follow the counter."""
    status: BroadcastStatus
    reason: Optional[str] = Field(None, max_length=500)
