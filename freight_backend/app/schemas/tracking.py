"""
Live tracking schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from freight_backend.app.models.dispatch_enums import TripState, VehicleClass


class PositionReport(BaseModel):
    """Schema for one GPS fix from the driver app."""
    sequence: int = Field(..., ge=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed_kmh: Optional[float] = Field(None, ge=0)
    bearing: Optional[float] = Field(None, ge=0, lt=360)
    accuracy_meters: Optional[float] = Field(None, gt=0)
    recorded_at: Optional[datetime] = None


class IngestResponse(BaseModel):
    """Outcome of a position report. OUT_OF_ORDER fixes are dropped, not errors."""
    session_id: int
    sequence: int
    result: str  # ACCEPTED, OUT_OF_ORDER
    low_confidence: bool = False
    trip_state: TripState


class TripStateUpdate(BaseModel):
    state: TripState
    reason: Optional[str] = Field(None, max_length=500)


class LastPosition(BaseModel):
    latitude: float
    longitude: float
    speed_kmh: Optional[float]
    bearing: Optional[float]
    accuracy_meters: Optional[float]
    recorded_at: datetime
    low_confidence: bool
    sequence: int


class LiveStatusResponse(BaseModel):
    session_id: int
    assignment_id: int
    broadcast_id: int
    driver_id: int
    trip_state: TripState
    position: Optional[LastPosition] = None
    updated_at: datetime


class FleetStatusResponse(BaseModel):
    transporter_id: int
    sessions: List[LiveStatusResponse]
    total: int


class TrackingPositionResponse(BaseModel):
    id: int
    sequence: int
    latitude: float
    longitude: float
    speed_kmh: Optional[float]
    bearing: Optional[float]
    accuracy_meters: Optional[float]
    low_confidence: bool
    recorded_at: datetime

    class Config:
        from_attributes = True


class SupplyLocationUpdate(BaseModel):
    """Transporter presence for new-broadcast alerts."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    vehicle_classes: List[VehicleClass] = Field(..., min_length=1)
