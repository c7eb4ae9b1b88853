"""
Claim, reservation and driver assignment schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from freight_backend.app.models.dispatch_enums import (
    AssignmentStatus,
    DriverDecision,
    ReservationStatus,
)


class ClaimRequest(BaseModel):
    """Schema for a transporter claiming trucks on a broadcast."""
    trucks: int = Field(..., ge=1, le=100)
    candidate_driver_ids: List[int] = Field(default_factory=list, description="Ordered; extras become alternates")


class DriverAssignmentResponse(BaseModel):
    id: int
    reservation_id: int
    broadcast_id: int
    slot_index: int
    driver_id: Optional[int]
    status: AssignmentStatus
    retarget_count: int
    replaces_assignment_id: Optional[int]
    notified_at: Optional[datetime]
    response_deadline_at: Optional[datetime]
    responded_at: Optional[datetime]
    decline_reason: Optional[str]

    class Config:
        from_attributes = True


class ReservationResponse(BaseModel):
    id: int
    broadcast_id: int
    transporter_id: int
    trucks_requested: int
    trucks_held: int
    trucks_confirmed: int
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime
    assignments: List[DriverAssignmentResponse] = []

    class Config:
        from_attributes = True


class AssignDriverRequest(BaseModel):
    """Bind a driver to a deferred assignment slot."""
    driver_id: int


class RespondRequest(BaseModel):
    """Driver's answer to an assignment offer."""
    decision: DriverDecision
    reason: Optional[str] = Field(None, max_length=500)


class RespondResponse(BaseModel):
    assignment_id: int
    status: AssignmentStatus
    duplicate: bool = False
    tracking_session_id: Optional[int] = None


class DriverAssignmentList(BaseModel):
    assignments: List[DriverAssignmentResponse]
    total: int
