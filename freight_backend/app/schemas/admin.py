"""
Admin ops schema definitions.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List, Dict, Any
from freight_backend.app.models.dlq import DLQStatus


class SweepResponse(BaseModel):
    expired_broadcasts: List[int]
    timed_out_assignments: List[int]


class IntegrityReport(BaseModel):
    broadcast_id: int
    trucks_needed: int
    trucks_filled: int
    held_total: int
    healthy: bool
    is_quarantined: bool
    reason: Optional[str] = None


class ReconcileResponse(BaseModel):
    broadcast_id: int
    previous_filled: int
    trucks_filled: int
    status: str
    is_quarantined: bool


class DLQItem(BaseModel):
    id: int
    task_name: str
    error_message: str
    payload: Optional[Dict[str, Any]]
    status: DLQStatus
    retry_count: int
    created_at: datetime
    last_retry_at: Optional[datetime]

    class Config:
        from_attributes = True


class ArchivalResponse(BaseModel):
    status: str
    positions_archived: int
    broadcasts_archived: int


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    actor_role: Optional[str]
    action: str
    entity_type: str
    entity_id: int
    meta_data: Optional[dict]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    """Schema for audit trail list."""
    logs: List[AuditLogResponse]
    total: int
