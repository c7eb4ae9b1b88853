"""
Admin Operations API Endpoints.

Endpoints for dispatch reliability and maintenance: expiry sweeps,
counter integrity, delivery dead letters and archival.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from freight_backend.app.core.dependencies import get_dispatch_core, get_session
from freight_backend.app.core.guards import require_admin, require_role
from freight_backend.app.models.dlq import DLQStatus
from freight_backend.app.models.enums import UserRole
from freight_backend.app.schemas.admin import (
    ArchivalResponse,
    AuditLogResponse,
    AuditTrailResponse,
    DLQItem,
    IntegrityReport,
    ReconcileResponse,
    SweepResponse,
)
from freight_backend.app.services.audit import get_audit_trail

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """Expire overdue broadcasts and time out overdue offers now."""
    return await core.sweep()


@router.get("/broadcasts/{broadcast_id}/integrity", response_model=IntegrityReport)
async def check_broadcast_integrity(
    broadcast_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """
    Compare the truck counter with the reservations behind it.
    A mismatch quarantines the broadcast.
    """
    return await core.registry.check_integrity(broadcast_id)


@router.post("/broadcasts/{broadcast_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_broadcast(
    broadcast_id: int = Path(...),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """Rebuild the counter from reservations and lift the quarantine."""
    return await core.registry.reconcile(broadcast_id, actor_id=current_user["user_id"])


@router.get("/dlq", response_model=List[DLQItem])
async def list_dlq_items(
    status: Optional[DLQStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    return await core.dispatcher.list_dead_letters(status=status, limit=limit)


@router.post("/dlq/{dlq_id}/retry", response_model=DLQItem)
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """
    Retry a failed offer delivery from the Dead Letter Queue.
    Offers no longer awaiting a response are archived instead.
    """
    return await core.dispatcher.retry_dead_letter(dlq_id)


@router.post("/trigger-archival", response_model=ArchivalResponse)
async def trigger_data_archival(
    days_to_keep: Optional[int] = Query(None, ge=0),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    core=Depends(get_dispatch_core),
):
    """
    Move finished trips' position logs and old terminal broadcasts from the
    hot tables to the archive tables.
    """
    return await core.archive(days_to_keep)


@router.get("/audit-logs", response_model=AuditTrailResponse)
async def get_audit_logs(
    entity_type: Optional[str] = Query(None, description="Filter by entity type, e.g. broadcast"),
    entity_id: Optional[int] = Query(None, description="Filter by entity ID"),
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(100, ge=1, le=500, description="Maximum records to return"),
    admin: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """
    Get audit trail with optional filtering (admin-only).

    Claims, driver responses, quarantines and reconciliations, newest first.
    """
    logs = await get_audit_trail(
        db=db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        limit=limit,
    )

    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )
