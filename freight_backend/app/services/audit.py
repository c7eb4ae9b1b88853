"""
Audit logging service for dispatch decisions and admin interventions.

Entries join the caller's transaction: they are flushed here and committed
with the state change they describe, so an audit row never outlives a
rolled-back decision.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from freight_backend.app.core.clock import utcnow
from freight_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Broadcast lifecycle
    BROADCAST_CREATED = "BROADCAST_CREATED"
    BROADCAST_CANCELLED = "BROADCAST_CANCELLED"
    BROADCAST_EXPIRED = "BROADCAST_EXPIRED"

    # Allocation
    TRUCKS_CLAIMED = "TRUCKS_CLAIMED"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    ASSIGNMENT_RETARGETED = "ASSIGNMENT_RETARGETED"
    SLOT_RELEASED = "SLOT_RELEASED"

    # Driver responses
    DRIVER_ACCEPTED = "DRIVER_ACCEPTED"
    DRIVER_DECLINED = "DRIVER_DECLINED"
    ASSIGNMENT_TIMED_OUT = "ASSIGNMENT_TIMED_OUT"
    DELIVERY_FAILED = "DELIVERY_FAILED"

    # Live trip
    TRIP_STATE_CHANGED = "TRIP_STATE_CHANGED"

    # Integrity
    BROADCAST_QUARANTINED = "BROADCAST_QUARANTINED"
    BROADCAST_RECONCILED = "BROADCAST_RECONCILED"


async def log_event(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: int,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record a dispatch event in the audit log.

    Args:
        db: Database session (caller commits)
        action: Action being performed (use AuditAction constants)
        entity_type: Kind of record acted on, e.g. "broadcast"
        entity_id: ID of that record
        actor_id: ID of the caller, None for system actions
        actor_role: Role of the caller
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata,
        timestamp=utcnow(),
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
