"""
Audit Log Database Model.

Tracks dispatch decisions and admin interventions for dispute resolution
and integrity monitoring.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from freight_backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for dispatch events.

    Events logged:
    - BROADCAST_CREATED / BROADCAST_CANCELLED / BROADCAST_EXPIRED
    - TRUCKS_CLAIMED / DRIVER_ASSIGNED / ASSIGNMENT_RETARGETED
    - DRIVER_ACCEPTED / DRIVER_DECLINED / ASSIGNMENT_TIMED_OUT
    - TRIP_STATE_CHANGED
    - BROADCAST_QUARANTINED / BROADCAST_RECONCILED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions such as sweeps and timers)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_role = Column(String(32), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False, index=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
