"""
Driver Assignment database model.

One truck slot of a reservation bound to one driver. Declined and timed-out
rows are never reused; a replacement is a new row.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, Index
from freight_backend.app.db.session import Base
from freight_backend.app.models.dispatch_enums import AssignmentStatus


class DriverAssignment(Base):
    """Driver assignment model."""
    __tablename__ = "driver_assignments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # References
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id"), nullable=False, index=True)
    transporter_id = Column(Integer, nullable=False)
    slot_index = Column(Integer, nullable=False)

    # Driver binding (NULL while the transporter has not picked a driver)
    driver_id = Column(Integer, nullable=True, index=True)

    status = Column(Enum(AssignmentStatus, native_enum=False, length=32), default=AssignmentStatus.PENDING_NOTIFY, nullable=False)

    # Reassignment chain
    retarget_count = Column(Integer, default=0, nullable=False)
    replaces_assignment_id = Column(Integer, ForeignKey("driver_assignments.id"), nullable=True)

    # Delivery bookkeeping
    delivery_channel = Column(String(50), nullable=True)
    delivery_attempts = Column(Integer, default=0, nullable=False)

    # Timing
    created_at = Column(DateTime, nullable=False)
    notified_at = Column(DateTime, nullable=True)
    response_deadline_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    decline_reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_driver_assignments_status_deadline", "status", "response_deadline_at"),
    )

    def __repr__(self):
        return f"<DriverAssignment(id={self.id}, driver_id={self.driver_id}, status='{self.status.value}')>"
