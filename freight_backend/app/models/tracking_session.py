"""
Tracking Session database model.

Live-position record of one accepted trip. Created exactly once per accepted
driver assignment.
"""

from sqlalchemy import Column, Integer, Float, Boolean, ForeignKey, DateTime, Enum
from freight_backend.app.db.session import Base
from freight_backend.app.models.dispatch_enums import TripState


class TrackingSession(Base):
    """
    Tracking session model.

    ``last_*`` columns mirror the newest accepted fix; ``trusted_*`` columns
    hold the newest fix that passed plausibility checks, used as the
    reference for the next one.
    """
    __tablename__ = "tracking_sessions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # References
    assignment_id = Column(Integer, ForeignKey("driver_assignments.id"), nullable=False, unique=True)
    broadcast_id = Column(Integer, ForeignKey("broadcasts.id"), nullable=False, index=True)
    driver_id = Column(Integer, nullable=False, index=True)
    transporter_id = Column(Integer, nullable=False, index=True)
    customer_id = Column(Integer, nullable=False)

    trip_state = Column(Enum(TripState, native_enum=False, length=32), default=TripState.ASSIGNED, nullable=False, index=True)

    # Geofence targets, copied from the broadcast
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    drop_lat = Column(Float, nullable=False)
    drop_lng = Column(Float, nullable=False)

    # Newest accepted fix
    last_sequence = Column(Integer, default=0, nullable=False)
    last_lat = Column(Float, nullable=True)
    last_lng = Column(Float, nullable=True)
    last_speed_kmh = Column(Float, nullable=True)
    last_bearing = Column(Float, nullable=True)
    last_accuracy_meters = Column(Float, nullable=True)
    last_recorded_at = Column(DateTime, nullable=True)
    last_low_confidence = Column(Boolean, default=False, nullable=False)

    # Newest plausible fix
    trusted_lat = Column(Float, nullable=True)
    trusted_lng = Column(Float, nullable=True)
    trusted_recorded_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<TrackingSession(id={self.id}, driver_id={self.driver_id}, state='{self.trip_state.value}')>"
