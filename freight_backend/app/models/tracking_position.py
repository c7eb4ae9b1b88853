"""
Tracking Position database model.

Append-only GPS breadcrumb log keyed by (session_id, sequence).
"""

from sqlalchemy import Column, Integer, Float, Boolean, ForeignKey, DateTime, UniqueConstraint
from freight_backend.app.db.session import Base


class TrackingPosition(Base):
    """
    Tracking position model.

    Rows are inserted, never updated.
    """
    __tablename__ = "tracking_positions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    session_id = Column(Integer, ForeignKey("tracking_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    # GPS fix
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed_kmh = Column(Float, nullable=True)
    bearing = Column(Float, nullable=True)
    accuracy_meters = Column(Float, nullable=True)
    low_confidence = Column(Boolean, default=False, nullable=False)

    # Timing
    recorded_at = Column(DateTime, nullable=False)  # When GPS was recorded
    received_at = Column(DateTime, nullable=False)  # When ingested

    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_tracking_positions_session_sequence"),
    )

    def __repr__(self):
        return f"<TrackingPosition(session_id={self.session_id}, seq={self.sequence}, lat={self.latitude}, lng={self.longitude})>"
