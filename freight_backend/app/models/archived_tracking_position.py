"""
Archived Tracking Position model.

Cold storage for position logs of trips that ended past the retention window.
"""

from sqlalchemy import Column, Integer, Float, Boolean, DateTime
from freight_backend.app.db.session import Base


class ArchivedTrackingPosition(Base):
    """
    Archived tracking position.
    Same structure as TrackingPosition but designed for cold storage.
    """
    __tablename__ = "archived_tracking_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    original_id = Column(Integer, nullable=False)
    session_id = Column(Integer, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed_kmh = Column(Float, nullable=True)
    accuracy_meters = Column(Float, nullable=True)
    low_confidence = Column(Boolean, default=False, nullable=False)

    recorded_at = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=False)
