"""
Archived Broadcast model.

Snapshot of a terminal broadcast with its reservations and assignments,
written when the retention window elapses and the live rows are removed.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from freight_backend.app.db.session import Base


class ArchivedBroadcast(Base):
    """Archived broadcast snapshot."""
    __tablename__ = "archived_broadcasts"

    id = Column(Integer, primary_key=True, autoincrement=True)

    original_id = Column(Integer, nullable=False, unique=True)
    customer_id = Column(Integer, nullable=False, index=True)
    final_status = Column(String(32), nullable=False)
    snapshot = Column(JSON, nullable=False)

    closed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=False)
