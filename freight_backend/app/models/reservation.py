"""
Reservation database model.

A transporter's committed claim on part of a broadcast's capacity.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, Enum, JSON
from freight_backend.app.db.session import Base
from freight_backend.app.models.dispatch_enums import ReservationStatus


class Reservation(Base):
    """
    Reservation model.

    ``trucks_held`` is the number of units currently counted in the parent
    broadcast's ``trucks_filled``; the sum over non-RELEASED reservations
    always equals that counter.
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    broadcast_id = Column(Integer, ForeignKey("broadcasts.id"), nullable=False, index=True)
    transporter_id = Column(Integer, nullable=False, index=True)

    trucks_requested = Column(Integer, nullable=False)
    trucks_held = Column(Integer, nullable=False)
    trucks_confirmed = Column(Integer, default=0, nullable=False)

    # Ordered driver candidates supplied with the claim (alternates for retargeting)
    candidate_driver_ids = Column(JSON, nullable=False, default=list)

    status = Column(Enum(ReservationStatus, native_enum=False, length=32), default=ReservationStatus.PENDING, nullable=False, index=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def derive_status(self) -> ReservationStatus:
        """Status implied by the current counts."""
        if self.trucks_held <= 0:
            return ReservationStatus.RELEASED
        if self.trucks_held < self.trucks_requested:
            return ReservationStatus.PARTIALLY_RELEASED
        if self.trucks_confirmed >= self.trucks_requested:
            return ReservationStatus.CONFIRMED
        return ReservationStatus.PENDING

    def __repr__(self):
        return (
            f"<Reservation(id={self.id}, broadcast_id={self.broadcast_id}, "
            f"held={self.trucks_held}/{self.trucks_requested}, status='{self.status.value}')>"
        )
