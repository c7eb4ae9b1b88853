"""
Broadcast database model.

A customer's open request for N trucks of one vehicle class.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Enum, Text, Index, CheckConstraint
from freight_backend.app.db.session import Base
from freight_backend.app.models.dispatch_enums import BroadcastStatus, VehicleClass


class Broadcast(Base):
    """
    Broadcast model.

    ``trucks_filled`` is only ever changed through the registry's conditional
    updates; ``version`` increments on every counter mutation.
    """
    __tablename__ = "broadcasts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership - the customer who raised the demand
    customer_id = Column(Integer, nullable=False, index=True)

    # Pickup and drop points
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(500), nullable=True)
    drop_lat = Column(Float, nullable=False)
    drop_lng = Column(Float, nullable=False)
    drop_address = Column(String(500), nullable=True)

    # Load details
    vehicle_class = Column(Enum(VehicleClass, native_enum=False, length=32), nullable=False)
    goods_type = Column(String(100), nullable=True)
    weight = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)
    is_urgent = Column(Boolean, default=False, nullable=False)
    distance_km = Column(Float, nullable=False)
    fare_per_truck = Column(Float, nullable=False)

    # Fulfillment counter
    trucks_needed = Column(Integer, nullable=False)
    trucks_filled = Column(Integer, default=0, nullable=False)
    status = Column(Enum(BroadcastStatus, native_enum=False, length=32), default=BroadcastStatus.ACTIVE, nullable=False)
    version = Column(Integer, default=0, nullable=False)

    # Candidate lookup bucket (grid cell of the pickup point)
    geo_bucket = Column(String(32), nullable=False)

    # Integrity halt
    is_quarantined = Column(Boolean, default=False, nullable=False)
    quarantine_reason = Column(Text, nullable=True)

    # Lifecycle
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_broadcasts_status_expires_at", "status", "expires_at"),
        Index("ix_broadcasts_geo_bucket_class_status", "geo_bucket", "vehicle_class", "status"),
        CheckConstraint("trucks_needed >= 1", name="ck_broadcasts_trucks_needed_positive"),
    )

    @property
    def trucks_remaining(self) -> int:
        return self.trucks_needed - self.trucks_filled

    def __repr__(self):
        return (
            f"<Broadcast(id={self.id}, status='{self.status.value}', "
            f"filled={self.trucks_filled}/{self.trucks_needed})>"
        )
