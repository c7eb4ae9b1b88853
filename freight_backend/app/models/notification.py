"""
Notification Database Model.

In-app inbox row, written alongside every offer, alert and notice so a
user whose device missed the live push still finds it on next fetch.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Enum
from freight_backend.app.db.session import Base
from freight_backend.app.models.dispatch_enums import NotificationPriority
import enum


class NotificationType(str, enum.Enum):
    NEW_BROADCAST = "NEW_BROADCAST"
    ASSIGNMENT_OFFER = "ASSIGNMENT_OFFER"
    BROADCAST_CLOSED = "BROADCAST_CLOSED"
    SLOT_UNFULFILLED = "SLOT_UNFULFILLED"
    DRIVER_RESPONSE = "DRIVER_RESPONSE"
    TRIP_UPDATE = "TRIP_UPDATE"
    INFO = "INFO"


class Notification(Base):
    """
    In-App Notification.
    Stores messages for customers, transporters and drivers.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, nullable=False, index=True)

    # Content
    type = Column(Enum(NotificationType, native_enum=False, length=32), default=NotificationType.INFO, nullable=False)
    priority = Column(Enum(NotificationPriority, native_enum=False, length=32), default=NotificationPriority.NORMAL, nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_payload = Column(JSON, nullable=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, title='{self.title}')>"
