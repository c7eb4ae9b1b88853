"""
Notification Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any, List
from freight_backend.app.models.notification import NotificationType
from freight_backend.app.models.dispatch_enums import NotificationPriority


class NotificationResponse(BaseModel):
    id: int
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    metadata_payload: Optional[Dict[str, Any]]
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime]

    class Config:
        from_attributes = True


class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    unread: int
