"""
Notification API Endpoints.

In-app inbox backing every push: offers, new-load alerts and slot notices.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from freight_backend.app.core.dependencies import get_current_user, get_session
from freight_backend.app.services.notification_service import NotificationService
from freight_backend.app.schemas.notification import NotificationList, NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationList)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """List current user's notifications."""
    notifications = await NotificationService.list_for_user(
        db, current_user["user_id"], unread_only=unread_only, limit=limit
    )
    unread = await NotificationService.unread_count(db, current_user["user_id"])
    return NotificationList(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread=unread,
    )


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Mark a specific notification as read."""
    success = await NotificationService.mark_read(db, notification_id, current_user["user_id"])
    if not success:
        raise HTTPException(status_code=404, detail="Notification not found")

    await db.commit()
    return {"status": "success"}
