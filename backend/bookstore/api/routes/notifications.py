from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from bookstore.api.deps import get_app_services, get_current_user_id
from bookstore.core.exceptions import NotFoundError
from bookstore.models.notification import NotificationType
from bookstore.schemas.notification import (
    BulkNotificationRequest,
    BulkNotificationResponse,
    NotificationCreate,
    NotificationListResponse,
    NotificationResponse,
    NotificationStatsResponse,
    UpdatePreferencesRequest,
)
from bookstore.services.container import Services

router = APIRouter()


async def _get_own_notification(services: Services, notification_id: str, user_id: str):
    notification = await services.notifications.get_notification(notification_id)
    if notification.user_id != user_id:
        raise NotFoundError(f"Notification not found: {notification_id}")
    return notification


@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    type: Optional[NotificationType] = None,
    before: Optional[datetime] = None,
    before_id: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Get the current user's notifications, newest first.

    Pass the returned ``next_cursor`` and ``next_cursor_id`` as ``before``
    and ``before_id`` to get the next page.
    """
    page = await services.notifications.get_user_notifications(
        user_id,
        limit=limit,
        unread_only=unread_only,
        notification_type=type,
        before=before,
        before_id=before_id
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in page["notifications"]],
        has_more=page["has_more"],
        next_cursor=page["next_cursor"],
        next_cursor_id=page["next_cursor_id"],
        unread_count=await services.notifications.get_unread_count(user_id)
    )


@router.get("/unread-count")
async def get_unread_count(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return {"unread_count": await services.notifications.get_unread_count(user_id)}


@router.get("/stats", response_model=NotificationStatsResponse)
async def get_notification_stats(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return await services.notifications.get_notification_stats(user_id)


@router.get("/preferences")
async def get_preferences(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return {"preferences": await services.notifications.get_user_preferences(user_id)}


@router.put("/preferences")
async def update_preferences(
    request: UpdatePreferencesRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Merge the given sections into the user's notification preferences."""
    preferences = await services.notifications.update_user_preferences(user_id, request.preferences)
    return {"preferences": preferences}


@router.post("/read-all")
async def mark_all_as_read(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return {"success": True, "count": await services.notifications.mark_all_as_read(user_id)}


@router.post("", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: NotificationCreate,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Create a notification for a user (admin action)."""
    notification = await services.notifications.create_notification(request.model_dump())
    return NotificationResponse.model_validate(notification)


@router.post("/bulk", response_model=BulkNotificationResponse)
async def create_bulk_notifications(
    request: BulkNotificationRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Send the same notification to up to 500 users (admin action).

    Failures for individual users are reported, not raised.
    """
    data = request.model_dump(exclude={"user_ids"})
    return await services.notifications.create_bulk_notifications(request.user_ids, data)


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    notification = await _get_own_notification(services, notification_id, user_id)
    return NotificationResponse.model_validate(notification)


@router.post("/{notification_id}/read")
async def mark_as_read(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    await _get_own_notification(services, notification_id, user_id)
    return await services.notifications.mark_as_read(notification_id)


@router.post("/{notification_id}/unread")
async def mark_as_unread(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    await _get_own_notification(services, notification_id, user_id)
    return await services.notifications.mark_as_unread(notification_id)


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    await _get_own_notification(services, notification_id, user_id)
    return await services.notifications.delete_notification(notification_id)
