from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from bookstore.models.notification import (
    NotificationCategory,
    NotificationPriority,
    NotificationSource,
    NotificationType,
)


class NotificationCreate(BaseModel):
    """Schema for creating a notification directly."""
    user_id: str
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    data: Dict[str, Any] = {}
    priority: NotificationPriority = NotificationPriority.MEDIUM
    category: Optional[NotificationCategory] = None
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    expires_at: Optional[datetime] = None
    source: NotificationSource = NotificationSource.SYSTEM


class BulkNotificationRequest(BaseModel):
    """Schema for sending the same notification to many users."""
    user_ids: List[str]
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    data: Dict[str, Any] = {}
    priority: NotificationPriority = NotificationPriority.MEDIUM
    category: Optional[NotificationCategory] = None
    action_url: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "user_ids": ["user1", "user2"],
                "type": "promotion",
                "title": "Weekend sale",
                "message": "20% off all classics this weekend"
            }
        }


class BulkNotificationResponse(BaseModel):
    success: bool
    notification_ids: List[str]
    failed_user_ids: List[str]
    summary: Dict[str, int]


class NotificationResponse(BaseModel):
    """Schema for notification response."""
    id: Optional[str] = None
    type: str
    title: str
    message: str
    data: Dict[str, Any] = {}
    read: bool
    read_at: Optional[datetime] = None
    priority: str
    category: Optional[str] = None
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    has_more: bool
    next_cursor: Optional[datetime] = None
    next_cursor_id: Optional[str] = None
    unread_count: int = 0


class NotificationStatsResponse(BaseModel):
    total: int
    read: int
    unread: int
    by_type: Dict[str, int]
    by_priority: Dict[str, int]
    by_category: Dict[str, int]


class UpdatePreferencesRequest(BaseModel):
    """Partial preferences; each section is merged into the stored one."""
    preferences: Dict[str, Dict[str, bool]]

    class Config:
        json_schema_extra = {
            "example": {
                "preferences": {
                    "wishlist": {"price_drops": False},
                    "channels": {"email": True}
                }
            }
        }
