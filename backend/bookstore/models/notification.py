from datetime import datetime
from typing import Any, ClassVar, Dict, Optional
from enum import Enum
from pydantic import BaseModel, Field

from bookstore.utils.helpers import get_current_timestamp


class NotificationType(str, Enum):
    """Notification type enumeration."""
    ORDER = "order"
    WISHLIST = "wishlist"
    PROMOTION = "promotion"
    SYSTEM = "system"
    LOW_STOCK = "low_stock"
    INVENTORY = "inventory"
    USER_ACTION = "user_action"


class NotificationPriority(str, Enum):
    """Notification priority enumeration."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationCategory(str, Enum):
    """Fine-grained template key."""
    ORDER_CREATED = "order_created"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    STOCK_LOW = "stock_low"
    STOCK_OUT = "stock_out"
    STOCK_RESTOCKED = "stock_restocked"
    WISHLIST_AVAILABLE = "wishlist_available"
    WISHLIST_PRICE_DROP = "wishlist_price_drop"
    WISHLIST_TARGET_PRICE = "wishlist_target_price"
    PROMOTION_NEW = "promotion_new"
    SYSTEM_MAINTENANCE = "system_maintenance"
    SYSTEM_UPDATE = "system_update"
    USER_WELCOME = "user_welcome"
    USER_VERIFICATION = "user_verification"


class NotificationSource(str, Enum):
    """Where a notification originated."""
    SYSTEM = "system"
    ADMIN = "admin"
    TELEGRAM = "telegram"
    EMAIL = "email"


class Notification(BaseModel):
    """
    Notification model for the notifications collection.

    Immutable once created except for the read/read_at transition.
    """
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    read_at: Optional[datetime] = None
    priority: NotificationPriority = NotificationPriority.MEDIUM
    category: Optional[NotificationCategory] = None
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    expires_at: Optional[datetime] = None
    source: NotificationSource = NotificationSource.SYSTEM
    created_at: datetime = Field(default_factory=get_current_timestamp)

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "type": "wishlist",
                "title": "Price dropped!",
                "message": "The price of 'O'tkan kunlar' dropped from 45000 to 38000 so'm",
                "priority": "high",
                "category": "wishlist_price_drop",
                "action_text": "Buy now",
                "source": "system"
            }
        }

    TRANSIENT_FIELDS: ClassVar[set] = {"id"}

    def to_document(self) -> dict:
        return self.model_dump(exclude=self.TRANSIENT_FIELDS, mode="python")


class NotificationTemplate(BaseModel):
    """Title/message skeleton with ``{placeholder}`` tokens."""
    title: str
    message: str
    priority: NotificationPriority
    action_text: Optional[str] = None

    class Config:
        use_enum_values = True
        validate_default = True


# Templates keyed by (type, category)
NOTIFICATION_TEMPLATES: Dict[NotificationType, Dict[NotificationCategory, NotificationTemplate]] = {
    NotificationType.ORDER: {
        NotificationCategory.ORDER_CREATED: NotificationTemplate(
            title="New order created",
            message="Your order #{order_number} was created successfully",
            priority=NotificationPriority.HIGH,
            action_text="View order"
        ),
        NotificationCategory.ORDER_CONFIRMED: NotificationTemplate(
            title="Order confirmed",
            message="Your order #{order_number} was confirmed and is being prepared",
            priority=NotificationPriority.HIGH,
            action_text="Track order"
        ),
        NotificationCategory.ORDER_SHIPPED: NotificationTemplate(
            title="Order shipped",
            message="Your order #{order_number} was shipped and is on its way",
            priority=NotificationPriority.HIGH,
            action_text="Track delivery"
        ),
        NotificationCategory.ORDER_DELIVERED: NotificationTemplate(
            title="Order delivered",
            message="Your order #{order_number} was delivered",
            priority=NotificationPriority.MEDIUM,
            action_text="Leave a review"
        ),
        NotificationCategory.ORDER_CANCELLED: NotificationTemplate(
            title="Order cancelled",
            message="Your order #{order_number} was cancelled",
            priority=NotificationPriority.HIGH,
            action_text="Details"
        ),
    },
    NotificationType.LOW_STOCK: {
        NotificationCategory.STOCK_LOW: NotificationTemplate(
            title="Stock running low",
            message="Only {stock} copies of '{book_title}' are left",
            priority=NotificationPriority.MEDIUM,
            action_text="Restock"
        ),
        NotificationCategory.STOCK_OUT: NotificationTemplate(
            title="Out of stock",
            message="'{book_title}' is out of stock",
            priority=NotificationPriority.HIGH,
            action_text="Restock"
        ),
        NotificationCategory.STOCK_RESTOCKED: NotificationTemplate(
            title="Restocked",
            message="'{book_title}' has been restocked",
            priority=NotificationPriority.LOW,
            action_text="View book"
        ),
    },
    NotificationType.WISHLIST: {
        NotificationCategory.WISHLIST_AVAILABLE: NotificationTemplate(
            title="Your wishlist book is available",
            message="'{book_title}' is back in stock",
            priority=NotificationPriority.MEDIUM,
            action_text="Buy now"
        ),
        NotificationCategory.WISHLIST_PRICE_DROP: NotificationTemplate(
            title="Price dropped!",
            message="The price of '{book_title}' dropped from {old_price} to {new_price} so'm",
            priority=NotificationPriority.HIGH,
            action_text="Buy now"
        ),
        NotificationCategory.WISHLIST_TARGET_PRICE: NotificationTemplate(
            title="Target price reached",
            message="'{book_title}' now costs {current_price} so'm, at or below your target of {target_price} so'm",
            priority=NotificationPriority.HIGH,
            action_text="Buy now"
        ),
    },
    NotificationType.PROMOTION: {
        NotificationCategory.PROMOTION_NEW: NotificationTemplate(
            title="New promotion",
            message="{promotion_title}",
            priority=NotificationPriority.LOW,
            action_text="See offer"
        ),
    },
    NotificationType.SYSTEM: {
        NotificationCategory.SYSTEM_MAINTENANCE: NotificationTemplate(
            title="Scheduled maintenance",
            message="The store will be unavailable from {start_time} to {end_time}",
            priority=NotificationPriority.MEDIUM
        ),
        NotificationCategory.SYSTEM_UPDATE: NotificationTemplate(
            title="System update",
            message="{update_message}",
            priority=NotificationPriority.LOW
        ),
    },
    NotificationType.USER_ACTION: {
        NotificationCategory.USER_WELCOME: NotificationTemplate(
            title="Welcome!",
            message="Welcome to the bookstore, {user_name}",
            priority=NotificationPriority.LOW,
            action_text="Start browsing"
        ),
        NotificationCategory.USER_VERIFICATION: NotificationTemplate(
            title="Verify your account",
            message="Please verify your account, {user_name}",
            priority=NotificationPriority.MEDIUM,
            action_text="Verify"
        ),
    },
}


def get_template(
    notification_type: NotificationType,
    category: NotificationCategory
) -> Optional[NotificationTemplate]:
    """Look up a template by (type, category)."""
    return NOTIFICATION_TEMPLATES.get(notification_type, {}).get(category)


def render_template(text: str, context: Dict[str, Any]) -> str:
    """
    Replace ``{name}`` tokens with the matching context value.

    Plain find-and-replace: tokens without a context value stay as written.
    """
    for key, value in context.items():
        text = text.replace("{" + key + "}", _format_value(value))
    return text


def _format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


DEFAULT_NOTIFICATION_PREFERENCES: Dict[str, Dict[str, bool]] = {
    "orders": {
        "created": True,
        "confirmed": True,
        "shipped": True,
        "delivered": True,
        "cancelled": True
    },
    "wishlist": {
        "available": True,
        "price_drops": True,
        "target_price": True
    },
    "promotions": {
        "new_books": False,
        "discounts": False,
        "events": False
    },
    "system": {
        "maintenance": True,
        "updates": False
    },
    "channels": {
        "in_app": True,
        "email": False,
        "telegram": False
    }
}
