"""
Notification service: template-driven notification creation, read state,
counts, stats, preferences and live subscriptions.
"""
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from bookstore.core.collections import Collections
from bookstore.core.config import Settings, settings as default_settings
from bookstore.core.exceptions import NotFoundError, ValidationError
from bookstore.core.store import DocumentStore
from bookstore.models.book import BookSnapshot
from bookstore.models.notification import (
    DEFAULT_NOTIFICATION_PREFERENCES,
    Notification,
    NotificationCategory,
    NotificationPriority,
    NotificationSource,
    NotificationType,
    get_template,
    render_template,
)
from bookstore.models.wishlist import WishlistNotificationType
from bookstore.utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)

WISHLIST_CATEGORIES = {
    WishlistNotificationType.PRICE_DROP: NotificationCategory.WISHLIST_PRICE_DROP,
    WishlistNotificationType.BACK_IN_STOCK: NotificationCategory.WISHLIST_AVAILABLE,
    WishlistNotificationType.TARGET_PRICE_REACHED: NotificationCategory.WISHLIST_TARGET_PRICE,
}


class NotificationService:
    """Creates and manages user notifications."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = get_current_timestamp,
        settings: Settings = default_settings
    ):
        self.store = store
        self.clock = clock
        self.settings = settings

    # Creation

    async def create_notification(self, data: Dict[str, Any]) -> Notification:
        """Validate and persist a notification. Subscribers are pushed the new state."""
        payload = {k: v for k, v in data.items() if k not in ("id", "_id", "read", "read_at")}
        payload.setdefault("created_at", self.clock())
        try:
            notification = Notification(**payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid notification: {e.errors()[0]['msg']}")

        notification.id = await self.store.create(Collections.NOTIFICATIONS, notification.to_document())
        logger.info(
            f"Created {notification.type} notification {notification.id} for user {notification.user_id}"
        )
        return notification

    async def create_from_template(
        self,
        user_id: str,
        notification_type: NotificationType,
        category: NotificationCategory,
        context: Dict[str, Any],
        data: Optional[Dict[str, Any]] = None,
        priority: Optional[NotificationPriority] = None,
        action_url: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        source: NotificationSource = NotificationSource.SYSTEM
    ) -> Notification:
        """Render the (type, category) template with ``context`` and persist it."""
        template = get_template(notification_type, category)
        if template is None:
            raise ValidationError(f"Notification template not found: {notification_type}/{category}")

        return await self.create_notification({
            "user_id": user_id,
            "type": notification_type,
            "category": category,
            "title": render_template(template.title, context),
            "message": render_template(template.message, context),
            "priority": priority or template.priority,
            "action_text": template.action_text,
            "action_url": action_url,
            "expires_at": expires_at,
            "source": source,
            "data": data if data is not None else dict(context),
        })

    async def emit(
        self,
        user_id: str,
        book_data: BookSnapshot,
        kind: WishlistNotificationType,
        context: Dict[str, Any],
        priority: Optional[NotificationPriority] = None
    ) -> Notification:
        """
        Turn a detected wishlist transition into a persisted notification.

        No deduplication is done here; callers emit once per transition.
        """
        category = WISHLIST_CATEGORIES.get(WishlistNotificationType(kind))
        if category is None:
            raise ValidationError(f"Wishlist notification kind not supported: {kind}")

        template_context = {"book_title": book_data.title, "author_name": book_data.author_name}
        template_context.update(context)
        book_id = context.get("book_id")

        return await self.create_from_template(
            user_id,
            NotificationType.WISHLIST,
            category,
            template_context,
            data={**template_context, "kind": WishlistNotificationType(kind).value},
            priority=priority,
            action_url=f"/books/{book_id}" if book_id else None
        )

    async def create_wishlist_notification(
        self,
        user_id: str,
        book_data: BookSnapshot,
        kind: WishlistNotificationType,
        context: Dict[str, Any]
    ) -> Notification:
        return await self.emit(user_id, book_data, kind, context)

    async def create_order_notification(
        self,
        user_id: str,
        order: Dict[str, Any],
        category: NotificationCategory
    ) -> Notification:
        """Order status notification for a customer."""
        if get_template(NotificationType.ORDER, category) is None:
            raise ValidationError(f"Order notification template not found: {category}")

        order_id = str(order.get("id") or order.get("_id") or "")
        order_number = order.get("order_number") or order_id[:8].upper()
        return await self.create_from_template(
            user_id,
            NotificationType.ORDER,
            category,
            {"order_number": order_number},
            data={
                "order_id": order_id,
                "order_number": order_number,
                "total_amount": order.get("total_amount"),
                "status": order.get("status"),
            },
            action_url=f"/orders/{order_id}" if order_id else None
        )

    async def create_stock_notification(
        self,
        user_id: str,
        book: Dict[str, Any],
        category: NotificationCategory
    ) -> Notification:
        """Stock alert for an administrator."""
        if get_template(NotificationType.LOW_STOCK, category) is None:
            raise ValidationError(f"Stock notification template not found: {category}")

        return await self.create_from_template(
            user_id,
            NotificationType.LOW_STOCK,
            category,
            {"book_title": book.get("title", ""), "stock": book.get("stock", 0)},
            data={
                "book_id": book.get("id"),
                "book_title": book.get("title"),
                "current_stock": book.get("stock"),
                "threshold": book.get("low_stock_threshold"),
            },
            action_url=f"/admin/inventory/{book.get('id')}" if book.get("id") else None
        )

    async def create_bulk_notifications(
        self,
        user_ids: List[str],
        data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Send the same notification to many users (admin action)."""
        if not user_ids:
            raise ValidationError("User IDs array is required")
        limit = self.settings.BULK_NOTIFICATION_LIMIT
        if len(user_ids) > limit:
            raise ValidationError(f"Bulk notification limit is {limit} users")

        notification_ids = []
        failed = []
        for user_id in user_ids:
            try:
                notification = await self.create_notification({**data, "user_id": user_id})
                notification_ids.append(notification.id)
            except Exception as e:
                logger.error(f"Bulk notification failed for user {user_id}: {e}")
                failed.append(user_id)

        return {
            "success": not failed,
            "notification_ids": notification_ids,
            "failed_user_ids": failed,
            "summary": {
                "total": len(user_ids),
                "successful": len(notification_ids),
                "failed": len(failed),
            },
        }

    # Reading

    async def get_notification(self, notification_id: str) -> Notification:
        document = await self.store.get(Collections.NOTIFICATIONS, notification_id)
        if not document:
            raise NotFoundError(f"Notification not found: {notification_id}")
        return Notification(**document)

    async def get_user_notifications(
        self,
        user_id: str,
        limit: Optional[int] = None,
        unread_only: bool = False,
        notification_type: Optional[NotificationType] = None,
        before: Optional[datetime] = None,
        before_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Newest-first page of a user's notifications.

        Pages are ordered by (``created_at``, id), both descending. The
        cursor is the ``created_at`` and id of the last notification of the
        previous page (``next_cursor`` and ``next_cursor_id``). Without
        ``before_id`` every notification created at ``before`` is skipped.
        """
        page_size = limit or self.settings.NOTIFICATION_PAGE_SIZE
        filters = [("user_id", "==", user_id)]
        if unread_only:
            filters.append(("read", "==", False))
        if notification_type:
            filters.append(("type", "==", NotificationType(notification_type).value))

        documents = []
        if before and before_id:
            ties = await self.store.query(
                Collections.NOTIFICATIONS,
                filters + [("created_at", "==", before)]
            )
            documents.extend(d for d in ties if d["_id"] < before_id)
        older = filters + [("created_at", "<", before)] if before else filters
        page = await self.store.query(
            Collections.NOTIFICATIONS,
            older,
            order_by=("created_at", "desc"),
            limit=page_size + 1
        )
        documents.extend(page)
        if page:
            # the limit can cut through notifications sharing the boundary timestamp
            seen = {d["_id"] for d in documents}
            boundary = await self.store.query(
                Collections.NOTIFICATIONS,
                filters + [("created_at", "==", page[-1]["created_at"])]
            )
            documents.extend(d for d in boundary if d["_id"] not in seen)

        notifications = sorted(
            (Notification(**document) for document in documents),
            key=lambda n: (n.created_at, n.id),
            reverse=True
        )
        has_more = len(notifications) > page_size
        notifications = notifications[:page_size]
        last = notifications[-1] if has_more else None
        return {
            "notifications": notifications,
            "has_more": has_more,
            "next_cursor": last.created_at if last else None,
            "next_cursor_id": last.id if last else None,
        }

    async def get_unread_count(self, user_id: str) -> int:
        """Number of unread notifications; 0 if the store cannot be read."""
        try:
            documents = await self.store.query(
                Collections.NOTIFICATIONS,
                [("user_id", "==", user_id), ("read", "==", False)]
            )
        except Exception as e:
            logger.error(f"Error getting unread count for user {user_id}: {e}")
            return 0
        return len(documents)

    async def get_notification_stats(self, user_id: str) -> Dict[str, Any]:
        documents = await self.store.query(Collections.NOTIFICATIONS, [("user_id", "==", user_id)])
        stats: Dict[str, Any] = {
            "total": len(documents),
            "read": 0,
            "unread": 0,
            "by_type": {},
            "by_priority": {},
            "by_category": {},
        }
        for document in documents:
            if document.get("read"):
                stats["read"] += 1
            else:
                stats["unread"] += 1
            for key, field in (("by_type", "type"), ("by_priority", "priority"), ("by_category", "category")):
                value = document.get(field)
                if value:
                    stats[key][value] = stats[key].get(value, 0) + 1
        return stats

    # Read state and deletion

    async def mark_as_read(self, notification_id: str) -> Dict[str, Any]:
        await self.store.update(
            Collections.NOTIFICATIONS,
            notification_id,
            {"read": True, "read_at": self.clock()}
        )
        return {"success": True}

    async def mark_as_unread(self, notification_id: str) -> Dict[str, Any]:
        await self.store.update(
            Collections.NOTIFICATIONS,
            notification_id,
            {"read": False, "read_at": None}
        )
        return {"success": True}

    async def mark_all_as_read(self, user_id: str) -> int:
        documents = await self.store.query(
            Collections.NOTIFICATIONS,
            [("user_id", "==", user_id), ("read", "==", False)]
        )
        now = self.clock()
        for document in documents:
            await self.store.update(
                Collections.NOTIFICATIONS,
                document["_id"],
                {"read": True, "read_at": now}
            )
        logger.info(f"Marked {len(documents)} notifications as read for user {user_id}")
        return len(documents)

    async def delete_notification(self, notification_id: str) -> Dict[str, Any]:
        await self.store.delete(Collections.NOTIFICATIONS, notification_id)
        return {"success": True}

    async def delete_notifications(self, notification_ids: List[str]) -> int:
        """Admin bulk delete."""
        for notification_id in notification_ids:
            await self.store.delete(Collections.NOTIFICATIONS, notification_id)
        return len(notification_ids)

    # Live subscriptions

    async def subscribe_to_unread_count(
        self,
        user_id: str,
        callback: Callable[[int], Any]
    ) -> Callable[[], None]:
        return await self.store.subscribe(
            Collections.NOTIFICATIONS,
            [("user_id", "==", user_id), ("read", "==", False)],
            lambda documents: callback(len(documents))
        )

    async def subscribe_to_user_notifications(
        self,
        user_id: str,
        callback: Callable[[List[Notification]], Any]
    ) -> Callable[[], None]:
        return await self.store.subscribe(
            Collections.NOTIFICATIONS,
            [("user_id", "==", user_id)],
            lambda documents: callback([Notification(**document) for document in documents]),
            order_by=("created_at", "desc")
        )

    # Preferences

    def get_default_preferences(self) -> Dict[str, Dict[str, bool]]:
        return copy.deepcopy(DEFAULT_NOTIFICATION_PREFERENCES)

    async def get_user_preferences(self, user_id: str) -> Dict[str, Dict[str, bool]]:
        documents = await self.store.query(
            Collections.NOTIFICATION_PREFERENCES,
            [("user_id", "==", user_id)],
            limit=1
        )
        if not documents:
            return self.get_default_preferences()
        return documents[0].get("preferences") or self.get_default_preferences()

    async def update_user_preferences(
        self,
        user_id: str,
        preferences: Dict[str, Dict[str, bool]]
    ) -> Dict[str, Dict[str, bool]]:
        """Merge ``preferences`` section by section into the stored preferences."""
        documents = await self.store.query(
            Collections.NOTIFICATION_PREFERENCES,
            [("user_id", "==", user_id)],
            limit=1
        )
        merged = documents[0].get("preferences") if documents else self.get_default_preferences()
        for section, values in preferences.items():
            merged.setdefault(section, {}).update(values)

        if documents:
            await self.store.update(
                Collections.NOTIFICATION_PREFERENCES,
                documents[0]["_id"],
                {"preferences": merged, "updated_at": self.clock()}
            )
        else:
            await self.store.create(
                Collections.NOTIFICATION_PREFERENCES,
                {"user_id": user_id, "preferences": merged, "updated_at": self.clock()}
            )
        return merged
