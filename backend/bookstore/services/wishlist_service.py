"""
Wishlist service: CRUD, enrichment with the catalog, price monitoring and
offline fallback for wishlist items.
"""
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from bookstore.core.collections import Collections
from bookstore.core.config import Settings, settings as default_settings
from bookstore.core.exceptions import ConflictError, ConnectivityError, NotFoundError, ValidationError
from bookstore.core.store import DocumentStore
from bookstore.models.book import BookSnapshot
from bookstore.models.wishlist import (
    PriceHistoryEntry,
    WishlistItem,
    WishlistItemStatus,
    WishlistNotificationSettings,
    WishlistNotificationType,
)
from bookstore.services.cache import UserCache
from bookstore.services.catalog_service import CatalogService
from bookstore.services.change_detector import TransitionKind
from bookstore.services.enrichment import (
    EnrichmentEngine,
    WishlistEnrichment,
    append_price_history,
    build_book_snapshot,
)
from bookstore.services.event_bus import (
    BackInStock,
    EventBus,
    EventSource,
    ItemAdded,
    ItemRemoved,
    ItemUpdated,
    PriceChanged,
)
from bookstore.services.notification_service import NotificationService
from bookstore.services.offline_queue import ConnectivityMonitor, OfflineQueue, QueuedOperation
from bookstore.utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)

OFFLINE_TARGET = "wishlist"

EDITABLE_FIELDS = {"priority", "notes", "tags", "target_price", "notifications", "is_public", "shared_with"}


class WishlistService:
    """Service for wishlist operations."""

    def __init__(
        self,
        store: DocumentStore,
        catalog: CatalogService,
        notifications: NotificationService,
        events: EventBus,
        offline: OfflineQueue,
        connectivity: ConnectivityMonitor,
        clock: Callable[[], datetime] = get_current_timestamp,
        settings: Settings = default_settings
    ):
        self.store = store
        self.catalog = catalog
        self.engine = EnrichmentEngine(catalog)
        self.notifications = notifications
        self.events = events
        self.offline = offline
        self.connectivity = connectivity
        self.clock = clock
        self.settings = settings
        self.cache = UserCache("wishlist", settings.WISHLIST_CACHE_TTL_SECONDS, clock)

    # Reading

    async def get_enhanced_wishlist_items(self, user_id: str) -> List[WishlistItem]:
        """
        The user's wishlist, newest first, with book data refreshed from the catalog.

        Cached per user; falls back to the last known local copy when the
        store is unreachable.
        """
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        try:
            documents = await self.store.query(
                Collections.WISHLIST,
                [("user_id", "==", user_id)],
                order_by=("created_at", "desc")
            )
            items = []
            for document in documents:
                items.append(await self._process_item(WishlistItem(**document)))
        except ConnectivityError:
            self.connectivity.mark_offline()
            return self.get_offline_wishlist(user_id)

        self.cache.set(user_id, items)
        self.offline.save_local_documents(
            user_id,
            OFFLINE_TARGET,
            [item.model_dump(mode="json", by_alias=True) for item in items]
        )
        return items

    async def get_wishlist_item(self, item_id: str, user_id: Optional[str] = None) -> WishlistItem:
        document = await self.store.get(Collections.WISHLIST, item_id)
        if not document or (user_id is not None and document.get("user_id") != user_id):
            raise NotFoundError("Wishlist item not found")
        return WishlistItem(**document)

    async def is_in_wishlist(self, user_id: str, book_id: str) -> bool:
        return await self._find(user_id, book_id) is not None

    # Mutations

    async def add_to_wishlist(
        self,
        user_id: str,
        book_id: str,
        options: Optional[Dict[str, Any]] = None
    ) -> WishlistItem:
        """Add a book to the wishlist. Fails with ValidationError if it is already there."""
        try:
            return await self._add_to_wishlist(user_id, book_id, options or {})
        except ConnectivityError:
            self.connectivity.mark_offline()
            return self._add_to_offline_wishlist(user_id, book_id, options or {})

    async def update_wishlist_item(
        self,
        item_id: str,
        updates: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> WishlistItem:
        """Apply user edits (priority, notes, tags, target price, preferences, sharing)."""
        try:
            return await self._update_wishlist_item(item_id, updates, user_id)
        except ConnectivityError:
            self.connectivity.mark_offline()
            if not user_id:
                raise
            return self._update_offline_wishlist(user_id, item_id, updates)

    async def remove_from_wishlist(self, user_id: str, book_id: str) -> Dict[str, Any]:
        try:
            return await self._remove_from_wishlist(user_id, book_id)
        except ConnectivityError:
            self.connectivity.mark_offline()
            return self._remove_from_offline_wishlist(user_id, book_id)

    async def _add_to_wishlist(self, user_id: str, book_id: str, options: Dict[str, Any]) -> WishlistItem:
        if await self._find(user_id, book_id):
            raise ValidationError("Book is already in the wishlist")

        self._validate_edits(options)
        book = await self.catalog.get_book_by_id(book_id)
        now = self.clock()

        try:
            item = WishlistItem(
                user_id=user_id,
                book_id=book_id,
                book_data=build_book_snapshot(book),
                priority=options.get("priority") or 3,
                notes=options.get("notes") or "",
                tags=options.get("tags") or [],
                notifications=WishlistNotificationSettings(**(options.get("notifications") or {})),
                price_history=[PriceHistoryEntry(price=book.price, date=now, source="initial")],
                target_price=options.get("target_price"),
                is_public=options.get("is_public", False),
                shared_with=options.get("shared_with") or [],
                created_at=now,
                updated_at=now,
                last_checked_at=now
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid wishlist item: {e.errors()[0]['msg']}")

        item.id = await self.store.create(Collections.WISHLIST, item.to_document())
        self.cache.invalidate(user_id)
        self.events.publish(ItemAdded(
            source=EventSource.WISHLIST,
            user_id=user_id,
            book_id=book_id,
            item_id=item.id
        ))
        await self.catalog.update_wishlist_count(book_id, 1)
        logger.info(f"Added book {book_id} to wishlist of user {user_id}")
        return item

    async def _update_wishlist_item(
        self,
        item_id: str,
        updates: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> WishlistItem:
        current = await self.get_wishlist_item(item_id, user_id)
        self._validate_edits(updates)

        try:
            merged = WishlistItem(**{**current.model_dump(), **updates, "updated_at": self.clock()})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid wishlist update: {e.errors()[0]['msg']}")

        fields = {key: getattr(merged, key) for key in updates}
        fields = {
            key: value.model_dump() if hasattr(value, "model_dump") else value
            for key, value in fields.items()
        }
        fields["updated_at"] = merged.updated_at
        await self.store.update(Collections.WISHLIST, item_id, fields)
        merged.version = current.version + 1

        self.cache.invalidate(current.user_id)
        self.events.publish(ItemUpdated(
            source=EventSource.WISHLIST,
            item_id=item_id,
            user_id=current.user_id,
            book_id=current.book_id,
            updates=updates
        ))
        return merged

    async def _remove_from_wishlist(self, user_id: str, book_id: str) -> Dict[str, Any]:
        existing = await self._find(user_id, book_id)
        if existing:
            await self.store.delete(Collections.WISHLIST, existing.id)
            self.cache.invalidate(user_id)
            self.events.publish(ItemRemoved(
                source=EventSource.WISHLIST,
                item_id=existing.id,
                user_id=user_id,
                book_id=book_id
            ))
            await self.catalog.update_wishlist_count(book_id, -1)
            logger.info(f"Removed book {book_id} from wishlist of user {user_id}")
        return {"success": True}

    async def _find(self, user_id: str, book_id: str) -> Optional[WishlistItem]:
        documents = await self.store.query(
            Collections.WISHLIST,
            [("user_id", "==", user_id), ("book_id", "==", book_id)],
            limit=1
        )
        return WishlistItem(**documents[0]) if documents else None

    def _validate_edits(self, updates: Dict[str, Any]) -> None:
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        notes = updates.get("notes") or ""
        if len(notes) > self.settings.WISHLIST_MAX_NOTES_LENGTH:
            raise ValidationError(
                f"Notes must be at most {self.settings.WISHLIST_MAX_NOTES_LENGTH} characters"
            )
        tags = updates.get("tags") or []
        if len(tags) > self.settings.WISHLIST_MAX_TAGS_PER_ITEM:
            raise ValidationError(f"At most {self.settings.WISHLIST_MAX_TAGS_PER_ITEM} tags per item")
        if any(len(tag) > self.settings.WISHLIST_MAX_TAG_LENGTH for tag in tags):
            raise ValidationError(f"Tags must be at most {self.settings.WISHLIST_MAX_TAG_LENGTH} characters")

    # Monitoring

    async def check_item_price(self, item: WishlistItem) -> WishlistItem:
        """Re-check one item against the catalog and notify on transitions."""
        return await self._process_item(item, touch=True)

    async def check_all_prices(self) -> Dict[str, int]:
        """
        Sweep every wishlist item that wants price-drop notifications.

        Items are processed one at a time; a failing item is logged and
        left for the next sweep.
        """
        logger.info("Checking wishlist prices...")
        documents = await self.store.query(
            Collections.WISHLIST,
            [("notifications.price_drops", "==", True)]
        )

        checked = 0
        failed = 0
        for document in documents:
            try:
                item = await self.check_item_price(WishlistItem(**document))
                if item.enrichment_error:
                    failed += 1
                else:
                    checked += 1
            except Exception as e:
                failed += 1
                logger.exception(f"Error checking price for wishlist item {document.get('_id')}: {e}")

        logger.info(f"Checked prices for {checked} wishlist items ({failed} failed)")
        return {"checked": checked, "failed": failed}

    async def _process_item(self, item: WishlistItem, touch: bool = False) -> WishlistItem:
        """
        Enrich one item, persist a changed snapshot and emit its transitions.

        The snapshot write is a versioned compare-and-swap, so when the
        monitor and a user read race on the same change only the winner
        records history and notifies.
        """
        result = await self.engine.enrich_wishlist_item(item)
        enriched = result.item
        if result.failed:
            return enriched

        changed = result.price_changed or bool(result.transitions) or enriched.book_data != item.book_data
        if not changed and not touch:
            return enriched

        now = self.clock()
        fields: Dict[str, Any] = {"last_checked_at": now}
        if changed:
            fields["book_data"] = enriched.book_data.model_dump()
            fields["status"] = WishlistItemStatus(enriched.status).value
        if result.price_changed:
            enriched.price_history = append_price_history(
                item.price_history,
                enriched.book_data.price,
                now,
                source="monitoring",
                limit=self.settings.PRICE_HISTORY_LIMIT
            )
            fields["price_history"] = [entry.model_dump() for entry in enriched.price_history]

        try:
            await self.store.update(Collections.WISHLIST, item.id, fields, expected_version=item.version)
        except ConflictError as e:
            logger.info(f"Skipping wishlist item {item.id}, modified concurrently: {e.detail}")
            return enriched

        enriched.version = item.version + 1
        enriched.last_checked_at = now
        if changed:
            self.cache.invalidate(item.user_id)
            await self._dispatch_transitions(enriched, result)
        return enriched

    async def _dispatch_transitions(self, item: WishlistItem, result: WishlistEnrichment) -> None:
        notified = False
        for transition in result.transitions:
            kind = None
            context: Dict[str, Any] = {"book_id": item.book_id}

            if transition.kind == TransitionKind.PRICE_DROP and item.notifications.price_drops:
                kind = WishlistNotificationType.PRICE_DROP
                context.update(
                    old_price=transition.old_price,
                    new_price=transition.new_price,
                    discount_amount=transition.discount_amount,
                    discount_percentage=transition.discount_percentage
                )
            elif transition.kind == TransitionKind.TARGET_PRICE_REACHED:
                kind = WishlistNotificationType.TARGET_PRICE_REACHED
                context.update(target_price=transition.target_price, current_price=transition.new_price)
            elif transition.kind == TransitionKind.BACK_IN_STOCK:
                self.events.publish(BackInStock(
                    source=EventSource.WISHLIST,
                    item_id=item.id,
                    book_id=item.book_id,
                    user_id=item.user_id,
                    stock=item.book_data.stock
                ))
                if item.notifications.back_in_stock:
                    kind = WishlistNotificationType.BACK_IN_STOCK
                    context.update(stock=item.book_data.stock)

            if kind is None:
                continue
            try:
                await self.notifications.emit(item.user_id, item.book_data, kind, context)
                notified = True
            except Exception as e:
                logger.error(f"Error sending {kind.value} notification for wishlist item {item.id}: {e}")

        if result.price_changed:
            self.events.publish(PriceChanged(
                source=EventSource.WISHLIST,
                item_id=item.id,
                book_id=item.book_id,
                old_price=result.previous.price,
                new_price=item.book_data.price
            ))

        if notified:
            item.notified_at = self.clock()
            try:
                await self.store.update(Collections.WISHLIST, item.id, {"notified_at": item.notified_at})
                item.version += 1
            except (NotFoundError, ConnectivityError) as e:
                logger.error(f"Error recording notification time for wishlist item {item.id}: {e.detail}")

    # Subscriptions

    async def subscribe_to_wishlist(
        self,
        user_id: str,
        callback: Callable[[List[WishlistItem]], Any]
    ) -> Callable[[], None]:
        """Push the enriched wishlist to ``callback`` on every change."""
        async def on_snapshot(documents: List[dict]) -> None:
            items = []
            for document in documents:
                result = await self.engine.enrich_wishlist_item(WishlistItem(**document))
                items.append(result.item)
            callback(items)

        return await self.store.subscribe(
            Collections.WISHLIST,
            [("user_id", "==", user_id)],
            on_snapshot,
            order_by=("created_at", "desc")
        )

    # Offline support

    def get_offline_wishlist(self, user_id: str) -> List[WishlistItem]:
        return [
            WishlistItem(**document)
            for document in self.offline.get_local_documents(user_id, OFFLINE_TARGET)
        ]

    def _save_offline_wishlist(self, user_id: str, items: List[WishlistItem]) -> None:
        self.offline.save_local_documents(
            user_id,
            OFFLINE_TARGET,
            [item.model_dump(mode="json", by_alias=True) for item in items]
        )

    def _add_to_offline_wishlist(self, user_id: str, book_id: str, options: Dict[str, Any]) -> WishlistItem:
        items = self.get_offline_wishlist(user_id)
        if any(item.book_id == book_id for item in items):
            raise ValidationError("Book is already in the wishlist")
        self._validate_edits(options)

        now = self.clock()
        item = WishlistItem(
            _id=f"offline_{secrets.token_hex(6)}",
            user_id=user_id,
            book_id=book_id,
            book_data=BookSnapshot(),
            priority=options.get("priority") or 3,
            notes=options.get("notes") or "",
            tags=options.get("tags") or [],
            target_price=options.get("target_price"),
            created_at=now,
            updated_at=now,
            offline=True
        )
        items.insert(0, item)
        self._save_offline_wishlist(user_id, items)
        self.offline.enqueue(QueuedOperation(
            user_id=user_id,
            target=OFFLINE_TARGET,
            action="add",
            payload={"book_id": book_id, "options": options}
        ))
        self.cache.invalidate(user_id)
        return item

    def _update_offline_wishlist(self, user_id: str, item_id: str, updates: Dict[str, Any]) -> WishlistItem:
        self._validate_edits(updates)
        items = self.get_offline_wishlist(user_id)
        for index, item in enumerate(items):
            if item.id == item_id:
                items[index] = WishlistItem(**{**item.model_dump(), **updates, "updated_at": self.clock()})
                self._save_offline_wishlist(user_id, items)
                self.offline.enqueue(QueuedOperation(
                    user_id=user_id,
                    target=OFFLINE_TARGET,
                    action="update",
                    payload={"item_id": item_id, "updates": updates}
                ))
                self.cache.invalidate(user_id)
                return items[index]
        raise NotFoundError("Wishlist item not found")

    def _remove_from_offline_wishlist(self, user_id: str, book_id: str) -> Dict[str, Any]:
        items = [item for item in self.get_offline_wishlist(user_id) if item.book_id != book_id]
        self._save_offline_wishlist(user_id, items)
        self.offline.enqueue(QueuedOperation(
            user_id=user_id,
            target=OFFLINE_TARGET,
            action="remove",
            payload={"book_id": book_id}
        ))
        self.cache.invalidate(user_id)
        return {"success": True, "offline": True}

    async def sync_offline_changes(self) -> Dict[str, int]:
        """Replay queued wishlist mutations for every user, oldest first."""
        replayed = 0
        failed = 0
        for user_id in self.offline.users_with_pending(OFFLINE_TARGET):
            ok, errors = await self.offline.replay(user_id, OFFLINE_TARGET, self._replay_operation)
            replayed += ok
            failed += errors
            self.cache.invalidate(user_id)
        return {"replayed": replayed, "failed": failed}

    async def _replay_operation(self, operation: QueuedOperation) -> None:
        payload = operation.payload
        if operation.action == "add":
            await self._add_to_wishlist(operation.user_id, payload["book_id"], payload.get("options") or {})
        elif operation.action == "update":
            await self._update_wishlist_item(payload["item_id"], payload["updates"], operation.user_id)
        elif operation.action == "remove":
            await self._remove_from_wishlist(operation.user_id, payload["book_id"])
        else:
            raise ValidationError(f"Unknown offline wishlist action: {operation.action}")
