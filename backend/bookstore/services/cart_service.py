import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from bookstore.core.collections import Collections
from bookstore.core.config import Settings, settings as default_settings
from bookstore.core.exceptions import ConflictError, ConnectivityError, NotFoundError, ValidationError
from bookstore.core.store import DocumentStore
from bookstore.models.book import BookSnapshot
from bookstore.models.cart import CartItem, CartItemStatus
from bookstore.services.cache import UserCache
from bookstore.services.catalog_service import CatalogService
from bookstore.services.enrichment import EnrichmentEngine, build_book_snapshot
from bookstore.services.event_bus import CartSynced, EventBus, EventSource, ItemAdded, ItemRemoved, ItemUpdated
from bookstore.services.offline_queue import ConnectivityMonitor, OfflineQueue, QueuedOperation
from bookstore.utils.helpers import as_utc, get_current_timestamp

logger = logging.getLogger(__name__)

OFFLINE_TARGET = "cart"

EDITABLE_FIELDS = {"quantity", "notes", "priority", "shared_with"}


def generate_session_id(now: datetime) -> str:
    return f"session_{int(now.timestamp())}_{secrets.token_hex(5)}"


def generate_device_id(now: datetime) -> str:
    return f"device_{int(now.timestamp())}_{secrets.token_hex(5)}"


class CartService:
    """Service for cart operations."""

    def __init__(
        self,
        store: DocumentStore,
        catalog: CatalogService,
        events: EventBus,
        offline: OfflineQueue,
        connectivity: ConnectivityMonitor,
        clock: Callable[[], datetime] = get_current_timestamp,
        settings: Settings = default_settings
    ):
        self.store = store
        self.catalog = catalog
        self.engine = EnrichmentEngine(catalog)
        self.events = events
        self.offline = offline
        self.connectivity = connectivity
        self.clock = clock
        self.settings = settings
        self.cache = UserCache("cart", settings.CART_CACHE_TTL_SECONDS, clock)

    def _expiry_for(self, user_id: str, now: datetime) -> datetime:
        if user_id.startswith(self.settings.GUEST_USER_PREFIX):
            return now + timedelta(days=self.settings.CART_GUEST_EXPIRY_DAYS)
        return now + timedelta(days=self.settings.CART_SESSION_EXPIRY_DAYS)

    # Reading

    async def get_enhanced_cart_items(self, user_id: str) -> List[CartItem]:
        """
        Active (not saved-for-later) cart items, newest first, enriched with
        the catalog's current price and stock.

        Items whose book ran out of stock stay in the cart with status
        ``out_of_stock``. Cached per user; falls back to the last known local
        copy when the store is unreachable.
        """
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        try:
            documents = await self.store.query(
                Collections.CART,
                [("user_id", "==", user_id), ("saved_for_later", "==", False)],
                order_by=("created_at", "desc")
            )
            items = [await self._refresh_item(CartItem(**document)) for document in documents]
        except ConnectivityError:
            self.connectivity.mark_offline()
            return self.get_offline_cart(user_id)

        self.cache.set(user_id, items)
        self._save_offline_cart(user_id, items)
        return items

    async def _refresh_item(self, item: CartItem) -> CartItem:
        enriched = await self.engine.enrich_cart_item(item)
        if enriched.enrichment_error:
            return enriched

        if enriched.status != item.status or enriched.current_price != item.current_price:
            try:
                await self.store.update(
                    Collections.CART,
                    item.id,
                    {
                        "status": CartItemStatus(enriched.status).value,
                        "current_price": enriched.current_price,
                        "book_data": enriched.book_data.model_dump()
                    },
                    expected_version=item.version
                )
                enriched.version = item.version + 1
            except ConflictError as e:
                logger.info(f"Skipping cart item {item.id}, modified concurrently: {e.detail}")
        return enriched

    async def get_cart_item(self, item_id: str, user_id: Optional[str] = None) -> CartItem:
        """Fetch a cart item. When ``user_id`` is given, items owned by anyone else are not found."""
        document = await self.store.get(Collections.CART, item_id)
        if not document or (user_id is not None and document.get("user_id") != user_id):
            raise NotFoundError("Item not found in cart")
        return CartItem(**document)

    async def get_saved_items(self, user_id: str) -> List[CartItem]:
        documents = await self.store.query(
            Collections.CART,
            [("user_id", "==", user_id), ("saved_for_later", "==", True)],
            order_by=("saved_at", "desc")
        )
        return [await self.engine.enrich_cart_item(CartItem(**document)) for document in documents]

    async def get_cart_with_details(self, user_id: str) -> Dict[str, Any]:
        """Enriched cart with totals over the items that can be ordered."""
        items = await self.get_enhanced_cart_items(user_id)
        orderable = [
            item for item in items
            if item.status not in (CartItemStatus.OUT_OF_STOCK, CartItemStatus.EXPIRED)
        ]
        return {
            "items": items,
            "total_amount": sum(item.subtotal for item in orderable),
            "total_items": sum(item.quantity for item in orderable),
            "has_price_changes": any(item.price_changed for item in items),
            "has_unavailable_items": len(orderable) != len(items),
        }

    # Mutations

    async def add_to_cart(
        self,
        user_id: str,
        book_id: str,
        quantity: int = 1,
        options: Optional[Dict[str, Any]] = None
    ) -> CartItem:
        """
        Add a book to the cart. Re-adding a book already in the cart
        increases its quantity instead of creating a second line.
        """
        try:
            return await self._add_to_cart(user_id, book_id, quantity, options or {})
        except ConnectivityError:
            self.connectivity.mark_offline()
            return self._add_to_offline_cart(user_id, book_id, quantity, options or {})

    async def update_cart_item(
        self,
        item_id: str,
        updates: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> Optional[CartItem]:
        """Update a cart item. A quantity of zero or less removes it and returns None."""
        try:
            return await self._update_cart_item(item_id, updates, user_id)
        except ConnectivityError:
            self.connectivity.mark_offline()
            if not user_id:
                raise
            return self._update_offline_cart(user_id, item_id, updates)

    async def remove_from_cart(self, item_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            return await self._remove_from_cart(item_id, user_id)
        except ConnectivityError:
            self.connectivity.mark_offline()
            if not user_id:
                raise
            return self._remove_from_offline_cart(user_id, item_id)

    async def _add_to_cart(
        self,
        user_id: str,
        book_id: str,
        quantity: int,
        options: Dict[str, Any]
    ) -> CartItem:
        max_quantity = self.settings.CART_MAX_QUANTITY_PER_ITEM
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if quantity > max_quantity:
            raise ValidationError(f"Maximum quantity per item is {max_quantity}")

        book = await self.catalog.get_book_by_id(book_id)
        if not book.is_available:
            raise ValidationError("Book is currently unavailable")
        if book.stock < quantity:
            raise ValidationError(f"Insufficient stock. Available: {book.stock}")

        now = self.clock()
        existing = await self._find_active(user_id, book_id)
        if existing:
            new_quantity = existing.quantity + quantity
            if new_quantity > max_quantity:
                raise ValidationError(f"Maximum quantity per item is {max_quantity}")
            if book.stock < new_quantity:
                raise ValidationError(
                    f"Insufficient stock. Available: {book.stock}, in cart: {existing.quantity}"
                )
            await self.store.update(Collections.CART, existing.id, {
                "quantity": new_quantity,
                "current_price": book.price,
                "updated_at": now,
                "last_accessed_at": now
            })
            item = existing.model_copy(update={
                "quantity": new_quantity,
                "current_price": book.price,
                "updated_at": now,
                "last_accessed_at": now,
                "version": existing.version + 1
            })
            self.cache.invalidate(user_id)
            self.events.publish(ItemUpdated(
                source=EventSource.CART,
                item_id=item.id,
                user_id=user_id,
                book_id=book_id,
                updates={"quantity": new_quantity}
            ))
            return item

        active = await self.store.query(
            Collections.CART,
            [("user_id", "==", user_id), ("saved_for_later", "==", False)]
        )
        if len(active) >= self.settings.CART_MAX_ITEMS:
            raise ValidationError(f"Cart cannot hold more than {self.settings.CART_MAX_ITEMS} items")

        try:
            item = CartItem(
                user_id=user_id,
                book_id=book_id,
                quantity=quantity,
                price_at_add=book.price,
                current_price=book.price,
                book_data=build_book_snapshot(book),
                session_id=options.get("session_id") or generate_session_id(now),
                device_id=options.get("device_id") or generate_device_id(now),
                notes=options.get("notes") or "",
                priority=options.get("priority") or 1,
                created_at=now,
                updated_at=now,
                last_accessed_at=now,
                expires_at=self._expiry_for(user_id, now)
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid cart item: {e.errors()[0]['msg']}")

        item.id = await self.store.create(Collections.CART, item.to_document())
        self.cache.invalidate(user_id)
        self.events.publish(ItemAdded(
            source=EventSource.CART,
            user_id=user_id,
            book_id=book_id,
            item_id=item.id,
            quantity=quantity
        ))
        logger.info(f"Added {quantity} x book {book_id} to cart of user {user_id}")
        return item

    async def _update_cart_item(
        self,
        item_id: str,
        updates: Dict[str, Any],
        user_id: Optional[str] = None
    ) -> Optional[CartItem]:
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        current = await self.get_cart_item(item_id, user_id)
        if "quantity" in updates:
            quantity = updates["quantity"]
            if quantity <= 0:
                await self._remove_from_cart(item_id, user_id)
                return None
            if quantity > self.settings.CART_MAX_QUANTITY_PER_ITEM:
                raise ValidationError(
                    f"Maximum quantity per item is {self.settings.CART_MAX_QUANTITY_PER_ITEM}"
                )
            book = await self.catalog.get_book_by_id(current.book_id)
            if book.stock < quantity:
                raise ValidationError(f"Insufficient stock. Available: {book.stock}")

        now = self.clock()
        fields = {**updates, "updated_at": now, "last_accessed_at": now}
        try:
            item = CartItem(**{**current.model_dump(), **fields})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid cart update: {e.errors()[0]['msg']}")

        await self.store.update(Collections.CART, item_id, fields)
        item.version = current.version + 1
        self.cache.invalidate(current.user_id)
        self.events.publish(ItemUpdated(
            source=EventSource.CART,
            item_id=item_id,
            user_id=current.user_id,
            book_id=current.book_id,
            updates=updates
        ))
        return item

    async def _remove_from_cart(self, item_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        item = await self.get_cart_item(item_id, user_id)
        await self.store.delete(Collections.CART, item_id)
        self.cache.invalidate(item.user_id)
        self.events.publish(ItemRemoved(
            source=EventSource.CART,
            item_id=item_id,
            user_id=item.user_id,
            book_id=item.book_id
        ))
        return {"success": True}

    async def clear_cart(self, user_id: str) -> int:
        """Remove every active item from the user's cart. Saved items are kept."""
        documents = await self.store.query(
            Collections.CART,
            [("user_id", "==", user_id), ("saved_for_later", "==", False)]
        )
        for document in documents:
            await self._remove_from_cart(document["_id"])
        return len(documents)

    async def _find_active(self, user_id: str, book_id: str) -> Optional[CartItem]:
        documents = await self.store.query(
            Collections.CART,
            [("user_id", "==", user_id), ("book_id", "==", book_id), ("saved_for_later", "==", False)],
            limit=1
        )
        return CartItem(**documents[0]) if documents else None

    # Saved for later

    async def save_for_later(self, item_id: str, user_id: Optional[str] = None) -> CartItem:
        item = await self.get_cart_item(item_id, user_id)
        if item.saved_for_later:
            return item

        saved = await self.store.query(
            Collections.CART,
            [("user_id", "==", item.user_id), ("saved_for_later", "==", True)]
        )
        if len(saved) >= self.settings.CART_MAX_SAVED_ITEMS:
            raise ValidationError(
                f"Cannot save more than {self.settings.CART_MAX_SAVED_ITEMS} items for later"
            )

        now = self.clock()
        fields = {
            "saved_for_later": True,
            "saved_at": now,
            "status": CartItemStatus.SAVED_FOR_LATER.value,
            "updated_at": now
        }
        await self.store.update(Collections.CART, item_id, fields)
        self.cache.invalidate(item.user_id)
        self.events.publish(ItemUpdated(
            source=EventSource.CART,
            item_id=item_id,
            user_id=item.user_id,
            book_id=item.book_id,
            updates={"saved_for_later": True}
        ))
        return item.model_copy(update={**fields, "version": item.version + 1})

    async def move_to_cart(self, item_id: str, user_id: Optional[str] = None) -> CartItem:
        """
        Move a saved item back into the cart. If the same book is already in
        the cart the quantities are merged into that line.

        The book must be available with enough stock for the moved quantity,
        and a new line counts against the cart size limit.
        """
        item = await self.get_cart_item(item_id, user_id)
        if not item.saved_for_later:
            return item

        book = await self.catalog.get_book_by_id(item.book_id)
        if not book.is_available:
            raise ValidationError("Book is currently unavailable")

        existing = await self._find_active(item.user_id, item.book_id)
        if existing:
            merged = await self._update_cart_item(
                existing.id,
                {"quantity": existing.quantity + item.quantity},
                item.user_id
            )
            await self._remove_from_cart(item_id, item.user_id)
            return merged

        if book.stock < item.quantity:
            raise ValidationError(f"Insufficient stock. Available: {book.stock}")
        active = await self.store.query(
            Collections.CART,
            [("user_id", "==", item.user_id), ("saved_for_later", "==", False)]
        )
        if len(active) >= self.settings.CART_MAX_ITEMS:
            raise ValidationError(f"Cart cannot hold more than {self.settings.CART_MAX_ITEMS} items")

        now = self.clock()
        fields = {
            "saved_for_later": False,
            "saved_at": None,
            "status": CartItemStatus.ACTIVE.value,
            "current_price": book.price,
            "updated_at": now,
            "last_accessed_at": now,
            "expires_at": self._expiry_for(item.user_id, now)
        }
        await self.store.update(Collections.CART, item_id, fields)
        self.cache.invalidate(item.user_id)
        self.events.publish(ItemUpdated(
            source=EventSource.CART,
            item_id=item_id,
            user_id=item.user_id,
            book_id=item.book_id,
            updates={"saved_for_later": False}
        ))
        return item.model_copy(update={**fields, "version": item.version + 1})

    # Sharing

    async def generate_share_token(self, user_id: str) -> str:
        token = f"cart_{secrets.token_urlsafe(12)}"
        now = self.clock()
        documents = await self.store.query(Collections.CART_META, [("user_id", "==", user_id)], limit=1)
        fields = {"share_token": token, "is_shared": True, "shared_at": now}
        if documents:
            await self.store.update(Collections.CART_META, documents[0]["_id"], fields)
        else:
            await self.store.create(Collections.CART_META, {"user_id": user_id, **fields})
        logger.info(f"Generated cart share token for user {user_id}")
        return token

    async def get_shared_cart(self, share_token: str) -> Dict[str, Any]:
        documents = await self.store.query(
            Collections.CART_META,
            [("share_token", "==", share_token), ("is_shared", "==", True)],
            limit=1
        )
        if not documents:
            raise NotFoundError("Shared cart not found")
        owner_id = documents[0]["user_id"]
        details = await self.get_cart_with_details(owner_id)
        details["shared_at"] = documents[0].get("shared_at")
        return details

    # Maintenance

    async def cleanup_expired_items(self) -> int:
        """Delete cart items past their expiry. Returns the number removed."""
        now = self.clock()
        documents = await self.store.query(Collections.CART, [("expires_at", "<", now)])
        removed = 0
        for document in documents:
            expires_at = document.get("expires_at")
            if expires_at is None or as_utc(expires_at) >= now:
                continue
            await self.store.delete(Collections.CART, document["_id"])
            self.cache.invalidate(document["user_id"])
            removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} expired cart items")
        return removed

    # Subscriptions

    async def subscribe_to_cart(
        self,
        user_id: str,
        callback: Callable[[List[CartItem]], Any]
    ) -> Callable[[], None]:
        """Push the enriched active cart to ``callback`` on every change."""
        async def on_snapshot(documents: List[dict]) -> None:
            items = [await self.engine.enrich_cart_item(CartItem(**document)) for document in documents]
            callback(items)

        return await self.store.subscribe(
            Collections.CART,
            [("user_id", "==", user_id), ("saved_for_later", "==", False)],
            on_snapshot,
            order_by=("created_at", "desc")
        )

    # Offline support

    def get_offline_cart(self, user_id: str) -> List[CartItem]:
        return [
            CartItem(**document)
            for document in self.offline.get_local_documents(user_id, OFFLINE_TARGET)
        ]

    def _save_offline_cart(self, user_id: str, items: List[CartItem]) -> None:
        self.offline.save_local_documents(
            user_id,
            OFFLINE_TARGET,
            [item.model_dump(mode="json", by_alias=True) for item in items]
        )

    def _queue(self, user_id: str, action: str, payload: Dict[str, Any]) -> None:
        self.offline.enqueue(QueuedOperation(
            user_id=user_id,
            target=OFFLINE_TARGET,
            action=action,
            payload=payload
        ))
        self.cache.invalidate(user_id)

    def _add_to_offline_cart(
        self,
        user_id: str,
        book_id: str,
        quantity: int,
        options: Dict[str, Any]
    ) -> CartItem:
        max_quantity = self.settings.CART_MAX_QUANTITY_PER_ITEM
        items = self.get_offline_cart(user_id)
        for index, existing in enumerate(items):
            if existing.book_id == book_id:
                new_quantity = existing.quantity + quantity
                if new_quantity > max_quantity:
                    raise ValidationError(f"Maximum quantity per item is {max_quantity}")
                items[index] = existing.model_copy(update={"quantity": new_quantity, "offline": True})
                break
        else:
            if quantity < 1 or quantity > max_quantity:
                raise ValidationError(f"Maximum quantity per item is {max_quantity}")
            now = self.clock()
            items.insert(0, CartItem(
                _id=f"offline_{secrets.token_hex(6)}",
                user_id=user_id,
                book_id=book_id,
                quantity=quantity,
                price_at_add=0,
                current_price=0,
                book_data=BookSnapshot(),
                created_at=now,
                updated_at=now,
                last_accessed_at=now,
                expires_at=self._expiry_for(user_id, now),
                offline=True
            ))
            index = 0

        self._save_offline_cart(user_id, items)
        self._queue(user_id, "add", {"book_id": book_id, "quantity": quantity, "options": options})
        return items[index]

    def _update_offline_cart(self, user_id: str, item_id: str, updates: Dict[str, Any]) -> Optional[CartItem]:
        items = self.get_offline_cart(user_id)
        for index, item in enumerate(items):
            if item.id != item_id:
                continue
            if updates.get("quantity") is not None and updates["quantity"] <= 0:
                del items[index]
                self._save_offline_cart(user_id, items)
                self._queue(user_id, "remove", {"item_id": item_id})
                return None
            try:
                items[index] = CartItem(**{**item.model_dump(), **updates, "offline": True})
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid cart update: {e.errors()[0]['msg']}")
            self._save_offline_cart(user_id, items)
            self._queue(user_id, "update", {"item_id": item_id, "updates": updates})
            return items[index]
        raise NotFoundError("Item not found in cart")

    def _remove_from_offline_cart(self, user_id: str, item_id: str) -> Dict[str, Any]:
        items = [item for item in self.get_offline_cart(user_id) if item.id != item_id]
        self._save_offline_cart(user_id, items)
        self._queue(user_id, "remove", {"item_id": item_id})
        return {"success": True, "offline": True}

    async def sync_offline_changes(self) -> Dict[str, int]:
        """Replay queued cart mutations for every user and announce each sync on the bus."""
        replayed = 0
        failed = 0
        for user_id in self.offline.users_with_pending(OFFLINE_TARGET):
            ok, errors = await self.offline.replay(user_id, OFFLINE_TARGET, self._replay_operation)
            replayed += ok
            failed += errors
            self.cache.invalidate(user_id)
            self.events.publish(CartSynced(
                source=EventSource.CART,
                user_id=user_id,
                replayed=ok,
                failed=errors
            ))
        return {"replayed": replayed, "failed": failed}

    async def _replay_operation(self, operation: QueuedOperation) -> None:
        payload = operation.payload
        if operation.action == "add":
            await self._add_to_cart(
                operation.user_id,
                payload["book_id"],
                payload.get("quantity", 1),
                payload.get("options") or {}
            )
        elif operation.action == "update":
            await self._update_cart_item(payload["item_id"], payload["updates"], operation.user_id)
        elif operation.action == "remove":
            await self._remove_from_cart(payload["item_id"], operation.user_id)
        else:
            raise ValidationError(f"Unknown offline cart action: {operation.action}")
