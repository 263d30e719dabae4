"""
In-process publish/subscribe for wishlist and cart events.

Events form a closed set of pydantic models, one per ``EventKind``. Delivery
is synchronous to every listener registered at publish time; there is no
buffering and no replay for late subscribers.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from bookstore.utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Event names published on the bus."""
    ITEM_ADDED = "item_added"
    ITEM_UPDATED = "item_updated"
    ITEM_REMOVED = "item_removed"
    PRICE_CHANGED = "price_changed"
    BACK_IN_STOCK = "back_in_stock"
    CART_SYNCED = "cart_synced"


class EventSource(str, Enum):
    WISHLIST = "wishlist"
    CART = "cart"


class BusEvent(BaseModel):
    """Base for all bus events."""
    kind: ClassVar[EventKind]
    source: EventSource
    occurred_at: datetime = Field(default_factory=get_current_timestamp)


class ItemAdded(BusEvent):
    kind: ClassVar[EventKind] = EventKind.ITEM_ADDED
    user_id: str
    book_id: str
    item_id: Optional[str] = None
    quantity: Optional[int] = None


class ItemUpdated(BusEvent):
    kind: ClassVar[EventKind] = EventKind.ITEM_UPDATED
    item_id: str
    user_id: Optional[str] = None
    book_id: Optional[str] = None
    updates: Dict[str, Any] = Field(default_factory=dict)


class ItemRemoved(BusEvent):
    kind: ClassVar[EventKind] = EventKind.ITEM_REMOVED
    item_id: str
    user_id: str
    book_id: str


class PriceChanged(BusEvent):
    kind: ClassVar[EventKind] = EventKind.PRICE_CHANGED
    item_id: str
    book_id: str
    old_price: Optional[float] = None
    new_price: float


class BackInStock(BusEvent):
    kind: ClassVar[EventKind] = EventKind.BACK_IN_STOCK
    item_id: str
    book_id: str
    user_id: str
    stock: int


class CartSynced(BusEvent):
    kind: ClassVar[EventKind] = EventKind.CART_SYNCED
    user_id: str
    replayed: int = 0
    failed: int = 0


Event = Union[ItemAdded, ItemUpdated, ItemRemoved, PriceChanged, BackInStock, CartSynced]
Listener = Callable[[Event], None]


class EventBus:
    """Synchronous, in-process event bus keyed by ``EventKind``."""

    def __init__(self):
        self._listeners: Dict[EventKind, List[Listener]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind: EventKind, listener: Listener) -> Callable[[], None]:
        """Register a listener for one event kind. Returns an unsubscribe function."""
        self._listeners[EventKind(kind)].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners[EventKind(kind)]
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to every current listener; listener errors are logged and contained."""
        for listener in list(self._listeners[event.kind]):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Listener for {event.kind.value} failed: {e}")

    def listener_count(self, kind: EventKind) -> int:
        return len(self._listeners[EventKind(kind)])

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
