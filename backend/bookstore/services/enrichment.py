"""
Enrichment engine: merges persisted wishlist/cart items with the catalog's
current state and computes the derived fields.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from bookstore.models.book import Book, BookImages, BookSnapshot
from bookstore.models.cart import CartItem, CartItemStatus
from bookstore.models.wishlist import PriceHistoryEntry, WishlistItem, WishlistItemStatus
from bookstore.services.catalog_service import CatalogService
from bookstore.services.change_detector import Transition, detect_changes
from bookstore.utils.helpers import round_half_up

logger = logging.getLogger(__name__)

IMAGE_TRANSFORMATIONS = {
    "thumbnail": "w_150,h_200,c_fill,f_auto,q_auto",
    "wishlist": "w_120,h_180,c_fill,f_auto,q_auto",
    "cart": "w_100,h_150,c_fill,f_auto,q_auto",
    "default": "f_auto,q_auto"
}


def calculate_discount_percentage(original_price: Optional[float], current_price: float) -> int:
    """Discount of current vs. original price in whole percent, never negative."""
    if not original_price or original_price <= current_price:
        return 0
    return round_half_up((original_price - current_price) / original_price * 100)


def get_optimized_image_url(image_url: Optional[str], context: str = "default") -> Optional[str]:
    """Insert a Cloudinary transformation after ``/upload/``; other URLs pass through."""
    if not image_url or "cloudinary.com" not in image_url:
        return image_url
    transformation = IMAGE_TRANSFORMATIONS.get(context, IMAGE_TRANSFORMATIONS["default"])
    return image_url.replace("/upload/", f"/upload/{transformation}/", 1)


def build_book_snapshot(book: Book) -> BookSnapshot:
    """Copy the fields of a catalog book that items keep for fast rendering."""
    original_price = book.original_price or book.price
    return BookSnapshot(
        title=book.title,
        author_name=book.author_name,
        images=BookImages(
            main=book.main_image,
            thumbnail=get_optimized_image_url(book.main_image, "thumbnail")
        ),
        price=book.price,
        original_price=original_price,
        discount_percentage=calculate_discount_percentage(original_price, book.price),
        availability=book.is_available,
        stock=book.stock,
        isbn=book.isbn,
        sku=book.sku,
        genre=book.genre_name or ""
    )


def append_price_history(
    history: List[PriceHistoryEntry],
    price: float,
    date: datetime,
    source: str = "monitoring",
    limit: int = 50
) -> List[PriceHistoryEntry]:
    """Return a new history with the entry appended and the oldest entries evicted past ``limit``."""
    updated = list(history) + [PriceHistoryEntry(price=price, date=date, source=source)]
    if len(updated) > limit:
        updated = updated[len(updated) - limit:]
    return updated


def derive_wishlist_status(
    old_price: Optional[float],
    snapshot: BookSnapshot
) -> WishlistItemStatus:
    """Status as a pure function of the previous price and the fresh snapshot."""
    if not snapshot.in_stock:
        return WishlistItemStatus.OUT_OF_STOCK
    if old_price is not None and snapshot.price is not None:
        if snapshot.price < old_price:
            return WishlistItemStatus.PRICE_DROPPED
        if snapshot.price > old_price:
            return WishlistItemStatus.PRICE_INCREASED
    return WishlistItemStatus.AVAILABLE


@dataclass
class WishlistEnrichment:
    """Outcome of enriching one wishlist item."""
    item: WishlistItem
    previous: BookSnapshot
    transitions: List[Transition] = field(default_factory=list)
    failed: bool = False

    @property
    def price_changed(self) -> bool:
        return self.item.price_changed


class EnrichmentEngine:
    """Refreshes item snapshots from the catalog."""

    def __init__(self, catalog: CatalogService):
        self.catalog = catalog

    async def enrich_wishlist_item(self, item: WishlistItem) -> WishlistEnrichment:
        """
        Refresh ``item.book_data`` and compute status, price delta and transitions.

        A failed catalog read marks the item discontinued instead of raising.
        """
        previous = item.book_data
        enriched = item.model_copy(deep=True)

        try:
            book = await self.catalog.get_book_by_id(item.book_id)
        except Exception as e:
            logger.warning(f"Failed to load book data for {item.book_id}: {e}")
            enriched.status = WishlistItemStatus.DISCONTINUED
            enriched.enrichment_error = str(getattr(e, "detail", e))
            return WishlistEnrichment(item=enriched, previous=previous, failed=True)

        snapshot = build_book_snapshot(book)
        old_price = previous.price
        enriched.book_data = snapshot

        if old_price is not None and old_price != snapshot.price:
            enriched.price_changed = True
            enriched.price_change_amount = snapshot.price - old_price
            enriched.price_change_percentage = (
                (snapshot.price - old_price) / old_price * 100 if old_price else None
            )

        enriched.status = derive_wishlist_status(old_price, snapshot)
        transitions = detect_changes(
            old_price=old_price,
            new_price=snapshot.price,
            old_available=previous.in_stock,
            new_available=snapshot.in_stock,
            target_price=item.target_price
        )
        return WishlistEnrichment(item=enriched, previous=previous, transitions=transitions)

    async def enrich_cart_item(self, item: CartItem) -> CartItem:
        """
        Refresh a cart item's snapshot and current price.

        Out-of-stock items keep their place in the cart with status
        ``out_of_stock``; a failed catalog read marks the item expired.
        """
        enriched = item.model_copy(deep=True)

        try:
            book = await self.catalog.get_book_by_id(item.book_id)
        except Exception as e:
            logger.warning(f"Failed to load book data for {item.book_id}: {e}")
            enriched.status = CartItemStatus.EXPIRED
            enriched.enrichment_error = str(getattr(e, "detail", e))
            return enriched

        snapshot = build_book_snapshot(book)
        snapshot.images.thumbnail = get_optimized_image_url(book.main_image, "cart")
        enriched.book_data = snapshot
        enriched.current_price = book.price
        enriched.price_changed = item.price_at_add != book.price

        if not snapshot.in_stock or snapshot.stock < item.quantity:
            enriched.status = CartItemStatus.OUT_OF_STOCK
        elif item.saved_for_later:
            enriched.status = CartItemStatus.SAVED_FOR_LATER
        elif enriched.price_changed:
            enriched.status = CartItemStatus.PRICE_CHANGED
        else:
            enriched.status = CartItemStatus.ACTIVE
        return enriched
