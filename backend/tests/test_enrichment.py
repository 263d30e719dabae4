"""
Tests for catalog enrichment of wishlist and cart items.
"""
import pytest
from datetime import datetime, timedelta, timezone

from bookstore.core.collections import Collections
from bookstore.models.book import BookSnapshot
from bookstore.models.cart import CartItem, CartItemStatus
from bookstore.models.wishlist import WishlistItem, WishlistItemStatus
from bookstore.services.catalog_service import CatalogService
from bookstore.services.change_detector import TransitionKind
from bookstore.services.enrichment import (
    EnrichmentEngine,
    append_price_history,
    calculate_discount_percentage,
    derive_wishlist_status,
    get_optimized_image_url,
)

from conftest import InMemoryDocumentStore, make_book


class TestDiscount:
    """Test discount percentage calculation."""

    def test_discount(self):
        """Test 50000 -> 40000 is a 20% discount."""
        assert calculate_discount_percentage(50000, 40000) == 20

    def test_never_negative(self):
        """Test a price above the original gives no discount."""
        assert calculate_discount_percentage(40000, 50000) == 0

    def test_missing_original(self):
        """Test an unknown original price gives no discount."""
        assert calculate_discount_percentage(None, 40000) == 0


class TestImageUrls:
    """Test Cloudinary URL transformation."""

    def test_cloudinary_url(self):
        """Test the transformation is inserted after /upload/."""
        url = "https://res.cloudinary.com/demo/image/upload/v1/books/a.jpg"
        assert get_optimized_image_url(url, "wishlist") == (
            "https://res.cloudinary.com/demo/image/upload/w_120,h_180,c_fill,f_auto,q_auto/v1/books/a.jpg"
        )

    def test_other_urls_untouched(self):
        """Test non-Cloudinary URLs pass through."""
        assert get_optimized_image_url("https://example.com/a.jpg") == "https://example.com/a.jpg"
        assert get_optimized_image_url(None) is None


class TestPriceHistory:
    """Test price history trimming."""

    def test_bounded_after_many_changes(self):
        """Test history keeps only the 50 most recent entries."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        history = []
        for i in range(60):
            history = append_price_history(history, 40000 + i, start + timedelta(hours=i))
        assert len(history) == 50
        assert history[0].price == 40010
        assert history[-1].price == 40059

    def test_does_not_mutate_input(self):
        """Test the input list is left untouched."""
        history = []
        append_price_history(history, 100, datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert history == []


class TestWishlistStatus:
    """Test wishlist status derivation."""

    def test_out_of_stock_wins(self):
        """Test zero stock is out of stock even when the price dropped."""
        snapshot = BookSnapshot(price=38000, availability=True, stock=0)
        assert derive_wishlist_status(45000, snapshot) == WishlistItemStatus.OUT_OF_STOCK

    def test_price_dropped(self):
        snapshot = BookSnapshot(price=38000, availability=True, stock=3)
        assert derive_wishlist_status(45000, snapshot) == WishlistItemStatus.PRICE_DROPPED

    def test_price_increased(self):
        snapshot = BookSnapshot(price=50000, availability=True, stock=3)
        assert derive_wishlist_status(45000, snapshot) == WishlistItemStatus.PRICE_INCREASED

    def test_available(self):
        snapshot = BookSnapshot(price=45000, availability=True, stock=3)
        assert derive_wishlist_status(45000, snapshot) == WishlistItemStatus.AVAILABLE


class TestEnrichmentEngine:
    """Test enriching items against the catalog."""

    def setup_method(self):
        self.store = InMemoryDocumentStore()
        self.engine = EnrichmentEngine(CatalogService(self.store))

    @pytest.mark.asyncio
    async def test_wishlist_price_drop(self):
        """Test a wishlist item picks up the new price and transitions."""
        self.store.seed(Collections.BOOKS, "book1", make_book(price=38000))
        item = WishlistItem(
            _id="w1",
            user_id="user1",
            book_id="book1",
            book_data=BookSnapshot(price=45000, availability=True, stock=5),
            target_price=40000
        )

        result = await self.engine.enrich_wishlist_item(item)

        assert result.failed is False
        assert result.item.book_data.price == 38000
        assert result.item.price_changed is True
        assert result.item.price_change_amount == -7000
        assert result.item.status == WishlistItemStatus.PRICE_DROPPED
        assert [t.kind for t in result.transitions] == [
            TransitionKind.PRICE_DROP,
            TransitionKind.TARGET_PRICE_REACHED,
        ]
        assert item.book_data.price == 45000  # original untouched

    @pytest.mark.asyncio
    async def test_wishlist_missing_book(self):
        """Test a missing book marks the item discontinued instead of raising."""
        item = WishlistItem(_id="w1", user_id="user1", book_id="gone")

        result = await self.engine.enrich_wishlist_item(item)

        assert result.failed is True
        assert result.item.status == WishlistItemStatus.DISCONTINUED
        assert "gone" in result.item.enrichment_error
        assert result.transitions == []

    @pytest.mark.asyncio
    async def test_cart_out_of_stock_kept(self):
        """Test a cart item whose book sold out is flagged, not dropped."""
        self.store.seed(Collections.BOOKS, "book1", make_book(stock=0))
        item = CartItem(
            _id="c1", user_id="user1", book_id="book1",
            quantity=2, price_at_add=45000, current_price=45000
        )

        enriched = await self.engine.enrich_cart_item(item)

        assert enriched.status == CartItemStatus.OUT_OF_STOCK
        assert enriched.quantity == 2

    @pytest.mark.asyncio
    async def test_cart_stock_below_quantity(self):
        """Test stock lower than the quantity counts as out of stock."""
        self.store.seed(Collections.BOOKS, "book1", make_book(stock=1))
        item = CartItem(
            _id="c1", user_id="user1", book_id="book1",
            quantity=2, price_at_add=45000, current_price=45000
        )

        enriched = await self.engine.enrich_cart_item(item)

        assert enriched.status == CartItemStatus.OUT_OF_STOCK

    @pytest.mark.asyncio
    async def test_cart_price_changed(self):
        """Test a price change since adding is flagged."""
        self.store.seed(Collections.BOOKS, "book1", make_book(price=42000))
        item = CartItem(
            _id="c1", user_id="user1", book_id="book1",
            quantity=1, price_at_add=45000, current_price=45000
        )

        enriched = await self.engine.enrich_cart_item(item)

        assert enriched.current_price == 42000
        assert enriched.price_changed is True
        assert enriched.status == CartItemStatus.PRICE_CHANGED
        assert "w_100,h_150" in enriched.book_data.images.thumbnail

    @pytest.mark.asyncio
    async def test_cart_missing_book(self):
        """Test a missing book marks the cart item expired."""
        item = CartItem(
            _id="c1", user_id="user1", book_id="gone",
            quantity=1, price_at_add=45000, current_price=45000
        )

        enriched = await self.engine.enrich_cart_item(item)

        assert enriched.status == CartItemStatus.EXPIRED
        assert enriched.enrichment_error
