"""
Tests for cart service business logic.
"""
import pytest
from datetime import timedelta

from bookstore.core.collections import Collections
from bookstore.core.config import Settings
from bookstore.core.exceptions import NotFoundError, ValidationError
from bookstore.models.cart import CartItemStatus
from bookstore.services.container import build_services
from bookstore.services.event_bus import EventKind

from conftest import make_book, set_book


def cart_docs(store):
    return store.documents(Collections.CART)


class TestAddToCart:
    """Test adding books to the cart."""

    @pytest.mark.asyncio
    async def test_add(self, services, store, clock):
        """Test a new line gets prices, session ids and a 30 day expiry."""
        store.seed(Collections.BOOKS, "book1", make_book(price=45000, stock=5))
        added = []
        services.events.subscribe(EventKind.ITEM_ADDED, added.append)

        item = await services.cart.add_to_cart("user1", "book1", 2)

        assert item.quantity == 2
        assert item.price_at_add == 45000
        assert item.current_price == 45000
        assert item.session_id.startswith("session_")
        assert item.device_id.startswith("device_")
        assert item.expires_at == clock() + timedelta(days=30)
        assert len(cart_docs(store)) == 1
        assert added[0].quantity == 2

    @pytest.mark.asyncio
    async def test_guest_expiry(self, services, store, clock):
        """Test guest carts expire after 7 days."""
        store.seed(Collections.BOOKS, "book1", make_book())
        item = await services.cart.add_to_cart("guest_abc", "book1")
        assert item.expires_at == clock() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_re_add_increments_quantity(self, services, store):
        """Test adding the same book again merges into one line."""
        store.seed(Collections.BOOKS, "book1", make_book(stock=20))
        await services.cart.add_to_cart("user1", "book1", 2)
        item = await services.cart.add_to_cart("user1", "book1", 3)

        assert item.quantity == 5
        docs = cart_docs(store)
        assert len(docs) == 1
        assert docs[0]["quantity"] == 5

    @pytest.mark.asyncio
    async def test_quantity_cap(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(stock=20))
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book1", 11)

        await services.cart.add_to_cart("user1", "book1", 8)
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book1", 3)
        assert cart_docs(store)[0]["quantity"] == 8

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(stock=2))
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book1", 3)

        await services.cart.add_to_cart("user1", "book1", 2)
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book1", 1)

    @pytest.mark.asyncio
    async def test_unavailable_book(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(is_available=False))
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book1")

    @pytest.mark.asyncio
    async def test_unknown_book(self, services):
        with pytest.raises(NotFoundError):
            await services.cart.add_to_cart("user1", "missing")

    @pytest.mark.asyncio
    async def test_cart_size_cap(self, store, clock, scheduler, tmp_path):
        """Test the cart refuses more distinct books than allowed."""
        settings = Settings(CART_MAX_ITEMS=2, OFFLINE_QUEUE_DIR=str(tmp_path))
        services = build_services(store, settings=settings, clock=clock, scheduler=scheduler)
        for book_id in ("book1", "book2", "book3"):
            store.seed(Collections.BOOKS, book_id, make_book())

        await services.cart.add_to_cart("user1", "book1")
        await services.cart.add_to_cart("user1", "book2")
        with pytest.raises(ValidationError):
            await services.cart.add_to_cart("user1", "book3")


class TestEnhancedCart:
    """Test reading the enriched cart."""

    @pytest.mark.asyncio
    async def test_out_of_stock_kept(self, services, store, clock):
        """Test a book going from stock 2 to 0 flags the line without deleting it."""
        store.seed(Collections.BOOKS, "book1", make_book(stock=2))
        await services.cart.add_to_cart("user1", "book1", 1)
        set_book(store, "book1", stock=0)
        clock.advance(seconds=31)

        items = await services.cart.get_enhanced_cart_items("user1")

        assert len(items) == 1
        assert items[0].status == CartItemStatus.OUT_OF_STOCK
        assert cart_docs(store)[0]["status"] == "out_of_stock"

    @pytest.mark.asyncio
    async def test_cached_for_30_seconds(self, services, store, clock):
        store.seed(Collections.BOOKS, "book1", make_book())
        await services.cart.add_to_cart("user1", "book1")

        first = await services.cart.get_enhanced_cart_items("user1")
        clock.advance(seconds=29)
        assert await services.cart.get_enhanced_cart_items("user1") is first
        clock.advance(seconds=1)
        assert await services.cart.get_enhanced_cart_items("user1") is not first

    @pytest.mark.asyncio
    async def test_details_totals(self, services, store):
        """Test totals only count lines that can be ordered."""
        store.seed(Collections.BOOKS, "book1", make_book(price=45000, stock=5))
        store.seed(Collections.BOOKS, "book2", make_book(price=30000, stock=5))
        await services.cart.add_to_cart("user1", "book1", 2)
        await services.cart.add_to_cart("user1", "book2", 1)
        set_book(store, "book2", stock=0)

        details = await services.cart.get_cart_with_details("user1")

        assert details["total_amount"] == 90000
        assert details["total_items"] == 2
        assert details["has_unavailable_items"] is True
        assert len(details["items"]) == 2


class TestUpdateAndRemove:
    """Test changing and removing cart lines."""

    @pytest.mark.asyncio
    async def test_update_quantity(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(stock=5))
        item = await services.cart.add_to_cart("user1", "book1")

        updated = await services.cart.update_cart_item(item.id, {"quantity": 4})

        assert updated.quantity == 4
        assert cart_docs(store)[0]["quantity"] == 4

    @pytest.mark.asyncio
    async def test_update_over_stock(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(stock=3))
        item = await services.cart.add_to_cart("user1", "book1")
        with pytest.raises(ValidationError):
            await services.cart.update_cart_item(item.id, {"quantity": 4})

    @pytest.mark.asyncio
    async def test_zero_quantity_removes(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book())
        item = await services.cart.add_to_cart("user1", "book1")
        removed = []
        services.events.subscribe(EventKind.ITEM_REMOVED, removed.append)

        assert await services.cart.update_cart_item(item.id, {"quantity": 0}) is None
        assert cart_docs(store) == []
        assert removed[0].item_id == item.id

    @pytest.mark.asyncio
    async def test_remove_missing(self, services):
        with pytest.raises(NotFoundError):
            await services.cart.remove_from_cart("missing")

    @pytest.mark.asyncio
    async def test_clear_keeps_saved(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book())
        store.seed(Collections.BOOKS, "book2", make_book())
        await services.cart.add_to_cart("user1", "book1")
        saved = await services.cart.add_to_cart("user1", "book2")
        await services.cart.save_for_later(saved.id)

        assert await services.cart.clear_cart("user1") == 1
        assert [d["book_id"] for d in cart_docs(store)] == ["book2"]


class TestSaveForLater:
    """Test moving lines between the cart and the saved list."""

    @pytest.mark.asyncio
    async def test_save_and_move_back(self, services, store, clock):
        store.seed(Collections.BOOKS, "book1", make_book())
        item = await services.cart.add_to_cart("user1", "book1", 2)

        saved = await services.cart.save_for_later(item.id)
        assert saved.saved_for_later is True
        assert saved.saved_at == clock()
        assert await services.cart.get_enhanced_cart_items("user1") == []
        assert [i.id for i in await services.cart.get_saved_items("user1")] == [item.id]

        moved = await services.cart.move_to_cart(item.id)
        assert moved.saved_for_later is False
        assert [i.id for i in await services.cart.get_enhanced_cart_items("user1")] == [item.id]

    @pytest.mark.asyncio
    async def test_move_merges_with_active_line(self, services, store):
        """Test moving a saved book already in the cart merges quantities."""
        store.seed(Collections.BOOKS, "book1", make_book(stock=10))
        first = await services.cart.add_to_cart("user1", "book1", 2)
        await services.cart.save_for_later(first.id)
        await services.cart.add_to_cart("user1", "book1", 1)

        merged = await services.cart.move_to_cart(first.id)

        assert merged.quantity == 3
        docs = cart_docs(store)
        assert len(docs) == 1
        assert docs[0]["saved_for_later"] is False

    @pytest.mark.asyncio
    async def test_move_checks_current_stock(self, services, store):
        """Test a saved line cannot come back with more copies than are in stock."""
        store.seed(Collections.BOOKS, "book1", make_book(stock=5))
        item = await services.cart.add_to_cart("user1", "book1", 3)
        await services.cart.save_for_later(item.id)
        set_book(store, "book1", stock=1)

        with pytest.raises(ValidationError):
            await services.cart.move_to_cart(item.id)
        assert cart_docs(store)[0]["saved_for_later"] is True

    @pytest.mark.asyncio
    async def test_move_unavailable_book(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book())
        item = await services.cart.add_to_cart("user1", "book1")
        await services.cart.save_for_later(item.id)
        set_book(store, "book1", is_available=False)

        with pytest.raises(ValidationError):
            await services.cart.move_to_cart(item.id)

    @pytest.mark.asyncio
    async def test_move_respects_cart_size(self, store, clock, scheduler, tmp_path):
        settings = Settings(CART_MAX_ITEMS=1, OFFLINE_QUEUE_DIR=str(tmp_path))
        services = build_services(store, settings=settings, clock=clock, scheduler=scheduler)
        store.seed(Collections.BOOKS, "book1", make_book())
        store.seed(Collections.BOOKS, "book2", make_book())
        first = await services.cart.add_to_cart("user1", "book1")
        await services.cart.save_for_later(first.id)
        await services.cart.add_to_cart("user1", "book2")

        with pytest.raises(ValidationError):
            await services.cart.move_to_cart(first.id)

    @pytest.mark.asyncio
    async def test_move_other_users_item(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book())
        item = await services.cart.add_to_cart("user1", "book1")
        await services.cart.save_for_later(item.id, user_id="user1")

        with pytest.raises(NotFoundError):
            await services.cart.move_to_cart(item.id, user_id="user2")
        assert cart_docs(store)[0]["saved_for_later"] is True

    @pytest.mark.asyncio
    async def test_saved_cap(self, store, clock, scheduler, tmp_path):
        settings = Settings(CART_MAX_SAVED_ITEMS=1, OFFLINE_QUEUE_DIR=str(tmp_path))
        services = build_services(store, settings=settings, clock=clock, scheduler=scheduler)
        store.seed(Collections.BOOKS, "book1", make_book())
        store.seed(Collections.BOOKS, "book2", make_book())
        first = await services.cart.add_to_cart("user1", "book1")
        second = await services.cart.add_to_cart("user1", "book2")

        await services.cart.save_for_later(first.id)
        with pytest.raises(ValidationError):
            await services.cart.save_for_later(second.id)


class TestMaintenanceAndSharing:
    """Test expiry cleanup and share links."""

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, services, store, clock):
        store.seed(Collections.BOOKS, "book1", make_book())
        store.seed(Collections.BOOKS, "book2", make_book())
        await services.cart.add_to_cart("guest_1", "book1")
        await services.cart.add_to_cart("user1", "book2")
        clock.advance(days=8)

        assert await services.cart.cleanup_expired_items() == 1
        assert [d["user_id"] for d in cart_docs(store)] == ["user1"]

    @pytest.mark.asyncio
    async def test_share(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(price=45000))
        await services.cart.add_to_cart("user1", "book1", 2)

        token = await services.cart.generate_share_token("user1")
        shared = await services.cart.get_shared_cart(token)

        assert shared["total_amount"] == 90000
        assert shared["items"][0].book_id == "book1"

    @pytest.mark.asyncio
    async def test_new_token_invalidates_old(self, services, store):
        old = await services.cart.generate_share_token("user1")
        await services.cart.generate_share_token("user1")
        with pytest.raises(NotFoundError):
            await services.cart.get_shared_cart(old)
        assert len(store.documents(Collections.CART_META)) == 1

    @pytest.mark.asyncio
    async def test_subscribe_pushes_active_items(self, services, store):
        """Test saved lines drop out of the pushed cart."""
        store.seed(Collections.BOOKS, "book1", make_book())
        pushes = []
        unsubscribe = await services.cart.subscribe_to_cart("user1", pushes.append)
        assert pushes == [[]]

        item = await services.cart.add_to_cart("user1", "book1")
        assert [i.book_id for i in pushes[-1]] == ["book1"]

        await services.cart.save_for_later(item.id)
        assert pushes[-1] == []

        unsubscribe()
        count = len(pushes)
        await services.cart.add_to_cart("user1", "book1")
        assert len(pushes) == count


class TestOfflineCart:
    """Test offline fallback and replay."""

    @pytest.mark.asyncio
    async def test_add_offline_then_sync(self, services, store):
        store.seed(Collections.BOOKS, "book1", make_book(stock=10))
        synced = []
        services.events.subscribe(EventKind.CART_SYNCED, synced.append)
        store.online = False

        first = await services.cart.add_to_cart("user1", "book1", 1)
        second = await services.cart.add_to_cart("user1", "book1", 2)
        assert first.offline is True
        assert second.quantity == 3
        assert [i.quantity for i in services.cart.get_offline_cart("user1")] == [3]

        store.online = True
        await services.connectivity.set_online(True)

        docs = cart_docs(store)
        assert len(docs) == 1
        assert docs[0]["quantity"] == 3
        assert [(e.user_id, e.replayed, e.failed) for e in synced] == [("user1", 2, 0)]

    @pytest.mark.asyncio
    async def test_replay_failure_cleared(self, services, store):
        """Test a queued add that no longer validates is dropped after one attempt."""
        store.seed(Collections.BOOKS, "book1", make_book(stock=10))
        synced = []
        services.events.subscribe(EventKind.CART_SYNCED, synced.append)
        store.online = False
        await services.cart.add_to_cart("user1", "book1", 1)

        set_book(store, "book1", is_available=False)
        store.online = True
        await services.connectivity.set_online(True)

        assert cart_docs(store) == []
        assert synced[0].failed == 1
        assert services.offline.pending("user1") == []
