"""
Tests for the offline queue and connectivity monitor.
"""
import pytest

from bookstore.services.offline_queue import ConnectivityMonitor, OfflineQueue, QueuedOperation


def op(action, **payload):
    return QueuedOperation(user_id="user1", target="cart", action=action, payload=payload)


class TestOfflineQueue:
    """Test durable queueing and replay."""

    def test_enqueue_persists(self, tmp_path):
        """Test queued operations survive a new queue instance."""
        OfflineQueue(str(tmp_path)).enqueue(op("add", book_id="book1"))
        pending = OfflineQueue(str(tmp_path)).pending("user1")
        assert [p.action for p in pending] == ["add"]
        assert OfflineQueue(str(tmp_path)).users_with_pending("cart") == ["user1"]

    def test_filters_by_target(self, tmp_path):
        queue = OfflineQueue(str(tmp_path))
        queue.enqueue(op("add", book_id="book1"))
        assert queue.pending("user1", "wishlist") == []
        assert queue.users_with_pending("wishlist") == []

    @pytest.mark.asyncio
    async def test_replay_fifo_exactly_once(self, tmp_path):
        """Test operations replay oldest first, once each."""
        queue = OfflineQueue(str(tmp_path))
        for name in ("first", "second", "third"):
            queue.enqueue(op("add", book_id=name))
        seen = []

        async def handler(operation):
            seen.append(operation.payload["book_id"])

        result = await queue.replay("user1", "cart", handler)

        assert result == (3, 0)
        assert seen == ["first", "second", "third"]
        assert await queue.replay("user1", "cart", handler) == (0, 0)
        assert seen == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_failed_operations_are_dropped(self, tmp_path):
        """Test a failing operation is logged, counted and cleared."""
        queue = OfflineQueue(str(tmp_path))
        queue.enqueue(op("add", book_id="bad"))
        queue.enqueue(op("add", book_id="good"))

        async def handler(operation):
            if operation.payload["book_id"] == "bad":
                raise ValueError("rejected")

        assert await queue.replay("user1", "cart", handler) == (1, 1)
        assert queue.pending("user1") == []

    def test_local_documents(self, tmp_path):
        queue = OfflineQueue(str(tmp_path))
        queue.save_local_documents("user1", "wishlist", [{"_id": "w1", "book_id": "book1"}])
        assert queue.get_local_documents("user1", "wishlist") == [{"_id": "w1", "book_id": "book1"}]
        assert queue.get_local_documents("user1", "cart") == []

    def test_corrupt_file_starts_fresh(self, tmp_path):
        queue = OfflineQueue(str(tmp_path))
        queue._path("user1").write_text("{not json")
        assert queue.pending("user1") == []

    def test_similar_user_ids_do_not_share_state(self, tmp_path):
        """Test ids that differ only in punctuation get separate files."""
        queue = OfflineQueue(str(tmp_path))
        queue.save_local_documents("alice/1", "cart", [{"_id": "c1", "book_id": "book1"}])
        queue.enqueue(QueuedOperation(user_id="alice/1", target="cart", action="add"))

        assert queue.get_local_documents("alice_1", "cart") == []
        assert queue.pending("alice_1") == []
        assert queue.users_with_pending("cart") == ["alice/1"]

    def test_state_of_another_user_is_ignored(self, tmp_path):
        """Test a file whose recorded owner differs from the requested user is not read."""
        queue = OfflineQueue(str(tmp_path))
        queue.save_local_documents("user2", "cart", [{"_id": "c1"}])
        queue._path("user2").replace(queue._path("user1"))

        assert queue.get_local_documents("user1", "cart") == []


class TestConnectivityMonitor:
    """Test reconnect detection."""

    @pytest.mark.asyncio
    async def test_reconnect_fires_once(self):
        """Test callbacks fire only on an offline -> online transition."""
        monitor = ConnectivityMonitor()
        calls = []

        async def on_reconnect():
            calls.append(1)

        monitor.on_reconnect(on_reconnect)
        await monitor.set_online(True)
        assert calls == []

        monitor.mark_offline()
        assert monitor.is_online is False
        await monitor.set_online(True)
        await monitor.set_online(True)
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_callback_error_isolated(self):
        monitor = ConnectivityMonitor(online=False)
        calls = []

        async def broken():
            raise RuntimeError("boom")

        async def working():
            calls.append(1)

        monitor.on_reconnect(broken)
        monitor.on_reconnect(working)
        await monitor.set_online(True)

        assert calls == [1]
        assert monitor.is_online is True
