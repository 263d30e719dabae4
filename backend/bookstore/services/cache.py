"""
Per-user, time-boxed snapshot cache for enriched wishlist/cart items.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from bookstore.utils.helpers import get_current_timestamp


@dataclass
class CacheEntry:
    data: Any
    stored_at: datetime


class UserCache:
    """
    Cache keyed by user id with a fixed freshness window.

    Entries older than ``ttl_seconds`` are treated as missing. The clock is
    injectable so tests can move time forward.
    """

    def __init__(
        self,
        namespace: str,
        ttl_seconds: float,
        clock: Callable[[], datetime] = get_current_timestamp
    ):
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _key(self, user_id: str) -> str:
        return f"{self.namespace}_{user_id}"

    def get(self, user_id: str) -> Optional[Any]:
        entry = self._entries.get(self._key(user_id))
        if entry is None:
            return None
        age = (self.clock() - entry.stored_at).total_seconds()
        if age >= self.ttl_seconds:
            del self._entries[self._key(user_id)]
            return None
        return entry.data

    def set(self, user_id: str, data: Any) -> None:
        self._entries[self._key(user_id)] = CacheEntry(data=data, stored_at=self.clock())

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(self._key(user_id), None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, user_id: str) -> bool:
        return self.get(user_id) is not None
