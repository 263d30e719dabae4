"""
Catalog reader: current price, availability and stock of a book.
"""
import logging

from bookstore.core.collections import Collections
from bookstore.core.exceptions import ConnectivityError, NotFoundError
from bookstore.core.store import DocumentStore
from bookstore.models.book import Book

logger = logging.getLogger(__name__)


class CatalogService:
    """Reads books from the books collection."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_book_by_id(self, book_id: str) -> Book:
        """Get a book by id. Raises NotFoundError for unknown ids."""
        document = await self.store.get(Collections.BOOKS, book_id)
        if not document:
            raise NotFoundError(f"Book not found: {book_id}")
        return Book(**document)

    async def update_wishlist_count(self, book_id: str, delta: int) -> None:
        """Adjust the book's wishlist counter. Failures are logged, not raised."""
        try:
            await self.store.increment(Collections.BOOKS, book_id, "analytics.wishlist_count", delta)
        except (NotFoundError, ConnectivityError) as e:
            logger.error(f"Error updating wishlist count for book {book_id}: {e.detail}")
