from datetime import datetime
from typing import ClassVar, List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from bookstore.models.book import BookSnapshot
from bookstore.utils.helpers import get_current_timestamp


class WishlistItemStatus(str, Enum):
    """Wishlist item status, recomputed on every enrichment pass."""
    AVAILABLE = "available"
    OUT_OF_STOCK = "out_of_stock"
    PRICE_DROPPED = "price_dropped"
    PRICE_INCREASED = "price_increased"
    DISCONTINUED = "discontinued"
    NEW_EDITION = "new_edition"


class WishlistNotificationType(str, Enum):
    """Kinds of wishlist notifications a user can receive."""
    PRICE_DROP = "price_drop"
    BACK_IN_STOCK = "back_in_stock"
    TARGET_PRICE_REACHED = "target_price_reached"
    NEW_EDITION_AVAILABLE = "new_edition_available"
    AUTHOR_NEW_BOOK = "author_new_book"
    SIMILAR_BOOK_AVAILABLE = "similar_book_available"


class WishlistNotificationSettings(BaseModel):
    """Per-item notification preferences."""
    price_drops: bool = True
    back_in_stock: bool = True
    new_edition: bool = False
    author_news: bool = False


class PriceHistoryEntry(BaseModel):
    """One observed price."""
    price: float
    date: datetime = Field(default_factory=get_current_timestamp)
    source: str = "monitoring"  # initial | monitoring


class WishlistItem(BaseModel):
    """Wishlist item model for the wishlist collection."""
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    book_id: str
    book_data: BookSnapshot = Field(default_factory=BookSnapshot)

    priority: int = Field(default=3, ge=1, le=5)
    notes: str = ""
    tags: List[str] = Field(default_factory=list)

    notifications: WishlistNotificationSettings = Field(default_factory=WishlistNotificationSettings)

    price_history: List[PriceHistoryEntry] = Field(default_factory=list)
    target_price: Optional[float] = Field(default=None, ge=0)

    is_public: bool = False
    shared_with: List[str] = Field(default_factory=list)

    status: WishlistItemStatus = WishlistItemStatus.AVAILABLE

    created_at: datetime = Field(default_factory=get_current_timestamp)
    updated_at: datetime = Field(default_factory=get_current_timestamp)
    last_checked_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    version: int = 1

    # Computed by enrichment, never persisted
    price_changed: bool = False
    price_change_amount: Optional[float] = None
    price_change_percentage: Optional[float] = None
    enrichment_error: Optional[str] = None
    offline: bool = False

    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_default = True
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "book_id": "book123",
                "book_data": {
                    "title": "O'tkan kunlar",
                    "author_name": "Abdulla Qodiriy",
                    "price": 45000,
                    "original_price": 50000,
                    "discount_percentage": 10,
                    "availability": True,
                    "stock": 12
                },
                "priority": 4,
                "tags": ["classic"],
                "target_price": 40000
            }
        }

    TRANSIENT_FIELDS: ClassVar[set] = {
        "id", "price_changed", "price_change_amount", "price_change_percentage",
        "enrichment_error", "offline"
    }

    def to_document(self) -> dict:
        """Fields to persist, without the id and computed fields."""
        return self.model_dump(exclude=self.TRANSIENT_FIELDS, mode="python")
