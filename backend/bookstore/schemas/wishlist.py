from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from bookstore.models.book import BookSnapshot
from bookstore.models.wishlist import PriceHistoryEntry, WishlistNotificationSettings


class AddToWishlistRequest(BaseModel):
    """Schema for adding a book to the wishlist."""
    book_id: str
    priority: int = Field(default=3, ge=1, le=5)
    notes: str = ""
    tags: List[str] = []
    target_price: Optional[float] = Field(None, ge=0)
    notifications: Optional[WishlistNotificationSettings] = None
    is_public: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "book_id": "book123",
                "priority": 4,
                "notes": "Gift for dad",
                "tags": ["classic", "gift"],
                "target_price": 40000
            }
        }


class UpdateWishlistItemRequest(BaseModel):
    """Schema for updating a wishlist item. Only the fields sent are changed."""
    priority: Optional[int] = Field(None, ge=1, le=5)
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    target_price: Optional[float] = Field(None, ge=0)
    notifications: Optional[WishlistNotificationSettings] = None
    is_public: Optional[bool] = None
    shared_with: Optional[List[str]] = None


class WishlistItemResponse(BaseModel):
    """Schema for an enriched wishlist item."""
    id: Optional[str] = None
    book_id: str
    book_data: BookSnapshot
    priority: int
    notes: str
    tags: List[str]
    notifications: WishlistNotificationSettings
    price_history: List[PriceHistoryEntry]
    target_price: Optional[float] = None
    is_public: bool
    status: str
    price_changed: bool = False
    price_change_amount: Optional[float] = None
    price_change_percentage: Optional[float] = None
    enrichment_error: Optional[str] = None
    offline: bool = False
    created_at: datetime
    updated_at: datetime
    last_checked_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WishlistResponse(BaseModel):
    """Schema for wishlist response."""
    items: List[WishlistItemResponse]
    total_items: int


class PriceSweepResponse(BaseModel):
    """Schema for a manually triggered price sweep."""
    started: bool
    checked: int = 0
    failed: int = 0
