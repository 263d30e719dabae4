from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from bookstore.models.book import BookSnapshot


class AddToCartRequest(BaseModel):
    """Schema for adding a book to the cart."""
    book_id: str
    quantity: int = Field(default=1, gt=0)
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    notes: str = ""

    class Config:
        json_schema_extra = {
            "example": {
                "book_id": "book123",
                "quantity": 2
            }
        }


class UpdateCartItemRequest(BaseModel):
    """Schema for updating a cart item. A quantity of 0 removes the item."""
    quantity: Optional[int] = None
    notes: Optional[str] = None
    priority: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "quantity": 3
            }
        }


class CartItemResponse(BaseModel):
    """Schema for cart item response."""
    id: Optional[str] = None
    book_id: str
    quantity: int
    price_at_add: float
    current_price: float
    book_data: BookSnapshot
    subtotal: float
    status: str
    saved_for_later: bool = False
    saved_at: Optional[datetime] = None
    price_changed: bool = False
    enrichment_error: Optional[str] = None
    offline: bool = False
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CartResponse(BaseModel):
    """Schema for cart response."""
    items: List[CartItemResponse]
    total_amount: float
    total_items: int
    has_price_changes: bool = False
    has_unavailable_items: bool = False

    class Config:
        from_attributes = True


class ShareResponse(BaseModel):
    """Schema for share response."""
    share_token: str
    share_link: str


class SharedCartResponse(CartResponse):
    """Schema for shared cart view."""
    shared_at: Optional[datetime] = None
