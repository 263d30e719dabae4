from datetime import datetime
from typing import ClassVar, List, Optional
from enum import Enum
from pydantic import BaseModel, Field

from bookstore.models.book import BookSnapshot
from bookstore.utils.helpers import get_current_timestamp


class CartItemStatus(str, Enum):
    """Cart item status enumeration."""
    ACTIVE = "active"
    SAVED_FOR_LATER = "saved_for_later"
    OUT_OF_STOCK = "out_of_stock"
    PRICE_CHANGED = "price_changed"
    EXPIRED = "expired"


class CartItem(BaseModel):
    """One line item in a user's cart."""
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    book_id: str
    quantity: int = Field(ge=1, le=10)
    price_at_add: float = Field(ge=0)
    current_price: float = Field(ge=0)
    book_data: BookSnapshot = Field(default_factory=BookSnapshot)

    # Session tracking
    session_id: Optional[str] = None
    device_id: Optional[str] = None

    saved_for_later: bool = False
    saved_at: Optional[datetime] = None
    priority: int = 1
    notes: str = ""

    shared_with: List[str] = Field(default_factory=list)
    share_token: Optional[str] = None

    status: CartItemStatus = CartItemStatus.ACTIVE

    created_at: datetime = Field(default_factory=get_current_timestamp)
    updated_at: datetime = Field(default_factory=get_current_timestamp)
    last_accessed_at: datetime = Field(default_factory=get_current_timestamp)
    expires_at: Optional[datetime] = None  # 30 days registered, 7 days guests
    version: int = 1

    # Computed by enrichment, never persisted
    price_changed: bool = False
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
                "quantity": 2,
                "price_at_add": 45000,
                "current_price": 45000,
                "session_id": "session_1700000000_ab12cd34e",
                "device_id": "device_1700000000_ef56gh78i",
                "expires_at": "2024-02-01T00:00:00"
            }
        }

    TRANSIENT_FIELDS: ClassVar[set] = {"id", "price_changed", "enrichment_error", "offline"}

    def to_document(self) -> dict:
        """Fields to persist, without the id and computed fields."""
        return self.model_dump(exclude=self.TRANSIENT_FIELDS, mode="python")

    @property
    def subtotal(self) -> float:
        return self.current_price * self.quantity
