from typing import Optional, Dict
from pydantic import BaseModel, Field


class BookImages(BaseModel):
    """Image URLs for a book (usually Cloudinary)."""
    main: Optional[str] = None
    thumbnail: Optional[str] = None


class Book(BaseModel):
    """Catalog book as read from the books collection."""
    id: Optional[str] = Field(None, alias="_id")
    title: str
    author_name: str = ""
    price: float = Field(ge=0)
    original_price: Optional[float] = None
    is_available: bool = True
    stock: int = Field(default=0, ge=0)
    isbn: Optional[str] = None
    sku: Optional[str] = None
    image_url: Optional[str] = None
    images: Optional[BookImages] = None
    genre_name: str = ""
    analytics: Dict[str, int] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "title": "O'tkan kunlar",
                "author_name": "Abdulla Qodiriy",
                "price": 45000,
                "original_price": 50000,
                "is_available": True,
                "stock": 12,
                "isbn": "978-9943-01-234-5",
                "images": {"main": "https://res.cloudinary.com/demo/image/upload/v1/books/otkan.jpg"},
                "genre_name": "Roman"
            }
        }

    @property
    def main_image(self) -> Optional[str]:
        if self.images and self.images.main:
            return self.images.main
        return self.image_url


class BookSnapshot(BaseModel):
    """
    Denormalized copy of a book stored on wishlist and cart items.
    Staleness is expected and corrected by enrichment.
    """
    title: str = ""
    author_name: str = ""
    images: BookImages = Field(default_factory=BookImages)
    price: Optional[float] = None
    original_price: Optional[float] = None
    discount_percentage: int = 0
    availability: bool = True
    stock: int = 0
    isbn: Optional[str] = None
    sku: Optional[str] = None
    genre: str = ""

    @property
    def in_stock(self) -> bool:
        return self.availability and self.stock > 0
