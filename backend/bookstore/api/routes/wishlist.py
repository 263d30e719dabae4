from fastapi import APIRouter, Depends, status

from bookstore.api.deps import get_app_services, get_current_user_id
from bookstore.schemas.wishlist import (
    AddToWishlistRequest,
    PriceSweepResponse,
    UpdateWishlistItemRequest,
    WishlistItemResponse,
    WishlistResponse,
)
from bookstore.services.container import Services

router = APIRouter()


@router.get("", response_model=WishlistResponse)
async def get_wishlist(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Get the current user's wishlist with fresh book data.

    Returns:
    - Current price, stock and discount for every book
    - Price change since the last check
    - Item status (available, out of stock, price dropped, ...)
    """
    items = await services.wishlist.get_enhanced_wishlist_items(user_id)
    return WishlistResponse(
        items=[WishlistItemResponse.model_validate(item) for item in items],
        total_items=len(items)
    )


@router.post("/items", response_model=WishlistItemResponse, status_code=status.HTTP_201_CREATED)
async def add_to_wishlist(
    request: AddToWishlistRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Add a book to the wishlist.

    A book can be in a user's wishlist only once.
    """
    options = request.model_dump(exclude={"book_id"}, exclude_none=True)
    item = await services.wishlist.add_to_wishlist(user_id, request.book_id, options)
    return WishlistItemResponse.model_validate(item)


@router.put("/items/{item_id}", response_model=WishlistItemResponse)
async def update_wishlist_item(
    item_id: str,
    request: UpdateWishlistItemRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Update priority, notes, tags, target price or notification settings."""
    updates = request.model_dump(exclude_unset=True)
    item = await services.wishlist.update_wishlist_item(item_id, updates, user_id=user_id)
    return WishlistItemResponse.model_validate(item)


@router.delete("/items/{book_id}")
async def remove_from_wishlist(
    book_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Remove a book from the wishlist."""
    return await services.wishlist.remove_from_wishlist(user_id, book_id)


@router.get("/items/{book_id}/status")
async def get_wishlist_status(
    book_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Whether a book is in the current user's wishlist."""
    return {"book_id": book_id, "in_wishlist": await services.wishlist.is_in_wishlist(user_id, book_id)}


@router.post("/check-prices", response_model=PriceSweepResponse)
async def check_prices(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Run a price sweep now instead of waiting for the hourly one.

    Does nothing if a sweep is already running.
    """
    result = await services.monitor.run_price_sweep()
    if result is None:
        return PriceSweepResponse(started=False)
    return PriceSweepResponse(started=True, **result)
