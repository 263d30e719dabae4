from typing import Any, Dict, List

from fastapi import APIRouter, Depends, status

from bookstore.api.deps import get_app_services, get_current_user_id
from bookstore.core.config import settings
from bookstore.schemas.cart import (
    AddToCartRequest,
    CartItemResponse,
    CartResponse,
    ShareResponse,
    SharedCartResponse,
    UpdateCartItemRequest,
)
from bookstore.services.container import Services

router = APIRouter()


def _cart_response(details: Dict[str, Any], response_class=CartResponse):
    return response_class(
        **{
            **details,
            "items": [CartItemResponse.model_validate(item) for item in details["items"]],
        }
    )


@router.post("/items", response_model=CartResponse, status_code=status.HTTP_201_CREATED)
async def add_to_cart(
    request: AddToCartRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Add a book to the cart.

    Validates:
    - Book exists and is available
    - Sufficient stock available
    - At most 10 copies per book and 50 books per cart

    If the book is already in the cart, increases quantity.
    """
    await services.cart.add_to_cart(
        user_id,
        request.book_id,
        quantity=request.quantity,
        options=request.model_dump(exclude={"book_id", "quantity"}, exclude_none=True)
    )
    return _cart_response(await services.cart.get_cart_with_details(user_id))


@router.get("", response_model=CartResponse)
async def get_cart(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Get the current user's cart with current prices and stock.

    Returns:
    - All active cart items with current prices and stock
    - Price change and availability flags
    - Total amount and item count
    """
    return _cart_response(await services.cart.get_cart_with_details(user_id))


@router.put("/items/{item_id}", response_model=CartResponse)
async def update_cart_item(
    item_id: str,
    request: UpdateCartItemRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Update a cart item. A quantity of 0 removes it.

    Validates stock availability before updating.
    """
    updates = request.model_dump(exclude_unset=True, exclude_none=True)
    await services.cart.update_cart_item(item_id, updates, user_id=user_id)
    return _cart_response(await services.cart.get_cart_with_details(user_id))


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_from_cart(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Remove an item from the cart."""
    await services.cart.remove_from_cart(item_id, user_id=user_id)
    return _cart_response(await services.cart.get_cart_with_details(user_id))


@router.delete("", response_model=CartResponse)
async def clear_cart(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Clear all active items from the cart. Saved items are kept."""
    await services.cart.clear_cart(user_id)
    return _cart_response(await services.cart.get_cart_with_details(user_id))


@router.get("/saved", response_model=List[CartItemResponse])
async def get_saved_items(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """Get the items the user saved for later."""
    items = await services.cart.get_saved_items(user_id)
    return [CartItemResponse.model_validate(item) for item in items]


@router.post("/items/{item_id}/save-for-later", response_model=CartItemResponse)
async def save_for_later(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return CartItemResponse.model_validate(await services.cart.save_for_later(item_id, user_id=user_id))


@router.post("/items/{item_id}/move-to-cart", response_model=CartItemResponse)
async def move_to_cart(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    return CartItemResponse.model_validate(await services.cart.move_to_cart(item_id, user_id=user_id))


@router.post("/share", response_model=ShareResponse)
async def share_cart(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_app_services)
):
    """
    Generate a shareable link for the current cart.

    Generating a new link invalidates the previous one.
    """
    token = await services.cart.generate_share_token(user_id)
    return ShareResponse(
        share_token=token,
        share_link=f"{settings.API_V1_PREFIX}/cart/shared/{token}"
    )


@router.get("/shared/{share_token}", response_model=SharedCartResponse)
async def get_shared_cart(
    share_token: str,
    services: Services = Depends(get_app_services)
):
    """View a shared cart (no identification required)."""
    details = await services.cart.get_shared_cart(share_token)
    return _cart_response(details, SharedCartResponse)
