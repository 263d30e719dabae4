"""
Change detection between a stored book snapshot and the catalog's current state.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from bookstore.utils.helpers import round_half_up


class TransitionKind(str, Enum):
    """State transitions a wishlist/cart item can go through."""
    PRICE_DROP = "price_drop"
    PRICE_INCREASE = "price_increase"
    TARGET_PRICE_REACHED = "target_price_reached"
    BACK_IN_STOCK = "back_in_stock"
    OUT_OF_STOCK = "out_of_stock"


# Transitions that only update status and never notify
STATUS_ONLY_TRANSITIONS = {TransitionKind.PRICE_INCREASE, TransitionKind.OUT_OF_STOCK}


@dataclass(frozen=True)
class Transition:
    """One detected transition with the prices that produced it."""
    kind: TransitionKind
    old_price: Optional[float] = None
    new_price: Optional[float] = None
    discount_amount: Optional[float] = None
    discount_percentage: Optional[int] = None
    target_price: Optional[float] = None

    @property
    def notifies(self) -> bool:
        return self.kind not in STATUS_ONLY_TRANSITIONS


def detect_changes(
    old_price: Optional[float],
    new_price: Optional[float],
    old_available: bool,
    new_available: bool,
    target_price: Optional[float] = None
) -> List[Transition]:
    """
    Compare previous and current state and return the transitions, in rule order.

    Pure function. Unchanged inputs yield no transitions, and the target
    price rule only fires alongside an observed price change so it does not
    repeat on every sweep while the price stays flat.
    """
    transitions: List[Transition] = []

    price_known = old_price is not None and new_price is not None
    price_changed = price_known and old_price != new_price

    if price_changed and new_price < old_price:
        discount_amount = old_price - new_price
        transitions.append(Transition(
            kind=TransitionKind.PRICE_DROP,
            old_price=old_price,
            new_price=new_price,
            discount_amount=discount_amount,
            discount_percentage=round_half_up(discount_amount / old_price * 100) if old_price else 0
        ))
    elif price_changed and new_price > old_price:
        transitions.append(Transition(
            kind=TransitionKind.PRICE_INCREASE,
            old_price=old_price,
            new_price=new_price
        ))

    if price_changed and target_price is not None and new_price <= target_price:
        transitions.append(Transition(
            kind=TransitionKind.TARGET_PRICE_REACHED,
            old_price=old_price,
            new_price=new_price,
            target_price=target_price
        ))

    if not old_available and new_available:
        transitions.append(Transition(
            kind=TransitionKind.BACK_IN_STOCK,
            old_price=old_price,
            new_price=new_price
        ))
    elif old_available and not new_available:
        transitions.append(Transition(
            kind=TransitionKind.OUT_OF_STOCK,
            old_price=old_price,
            new_price=new_price
        ))

    return transitions
