from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from backend.recommender.errors import InvalidInteractionType


class InteractionType(str, Enum):
    VIEW = "view"
    ADD_TO_CART = "add_to_cart"
    PURCHASE = "purchase"
    RATING = "rating"
    WISHLIST = "wishlist"

    @property
    def weight(self) -> float:
        return _WEIGHTS[self]


_WEIGHTS = {
    InteractionType.VIEW: 1.0,
    InteractionType.ADD_TO_CART: 3.0,
    InteractionType.PURCHASE: 10.0,
    InteractionType.RATING: 5.0,
    InteractionType.WISHLIST: 2.0,
}

# interaction types that count as "bought together" for co-occurrence
BASKET_TYPES = (InteractionType.PURCHASE, InteractionType.ADD_TO_CART)


def parse_interaction_type(raw: object) -> InteractionType:
    """Case-insensitive parse of an external value; unknown values raise InvalidInteractionType."""
    if isinstance(raw, InteractionType):
        return raw
    if not isinstance(raw, str):
        raise InvalidInteractionType(raw)
    try:
        return InteractionType(raw.strip().lower())
    except ValueError:
        raise InvalidInteractionType(raw) from None


def weighted_score(itype: InteractionType, value: Optional[float]) -> float:
    # an explicit rating value replaces the fixed rating weight
    if itype is InteractionType.RATING and value is not None:
        return float(value)
    return itype.weight


@dataclass(frozen=True)
class Interaction:
    user_id: int
    product_id: int
    type: InteractionType
    value: Optional[float]
    ts: int
    session_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def score(self) -> float:
        return weighted_score(self.type, self.value)


@dataclass(frozen=True)
class Rating:
    user_id: int
    product_id: int
    rating: float
    review_text: Optional[str]
    created_at: int
    updated_at: int
