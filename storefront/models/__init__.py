# Storefront Models

from .product import ProductSnapshot
from .cart import (
    CartStatus,
    CartRow,
    CartLine,
    CartSummary,
    AddToCartRequest,
    UpdateCartItemRequest,
    CartResponse,
)

__all__ = [
    "ProductSnapshot",
    "CartStatus",
    "CartRow",
    "CartLine",
    "CartSummary",
    "AddToCartRequest",
    "UpdateCartItemRequest",
    "CartResponse",
]
