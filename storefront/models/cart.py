"""Cart models for the storefront"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from .product import ProductSnapshot


class CartStatus(str, Enum):
    """Lifecycle state of the cart"""
    UNAUTHENTICATED = "unauthenticated"
    LOADING = "loading"
    READY = "ready"


class CartRow(BaseModel):
    """Bare row as stored remotely"""
    product_id: str
    quantity: int = Field(gt=0)


class CartLine(BaseModel):
    """One product's quantity entry in the cart"""
    product_id: str
    quantity: int = Field(ge=1)
    product: ProductSnapshot
    pending: bool = False
    error: Optional[str] = None
    stock_adjusted: bool = False

    @computed_field
    @property
    def subtotal(self) -> float:
        return round(self.product.price * self.quantity, 2)


class CartSummary(BaseModel):
    """Order summary shown next to the cart"""
    subtotal: float
    shipping: float
    total: float
    free_shipping_threshold: float
    remaining_for_free_shipping: float
    free_shipping_progress: float = Field(ge=0, le=1)


class AddToCartRequest(BaseModel):
    """Request to add item to cart"""
    product_id: str
    quantity: int = Field(default=1, ge=1)


class UpdateCartItemRequest(BaseModel):
    """Request to set item quantity; zero or less removes the line"""
    quantity: int


class CartResponse(BaseModel):
    """Cart API response"""
    status: CartStatus
    items: list[CartLine] = []
    total_items: int = 0
    total_price: float = 0.0
    summary: CartSummary
    message: Optional[str] = None
    error: Optional[dict] = None
    notices: list[dict] = []
