"""Cart error taxonomy"""

from typing import Optional


class StoreError(Exception):
    """Raised by a remote collaborator (cart store or product catalog)"""
    pass


class CartError(Exception):
    """Base exception for cart state manager errors"""

    code = "cart_error"
    recoverable = True

    def __init__(self, message: Optional[str] = None, product_id: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.product_id = product_id

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "product_id": self.product_id,
            "recoverable": self.recoverable,
        }


class NotAuthenticated(CartError):
    """Mutation attempted without a signed-in user"""
    code = "not_authenticated"


class StockExceeded(CartError):
    """Requested quantity was clamped to the available stock"""
    code = "stock_exceeded"

    def __init__(self, product_id: str, requested: int, applied: int):
        super().__init__(
            f"Only {applied} in stock, requested {requested}",
            product_id=product_id,
        )
        self.requested = requested
        self.applied = applied


class InvalidQuantity(CartError):
    """Requested quantity is not a positive number"""
    code = "invalid_quantity"


class OutOfStock(CartError):
    """Product has no stock left"""
    code = "out_of_stock"


class ProductNotFound(CartError):
    """Product is not in the catalog"""
    code = "product_not_found"


class IdentityChanged(CartError):
    """Signed-in user changed before the mutation could be applied"""
    code = "identity_changed"


class RemoteWriteFailed(CartError):
    """Cart store rejected a mutation; the line was rolled back"""
    code = "remote_write_failed"


class RemoteReadFailed(CartError):
    """Cart could not be loaded; the previous state is kept"""
    code = "remote_read_failed"


class StaleCompletionDiscarded(CartError):
    """A write finished after a newer mutation was dispatched for its line"""
    code = "stale_completion_discarded"

    def __init__(self, product_id: Optional[str], token: int, latest: int):
        super().__init__(
            f"Completion #{token} superseded by #{latest}",
            product_id=product_id,
        )
        self.token = token
        self.latest = latest
