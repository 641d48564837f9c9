# Storefront Routes

from .cart import router as cart_router
from .auth import router as auth_router

__all__ = ["cart_router", "auth_router"]
