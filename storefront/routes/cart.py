"""Cart API routes for the storefront"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..core.exceptions import (
    CartError,
    NotAuthenticated,
    ProductNotFound,
    OutOfStock,
    IdentityChanged,
    RemoteWriteFailed,
    RemoteReadFailed,
)
from ..core.identity import TokenIdentityProvider
from ..database import cart_db, product_db
from ..models.cart import AddToCartRequest, UpdateCartItemRequest, CartResponse
from ..services.cart_manager import CartManager, CartResult
from ..services.supabase_client import SupabaseClient, SupabaseCartStore, SupabaseProductCatalog

router = APIRouter(prefix="/api/cart", tags=["Cart"])

# Process-wide collaborators, created on first use
identity_provider: Optional[TokenIdentityProvider] = None
supabase_client: Optional[SupabaseClient] = None
cart_manager: Optional[CartManager] = None


def get_identity_provider() -> TokenIdentityProvider:
    """Get or create the identity provider"""
    global identity_provider
    if identity_provider is None:
        identity_provider = TokenIdentityProvider(
            jwt_secret=settings.supabase_jwt_secret,
            audience=settings.supabase_jwt_audience,
        )
    return identity_provider


def get_cart_manager() -> CartManager:
    """Get or create the cart manager for the configured backend"""
    global cart_manager, supabase_client
    if cart_manager is None:
        provider = get_identity_provider()
        if settings.store_backend == "supabase":
            if not settings.supabase_configured:
                raise RuntimeError("STORE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_ANON_KEY")
            supabase_client = SupabaseClient(
                supabase_url=settings.supabase_url,
                api_key=settings.supabase_anon_key,
                identity_provider=provider,
                timeout=settings.request_timeout,
            )
            store = SupabaseCartStore(supabase_client, table=settings.cart_table)
            products = SupabaseProductCatalog(supabase_client, table=settings.products_table)
        else:
            store, products = cart_db, product_db
        cart_manager = CartManager(store, products, provider)
    return cart_manager


def build_cart_response(
    manager: CartManager,
    result: Optional[CartResult] = None,
    message: Optional[str] = None,
) -> CartResponse:
    """Render the manager's current state"""
    error = result.error if result else None
    return CartResponse(
        status=manager.status,
        items=manager.items(),
        total_items=manager.total_items(),
        total_price=manager.total_price(),
        summary=manager.summary(),
        message=message,
        error=error.to_dict() if error else None,
        notices=[notice.to_dict() for notice in result.notices] if result else [],
    )


def _status_code(error: CartError) -> int:
    if isinstance(error, ProductNotFound):
        return 404
    if isinstance(error, (OutOfStock, IdentityChanged)):
        return 409
    if isinstance(error, (RemoteWriteFailed, RemoteReadFailed)):
        return 502
    return 400


def _respond(manager: CartManager, result: CartResult, message: str):
    """Cart body for success, error status plus cart body for failures"""
    if result.ok:
        return build_cart_response(manager, result, message)
    if isinstance(result.error, NotAuthenticated):
        raise HTTPException(status_code=401, detail=result.error.message)
    body = build_cart_response(manager, result, result.error.message)
    return JSONResponse(status_code=_status_code(result.error), content=body.model_dump(mode="json"))


@router.get("", response_model=CartResponse)
async def get_cart(manager: CartManager = Depends(get_cart_manager)):
    """Get the signed-in user's cart"""
    return build_cart_response(manager, message=None if manager.identity else "Sign in to view your cart")


@router.post("/items", response_model=CartResponse)
async def add_to_cart(
    request: AddToCartRequest,
    manager: CartManager = Depends(get_cart_manager),
):
    """Add an item to the cart"""
    result = await manager.add_to_cart(request.product_id, request.quantity)
    return _respond(manager, result, f"Added {request.quantity}x {request.product_id} to cart")


@router.put("/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
    product_id: str,
    request: UpdateCartItemRequest,
    manager: CartManager = Depends(get_cart_manager),
):
    """Set item quantity, zero removes the item"""
    result = await manager.update_quantity(product_id, request.quantity)
    return _respond(manager, result, "Cart updated")


@router.delete("/items/{product_id}", response_model=CartResponse)
async def remove_from_cart(
    product_id: str,
    manager: CartManager = Depends(get_cart_manager),
):
    """Remove an item from the cart"""
    result = await manager.remove_from_cart(product_id)
    return _respond(manager, result, "Item removed")


@router.delete("", response_model=CartResponse)
async def clear_cart(manager: CartManager = Depends(get_cart_manager)):
    """Clear all items from cart"""
    result = await manager.clear()
    return _respond(manager, result, "Cart cleared")


@router.post("/refresh", response_model=CartResponse)
async def refresh_cart(manager: CartManager = Depends(get_cart_manager)):
    """Reload the cart from the store"""
    if manager.identity is None:
        raise HTTPException(status_code=401, detail="Sign in to view your cart")
    result = await manager.refresh()
    return _respond(manager, result, "Cart refreshed")
