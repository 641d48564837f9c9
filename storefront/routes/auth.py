"""Session routes feeding the identity provider"""

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel

from ..core.exceptions import NotAuthenticated
from ..core.identity import TokenIdentityProvider
from ..services.cart_manager import CartManager
from .cart import get_identity_provider, get_cart_manager

router = APIRouter(prefix="/api/auth", tags=["Auth"])


class SignInRequest(BaseModel):
    """Supabase access token of the signed-in user"""
    access_token: str


@router.post("/session")
async def sign_in(
    request: SignInRequest,
    provider: TokenIdentityProvider = Depends(get_identity_provider),
    manager: CartManager = Depends(get_cart_manager),
):
    """
    Start a session from an access token.

    Switching to another user drops the previous cart and loads the new
    user's cart before responding.
    """
    try:
        identity = provider.sign_in(request.access_token)
    except NotAuthenticated as e:
        raise HTTPException(status_code=401, detail=e.message)

    await manager.settle()

    return {
        "user_id": identity.user_id,
        "email": identity.email,
        "cart_status": manager.status.value,
        "error": manager.last_error.to_dict() if manager.last_error else None,
    }


@router.delete("/session")
async def sign_out(
    provider: TokenIdentityProvider = Depends(get_identity_provider),
    manager: CartManager = Depends(get_cart_manager),
):
    """End the session, the cart is emptied locally"""
    provider.sign_out()
    return {"message": "Signed out", "cart_status": manager.status.value}


@router.get("/status")
async def get_auth_status(
    provider: TokenIdentityProvider = Depends(get_identity_provider),
    manager: CartManager = Depends(get_cart_manager),
):
    """Check who is signed in"""
    identity = provider.current
    return {
        "signed_in": identity is not None,
        "user_id": identity.user_id if identity else None,
        "email": identity.email if identity else None,
        "cart_status": manager.status.value,
    }
