# Storefront Services

from .store import RemoteCartStore, ProductSnapshotProvider
from .cart_manager import CartManager, CartResult
from .supabase_client import SupabaseClient, SupabaseCartStore, SupabaseProductCatalog

__all__ = [
    "RemoteCartStore",
    "ProductSnapshotProvider",
    "CartManager",
    "CartResult",
    "SupabaseClient",
    "SupabaseCartStore",
    "SupabaseProductCatalog",
]
