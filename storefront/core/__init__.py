# Core modules

from .config import settings, get_settings, Settings
from .identity import Identity, IdentityProvider, TokenIdentityProvider

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "Identity",
    "IdentityProvider",
    "TokenIdentityProvider",
]
