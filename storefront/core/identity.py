"""Identity provider for the signed-in storefront user"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import jwt

from .exceptions import NotAuthenticated

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional["Identity"]], None]


@dataclass(frozen=True)
class Identity:
    """Authenticated user"""
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None


class IdentityProvider:
    """
    Holds the current user and notifies subscribers when it changes.

    Listeners are called synchronously with the new identity (or None on
    sign-out). Setting the same identity again does not notify.
    """

    def __init__(self, identity: Optional[Identity] = None):
        self._current = identity
        self._listeners: list[IdentityListener] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register a change listener, returns an unsubscribe callable"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_identity(self, identity: Optional[Identity]) -> None:
        if identity == self._current:
            return
        self._current = identity
        logger.info(f"Identity changed: {identity.user_id if identity else 'signed out'}")
        for listener in list(self._listeners):
            listener(identity)

    def sign_out(self) -> None:
        self.set_identity(None)


class TokenIdentityProvider(IdentityProvider):
    """Identity provider fed by Supabase access tokens (HS256 JWTs)"""

    def __init__(self, jwt_secret: Optional[str], audience: str = "authenticated"):
        super().__init__()
        self._jwt_secret = jwt_secret
        self._audience = audience

    def decode(self, access_token: str) -> Identity:
        """Decode and verify an access token"""
        if not self._jwt_secret:
            raise NotAuthenticated("Token verification is not configured")
        try:
            payload = jwt.decode(
                access_token,
                self._jwt_secret,
                algorithms=["HS256"],
                audience=self._audience,
            )
        except jwt.PyJWTError as e:
            logger.warning(f"Rejected access token: {e}")
            raise NotAuthenticated("Invalid access token") from e

        user_id = payload.get("sub")
        if not user_id:
            raise NotAuthenticated("Access token has no subject")

        return Identity(
            user_id=str(user_id),
            email=payload.get("email"),
            access_token=access_token,
        )

    def sign_in(self, access_token: str) -> Identity:
        identity = self.decode(access_token)
        self.set_identity(identity)
        return identity
