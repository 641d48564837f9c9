"""Interfaces of the collaborators the cart manager talks to"""

from typing import Iterable, Protocol

from ..models.cart import CartRow
from ..models.product import ProductSnapshot


class RemoteCartStore(Protocol):
    """
    Persistent (user, product, quantity) rows.

    Every method raises StoreError on failure. upsert_quantity sets an
    absolute quantity, so retrying a call never double-applies it.
    """

    async def list_by_user(self, user_id: str) -> list[CartRow]:
        ...

    async def upsert_quantity(self, user_id: str, product_id: str, quantity: int) -> None:
        ...

    async def delete_row(self, user_id: str, product_id: str) -> None:
        ...

    async def delete_all_by_user(self, user_id: str) -> None:
        ...


class ProductSnapshotProvider(Protocol):
    """Read access to product attributes, raises StoreError on failure"""

    async def get_by_ids(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        ...
