"""Shared fixtures for the cart tests"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import pytest

from storefront.core.exceptions import StoreError
from storefront.core.identity import Identity, IdentityProvider
from storefront.database.carts import CartDatabase
from storefront.database.products import ProductDatabase
from storefront.models.product import ProductSnapshot
from storefront.services.cart_manager import CartManager

ALICE = Identity(user_id="user-alice", email="alice@example.com")
BOB = Identity(user_id="user-bob", email="bob@example.com")

TEST_PRODUCTS = {
    "p1": ProductSnapshot(id="p1", name="Canvas Tote", price=10.00, stock=10),
    "p2": ProductSnapshot(id="p2", name="Desk Lamp", price=25.50, stock=5),
    "p3": ProductSnapshot(id="p3", name="Beeswax Candle", price=4.00, stock=3),
    "p4": ProductSnapshot(id="p4", name="Sold Out Vase", price=30.00, stock=0),
}


@dataclass
class HeldCall:
    """A store call parked until the test releases it"""
    kind: str
    args: tuple
    released: asyncio.Event = field(default_factory=asyncio.Event)
    fail: bool = False

    def release(self, fail: bool = False) -> None:
        self.fail = fail
        self.released.set()


class ControlledCartStore(CartDatabase):
    """
    In-memory cart store whose calls can be held open or failed.

    With `hold_writes` / `hold_reads` set, each call parks in `held`
    until released, so tests decide completion order.
    """

    def __init__(self):
        super().__init__()
        self.calls: list[tuple] = []
        self.held: list[HeldCall] = []
        self.hold_writes = False
        self.hold_reads = False
        self.fail_writes = False
        self.fail_reads = False

    async def _gate(self, kind: str, args: tuple, hold: bool, fail: bool) -> None:
        self.calls.append((kind, *args))
        if hold:
            call = HeldCall(kind=kind, args=args)
            self.held.append(call)
            await call.released.wait()
            fail = fail or call.fail
        if fail:
            raise StoreError(f"{kind} failed")

    async def wait_for_held(self, count: int) -> None:
        for _ in range(200):
            if len(self.held) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} held calls, got {len(self.held)}")

    def writes(self) -> list[tuple]:
        return [call for call in self.calls if call[0] != "list"]

    async def list_by_user(self, user_id):
        await self._gate("list", (user_id,), self.hold_reads, self.fail_reads)
        return await super().list_by_user(user_id)

    async def upsert_quantity(self, user_id, product_id, quantity):
        await self._gate("upsert", (user_id, product_id, quantity), self.hold_writes, self.fail_writes)
        await super().upsert_quantity(user_id, product_id, quantity)

    async def delete_row(self, user_id, product_id):
        await self._gate("delete", (user_id, product_id), self.hold_writes, self.fail_writes)
        await super().delete_row(user_id, product_id)

    async def delete_all_by_user(self, user_id):
        await self._gate("delete_all", (user_id,), self.hold_writes, self.fail_writes)
        await super().delete_all_by_user(user_id)


@pytest.fixture
def catalog() -> ProductDatabase:
    return ProductDatabase(TEST_PRODUCTS)


@pytest.fixture
def store() -> ControlledCartStore:
    return ControlledCartStore()


@pytest.fixture
def identity_provider() -> IdentityProvider:
    return IdentityProvider()


@pytest.fixture
def manager(store, catalog, identity_provider) -> CartManager:
    cart = CartManager(
        store,
        catalog,
        identity_provider,
        free_shipping_threshold=100.0,
        shipping_cost=9.99,
    )
    yield cart
    cart.close()


async def sign_in(manager: CartManager, provider: IdentityProvider, identity: Optional[Identity]) -> None:
    """Switch identity and wait for the cart to load"""
    provider.set_identity(identity)
    await manager.settle()
