"""Cart row storage for the memory backend"""

from typing import Optional

from ..core.exceptions import StoreError
from ..models.cart import CartRow


class CartDatabase:
    """In-memory (user, product, quantity) rows keyed by user"""

    def __init__(self):
        self.rows: dict[str, dict[str, int]] = {}

    async def list_by_user(self, user_id: str) -> list[CartRow]:
        """Rows for a user in insertion order"""
        return [
            CartRow(product_id=pid, quantity=qty)
            for pid, qty in self.rows.get(user_id, {}).items()
        ]

    async def upsert_quantity(self, user_id: str, product_id: str, quantity: int) -> None:
        """Insert the row or overwrite its quantity"""
        if quantity <= 0:
            raise StoreError(f"Invalid quantity {quantity} for {product_id}")
        self.rows.setdefault(user_id, {})[product_id] = quantity

    async def delete_row(self, user_id: str, product_id: str) -> None:
        """Delete one row, missing rows are ignored"""
        self.rows.get(user_id, {}).pop(product_id, None)

    async def delete_all_by_user(self, user_id: str) -> None:
        """Delete every row of a user"""
        self.rows.pop(user_id, None)

    def get_quantity(self, user_id: str, product_id: str) -> Optional[int]:
        return self.rows.get(user_id, {}).get(product_id)


# Singleton instance
cart_db = CartDatabase()
