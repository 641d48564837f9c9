"""In-memory product catalog"""

from typing import Iterable, Optional
from ..models.product import ProductSnapshot

# Seed catalog used by the memory backend
PRODUCTS: dict[str, ProductSnapshot] = {
    "prod-001": ProductSnapshot(
        id="prod-001",
        name="Linen Throw Pillow",
        price=34.00,
        stock=40,
        image_url="/static/images/linen-pillow.jpg",
    ),
    "prod-002": ProductSnapshot(
        id="prod-002",
        name="Stoneware Mug Set (4)",
        price=48.50,
        stock=25,
        image_url="/static/images/mug-set.jpg",
    ),
    "prod-003": ProductSnapshot(
        id="prod-003",
        name="Walnut Serving Board",
        price=72.00,
        stock=12,
        image_url="/static/images/serving-board.jpg",
    ),
    "prod-004": ProductSnapshot(
        id="prod-004",
        name="Wool Blend Blanket",
        price=129.00,
        stock=8,
        image_url="/static/images/wool-blanket.jpg",
    ),
    "prod-005": ProductSnapshot(
        id="prod-005",
        name="Brass Candle Holder",
        price=25.50,
        stock=3,
        image_url="/static/images/candle-holder.jpg",
    ),
    "prod-006": ProductSnapshot(
        id="prod-006",
        name="Ceramic Table Lamp",
        price=89.99,
        stock=0,
        image_url="/static/images/table-lamp.jpg",
    ),
}


class ProductDatabase:
    """In-memory product snapshot provider"""

    def __init__(self, products: Optional[dict[str, ProductSnapshot]] = None):
        source = PRODUCTS if products is None else products
        self.products = {pid: p.model_copy() for pid, p in source.items()}

    def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        """Get a product by ID"""
        return self.products.get(product_id)

    async def get_by_ids(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        """Look up snapshots, unknown IDs are left out"""
        return {
            pid: self.products[pid].model_copy()
            for pid in product_ids
            if pid in self.products
        }

    def set_stock(self, product_id: str, stock: int) -> bool:
        """Overwrite product stock, returns False for unknown products"""
        product = self.products.get(product_id)
        if not product or stock < 0:
            return False
        product.stock = stock
        return True


# Singleton instance
product_db = ProductDatabase()
