"""Product snapshot models"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class ProductSnapshot(BaseModel):
    """Display and pricing attributes of a product captured at load time"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: float = Field(ge=0)
    stock: int = Field(ge=0, default=0)
    image_url: Optional[str] = None

    @property
    def in_stock(self) -> bool:
        return self.stock > 0
