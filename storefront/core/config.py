"""Storefront Configuration"""

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(
        env_file="config/.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Storefront Cart"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000

    # Which collaborators back the cart
    store_backend: Literal["memory", "supabase"] = "memory"

    # Supabase Configuration
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    supabase_jwt_audience: str = "authenticated"
    cart_table: str = "cart_items"
    products_table: str = "products"
    request_timeout: float = 30.0

    # Order summary
    free_shipping_threshold: float = 100.0
    shipping_cost: float = 9.99

    @property
    def supabase_configured(self) -> bool:
        """Check if Supabase credentials are configured"""
        return all([
            self.supabase_url,
            self.supabase_anon_key,
        ])


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
