"""
Storefront Cart Application

Shopping cart state manager behind a small HTTP API.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load environment variables
load_dotenv(os.path.join(os.path.dirname(__file__), "..", "config", ".env"))

from .routes import cart_router, auth_router
from .core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Storefront cart starting up...")
    logger.info(f"Store backend: {settings.store_backend}")
    logger.info(f"Supabase configured: {settings.supabase_configured}")

    yield

    logger.info("Storefront cart shutting down...")
    from .routes import cart as cart_routes
    if cart_routes.cart_manager:
        cart_routes.cart_manager.close()
    if cart_routes.supabase_client:
        await cart_routes.supabase_client.close()


# Create FastAPI app
app = FastAPI(
    title="Storefront Cart",
    description="Shopping cart state for the storefront",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(cart_router)
app.include_router(auth_router)


@app.get("/")
async def home():
    """API index"""
    return {
        "message": "Storefront Cart API",
        "docs": "/docs",
        "endpoints": {
            "cart": "/api/cart",
            "auth": "/api/auth",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "storefront-cart",
        "store_backend": settings.store_backend,
        "supabase_configured": settings.supabase_configured,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "storefront.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
