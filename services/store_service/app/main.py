"""FastAPI application for the Store Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from libs.common.backends import connect_backends, disconnect_backends
from libs.common.errors import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.payments_service.gateway import build_gateway
from services.store_service.routers import (
    admin_inventory_router,
    cart_router,
    catalog_router,
    orders_router,
)
from slowapi.errors import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_backends(app)
    app.state.payment_gateway = build_gateway()
    yield
    await disconnect_backends(app)


def create_app() -> FastAPI:
    """Create and configure the Store Service FastAPI app."""
    app = FastAPI(
        title="Marketplace Store Service",
        version="0.1.0",
        description="Multi-vendor checkout, orders and inventory.",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "store"}

    # Customer and vendor routes (catalog, cart, checkout, orders)
    app.include_router(catalog_router, prefix="/store")
    app.include_router(cart_router, prefix="/store")
    app.include_router(orders_router, prefix="/store")

    # Admin routes
    app.include_router(admin_inventory_router, prefix="/admin/store")

    return app


app = create_app()
