"""FastAPI application for the Payments Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from libs.common.backends import connect_backends, disconnect_backends
from libs.common.errors import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.payments_service.gateway import build_gateway
from services.payments_service.routers import admin_router, webhooks_router
from slowapi.errors import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_backends(app)
    app.state.payment_gateway = build_gateway()
    yield
    await disconnect_backends(app)


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="Marketplace Payments Service",
        version="0.1.0",
        description="Processor webhooks, refunds and vendor payouts.",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(webhooks_router)
    app.include_router(admin_router)

    return app


app = create_app()
