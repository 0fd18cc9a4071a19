"""FastAPI application for the Identity Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from libs.common.backends import connect_backends, disconnect_backends
from libs.common.errors import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.identity_service.routers import webhooks_router
from slowapi.errors import RateLimitExceeded


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_backends(app)
    yield
    await disconnect_backends(app)


def create_app() -> FastAPI:
    """Create and configure the Identity Service FastAPI app."""
    app = FastAPI(
        title="Marketplace Identity Service",
        version="0.1.0",
        description="Mirrors identity-provider users and sessions into the marketplace.",
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "identity"}

    app.include_router(webhooks_router)

    return app


app = create_app()
