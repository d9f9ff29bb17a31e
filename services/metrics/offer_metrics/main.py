"""FastAPI application entry point.

Offer Metrics API - derived sales metrics for the offer catalog.
"""

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from offer_metrics.routes import api_router
from offer_metrics.schemas import ErrorResponse
from offer_metrics.services.errors import EndpointUnavailableError
from offer_metrics.services.metrics_service import close_metrics_service, init_metrics_service
from offer_metrics.settings import get_settings
from offer_metrics.stores.memory import InMemoryCacheStorage
from offer_metrics.stores.redis import RedisCacheStorage, close_redis, init_redis

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    settings = get_settings()

    storage = InMemoryCacheStorage()
    if settings.cache_backend == "redis":
        # Fall back to the in-process cache if Redis is unreachable (e.g. in tests)
        try:
            await init_redis()
            storage = RedisCacheStorage()
        except Exception:
            logger.exception("Redis init failed, using in-memory cache")

    init_metrics_service(storage)

    yield

    # Shutdown
    await close_metrics_service()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Offer metrics pipeline, session cache and change-feed reconciler",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EndpointUnavailableError)
    async def endpoint_unavailable_handler(
        request: Request, exc: EndpointUnavailableError
    ) -> JSONResponse:
        body = ErrorResponse.build("ENDPOINT_UNAVAILABLE", str(exc))
        return JSONResponse(status_code=502, content=body.model_dump())

    # Exception handler for structured error format
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        body = ErrorResponse.build(
            "INTERNAL_ERROR", str(exc) if settings.debug else "Internal server error"
        )
        return JSONResponse(status_code=500, content=body.model_dump())

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, bool]:
        """Health check endpoint."""
        return {"ok": True}

    # Include API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "offer_metrics.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
