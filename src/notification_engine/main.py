"""
Notification Delivery Engine - FastAPI Application.

Hosts the delivery engine behind an HTTP API. The lifespan builds the engine
once from settings and tears it down on shutdown.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Dependency Injection, Configuration Externalization
"""
from __future__ import annotations

from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI
import structlog

from .config import EngineSettings
from .engine import DeliveryEngine, build_delivery_engine
from .infrastructure.repository import RepositoryFactory
from .observability import configure_logging

logger = structlog.get_logger(__name__)

_engine: DeliveryEngine | None = None


def get_delivery_engine() -> DeliveryEngine:
    """Get the engine owned by the running application."""
    if _engine is None:
        raise RuntimeError("Delivery engine not initialized")
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _engine

    settings: EngineSettings = app.state.settings
    configure_logging(settings)
    logger.info("notification_engine_starting",
                service=settings.service.name,
                env=settings.service.env.value,
                providers=settings.get_enabled_providers(),
                store=settings.store.backend)

    pool = None
    if settings.store.backend == "postgres":
        pool = await asyncpg.create_pool(
            settings.store.dsn,
            min_size=settings.store.pool_min_size,
            max_size=settings.store.pool_max_size,
        )
    repository = RepositoryFactory(settings.store, pool).get_delivery_log_repository()
    if pool is not None:
        await repository.ensure_schema()

    _engine = build_delivery_engine(settings, repository=repository)
    logger.info("notification_engine_ready")

    yield

    await _engine.aclose()
    if pool is not None:
        await pool.close()
    logger.info("notification_engine_shutdown")
    _engine = None


def create_app(settings: EngineSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or EngineSettings.load()

    app = FastAPI(
        title="Notification Delivery Engine",
        description="Event-driven transactional e-mail delivery with provider failover",
        version=settings.service.version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url="/redoc" if not settings.is_production() else None,
    )
    app.state.settings = settings

    from .api import router as notification_router
    app.include_router(notification_router)

    @app.get("/", tags=["health"])
    async def root():
        """Service information endpoint."""
        return {
            "service": settings.service.name,
            "version": settings.service.version,
            "status": "running",
            "environment": settings.service.env.value,
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/ready", tags=["health"])
    async def ready():
        """Readiness check endpoint."""
        if _engine is None:
            return {"status": "not_ready", "reason": "engine_not_initialized"}
        return {"status": "ready", "providers": _engine.chain.provider_names}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = EngineSettings.load()
    uvicorn.run(
        "notification_engine.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.env.value == "development",
        log_level=settings.service.log_level.lower(),
    )
