"""
Notification Engine - FastAPI Application.

Wires configuration, logging, the store and broker backends and the
notification service into an ASGI app.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Dependency Injection, Configuration Externalization
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from .config import Environment, NotificationEngineConfig, get_config
from .domain import NotificationService, create_notification_service
from .infrastructure import (
    InMemoryJobBroker,
    InMemoryNotificationStore,
    JobBroker,
    NotificationStore,
    RedisClient,
    RedisJobBroker,
    RedisNotificationStore,
)

logger = structlog.get_logger(__name__)


def configure_logging(config: NotificationEngineConfig) -> None:
    """Configure structlog processors and the level filter."""
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if config.observability.log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.service.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _create_backends(
    config: NotificationEngineConfig,
) -> tuple[NotificationStore, JobBroker, RedisClient | None]:
    """Pick the store and broker implementations named by the configuration."""
    redis_client = RedisClient(config.redis) if config.uses_redis else None
    store: NotificationStore = (
        RedisNotificationStore(redis_client) if config.store.backend == "redis" and redis_client
        else InMemoryNotificationStore()
    )
    broker: JobBroker = (
        RedisJobBroker(redis_client, config.queue.queue_name)
        if config.queue.backend == "redis" and redis_client
        else InMemoryJobBroker()
    )
    return store, broker, redis_client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    config: NotificationEngineConfig = app.state.config
    configure_logging(config)
    logger.info("notification_engine_starting",
                service=config.service.name,
                env=config.service.env.value,
                store_backend=config.store.backend,
                queue_backend=config.queue.backend)

    store, broker, redis_client = _create_backends(config)
    if redis_client is not None:
        await redis_client.connect()

    service = create_notification_service(store, broker, config)
    await service.init()
    app.state.notification_service = service
    app.state.redis_client = redis_client
    logger.info("notification_engine_ready")

    try:
        yield
    finally:
        app.state.notification_service = None
        app.state.redis_client = None
        await service.shutdown()
        if redis_client is not None:
            await redis_client.disconnect()
        logger.info("notification_engine_stopped")


def create_app(config: NotificationEngineConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_config()
    is_production = config.is_production()

    app = FastAPI(
        title="Notification Delivery Engine",
        description="Multi-channel notification delivery with durable queueing, retries and webhooks",
        version=config.service.version,
        lifespan=lifespan,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
    )
    app.state.config = config
    app.state.notification_service = None
    app.state.redis_client = None

    from .api import router as notification_router
    app.include_router(notification_router)

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/ready", tags=["health"])
    async def ready():
        """Readiness probe endpoint."""
        service: NotificationService | None = app.state.notification_service
        if service is None or not service.coordinator.is_running:
            return {"status": "not_ready", "reason": "service_not_initialized"}
        redis_client: RedisClient | None = app.state.redis_client
        if redis_client is not None:
            health = await redis_client.check_health()
            if health["status"] != "healthy":
                return {"status": "not_ready", "reason": "redis_unhealthy", "error": health.get("error")}
        return {"status": "ready"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(
        "notification_engine.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.env == Environment.DEVELOPMENT,
        log_level=settings.service.log_level.lower(),
    )
