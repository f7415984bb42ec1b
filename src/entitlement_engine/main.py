"""Entitlement engine - FastAPI application."""

import asyncio
import contextlib
import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import _rate_limit_exceeded_handler as _slowapi_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from entitlement_engine.config import Settings, settings
from entitlement_engine.database.connection import (
    close_database,
    create_engine,
    create_session_factory,
    init_database,
)
from entitlement_engine.dependencies import EntitlementServices
from entitlement_engine.middleware.auth import AuthMiddleware
from entitlement_engine.middleware.rate_limit import limiter
from entitlement_engine.observability import SentryConfig, configure_logging, init_sentry
from entitlement_engine.redis_client import RedisClient
from entitlement_engine.routes import downloads, subscribers, webhooks
from entitlement_engine.services.billing_gateway import BillingGateway
from entitlement_engine.services.reconciliation import ReconciliationJob
from entitlement_engine.store.base import EntitlementStore
from entitlement_engine.store.memory import InMemoryEntitlementStore
from entitlement_engine.store.sql import SqlEntitlementStore

logger = structlog.get_logger()


def _rate_limit_exceeded_handler(request: Request, exc: Exception) -> Response:
    """Wrapper for slowapi handler with correct signature for FastAPI."""
    if isinstance(exc, RateLimitExceeded):
        return _slowapi_handler(request, exc)  # type: ignore[no-any-return]
    raise exc


async def _database_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """The store could not be reached; the caller may retry."""
    logger.error(
        "Entitlement store error",
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=503,
        content={"error": "ServiceUnavailable", "retryable": True},
    )


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions and return a generic error with a correlation id."""
    error_id = str(uuid.uuid4())[:8]

    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


def _task_exception_callback(task: asyncio.Task[None], task_name: str) -> None:
    """Log exceptions from background tasks as soon as they finish."""
    try:
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed with exception",
                task_name=task_name,
                exc_info=exc,
            )
    except asyncio.CancelledError:
        pass


def create_monitored_task(coro: Any, name: str) -> asyncio.Task[None]:
    """Create an asyncio task with exception monitoring.

    Args:
        coro: The coroutine to run
        name: Name for logging purposes

    Returns:
        The created task with exception callback attached
    """
    task = asyncio.create_task(coro)
    task.add_done_callback(lambda t: _task_exception_callback(t, name))
    return task


async def reconciliation_background_task(job: ReconciliationJob, interval: int) -> None:
    """Run the reconciliation sweep every `interval` seconds."""
    while True:
        try:
            await asyncio.sleep(interval)
            await job.run_once()
        except asyncio.CancelledError:
            logger.info("Reconciliation task cancelled")
            break
        except Exception as e:
            logger.exception("Error in reconciliation task", error=str(e))
            await asyncio.sleep(60)


class _Resources:
    """Connections opened by the lifespan and closed on shutdown."""

    engine: AsyncEngine | None = None
    redis: RedisClient | None = None
    reconciliation: asyncio.Task[None] | None = None


async def _build_store(app_settings: Settings, resources: _Resources) -> EntitlementStore:
    if app_settings.STORE_BACKEND == "memory":
        logger.warning("Using in-memory entitlement store; state is lost on restart")
        return InMemoryEntitlementStore(conflict_retries=app_settings.STORE_CONFLICT_RETRIES)

    resources.engine = create_engine(app_settings)
    await init_database(resources.engine, app_settings.ENVIRONMENT)
    return SqlEntitlementStore(
        create_session_factory(resources.engine),
        conflict_retries=app_settings.STORE_CONFLICT_RETRIES,
    )


def _make_lifespan(app_settings: Settings) -> Any:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting entitlement engine", version=app_settings.VERSION)

        resources = _Resources()
        services: EntitlementServices | None = getattr(app.state, "services", None)
        if services is None:
            store = await _build_store(app_settings, resources)
            gateway = BillingGateway.from_settings(app_settings)
            services = EntitlementServices.build(store, gateway, app_settings)
            app.state.services = services

        if app_settings.RECONCILIATION_ENABLED:
            resources.redis = RedisClient(app_settings.REDIS_URL)
            await resources.redis.connect()
            job = ReconciliationJob(
                services.store,
                services.gateway,
                lock_client=resources.redis,
                batch_size=app_settings.RECONCILIATION_BATCH_SIZE,
                lock_timeout=app_settings.RECONCILIATION_LOCK_TIMEOUT_SECONDS,
            )
            resources.reconciliation = create_monitored_task(
                reconciliation_background_task(job, app_settings.RECONCILIATION_INTERVAL_SECONDS),
                "reconciliation",
            )
            logger.info("Reconciliation background task started")

        yield

        logger.info("Shutting down entitlement engine")

        if resources.reconciliation:
            resources.reconciliation.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await resources.reconciliation
            logger.info("Reconciliation background task stopped")

        await services.store.close()
        if resources.redis:
            await resources.redis.disconnect()
        if resources.engine:
            await close_database(resources.engine)

    return lifespan


def create_app(
    services: EntitlementServices | None = None,
    app_settings: Settings = settings,
) -> FastAPI:
    """Build the application.

    Passing `services` skips store and gateway construction in the lifespan,
    which is how tests run the app against an in-memory store.
    """
    configure_logging(
        app_settings.SERVICE_NAME,
        log_level=app_settings.LOG_LEVEL,
        json_format=not app_settings.is_development,
    )
    init_sentry(
        SentryConfig(
            service_name=app_settings.SERVICE_NAME,
            dsn=app_settings.SENTRY_DSN,
            environment=app_settings.ENVIRONMENT,
            release=f"{app_settings.SERVICE_NAME}@{app_settings.VERSION}",
            traces_sample_rate=app_settings.SENTRY_TRACES_SAMPLE_RATE,
        )
    )

    app = FastAPI(
        title="Entitlement Engine",
        description="Subscription state from Stripe webhooks and metered free-tier downloads.",
        version=app_settings.VERSION,
        lifespan=_make_lifespan(app_settings),
    )
    if services is not None:
        app.state.services = services

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DBAPIError, _database_error_handler)
    app.add_exception_handler(Exception, _global_exception_handler)

    # Middleware runs in reverse order of registration
    app.add_middleware(
        AuthMiddleware,
        secret_key=app_settings.JWT_SECRET_KEY,
        algorithm=app_settings.JWT_ALGORITHM,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    api_v1 = APIRouter()
    api_v1.include_router(webhooks.router)
    api_v1.include_router(downloads.router)
    api_v1.include_router(subscribers.router)
    app.include_router(api_v1, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": app_settings.VERSION}

    return app


def run() -> None:
    import uvicorn

    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "entitlement_engine.main:create_app",
        factory=True,
        host=host,
        port=settings.PORT,
        reload=settings.is_development,
        log_level="info",
    )


if __name__ == "__main__":
    run()
