"""
FastAPI application factory and lifespan management.

Creates the main FastAPI application with:
- Async lifespan for DB, crawl runtime and queue worker startup/cleanup
- Domain exception to HTTP status mapping
- CORS middleware configuration
- API router mounting
- Health check endpoint
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from comicrawl.core.config import get_settings
from comicrawl.core.runtime import build_runtime
from comicrawl.database.connection import close_db, get_session, init_db
from comicrawl.models.jobs import HealthResponse
from comicrawl.utils.exceptions import (
    ConcurrencyLimitError,
    ContentNotFoundError,
    CrawlError,
    DatabaseError,
    DuplicateCrawlError,
    InvalidTransitionError,
    JobNotFoundError,
    MergeConflictError,
    QueueEntryNotFoundError,
)
from comicrawl.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    - Startup: configure logging, create tables, build the crawl runtime,
      start the recurring queue drain
    - Shutdown: stop the drain loop, close HTTP clients and connections
    """
    settings = get_settings()

    # === STARTUP ===
    configure_logging()
    logger.info("Starting application", app_name=settings.app_name)

    await init_db()
    logger.info("Database initialized")

    runtime = build_runtime(settings)
    app.state.runtime = runtime

    stop = asyncio.Event()
    worker: asyncio.Task | None = None
    if settings.embedded_worker:
        worker = asyncio.create_task(runtime.processor.run_forever(stop))
        logger.info("Queue worker started", interval=settings.drain_interval_seconds)

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application")

    if worker is not None:
        stop.set()
        try:
            await asyncio.wait_for(worker, timeout=30)
        except TimeoutError:
            worker.cancel()
            logger.warning("Queue worker did not stop in time, cancelled")

    await runtime.close()
    await close_db()

    logger.info("Application shutdown complete")


def _error_response(status_code: int, error: CrawlError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP status codes."""

    @app.exception_handler(JobNotFoundError)
    @app.exception_handler(ContentNotFoundError)
    @app.exception_handler(QueueEntryNotFoundError)
    async def not_found(request: Request, exc: CrawlError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidTransitionError)
    @app.exception_handler(DuplicateCrawlError)
    @app.exception_handler(MergeConflictError)
    async def conflict(request: Request, exc: CrawlError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(ConcurrencyLimitError)
    async def too_many(request: Request, exc: ConcurrencyLimitError) -> JSONResponse:
        return _error_response(status.HTTP_429_TOO_MANY_REQUESTS, exc)

    @app.exception_handler(DatabaseError)
    async def store_unavailable(request: Request, exc: DatabaseError) -> JSONResponse:
        logger.error("Database error", path=request.url.path, error=exc.message)
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(CrawlError)
    async def bad_request(request: Request, exc: CrawlError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application with all
    middleware, routes, and settings.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Hierarchical comic crawl orchestration",
        version=API_VERSION,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    from api.routes.jobs import router as jobs_router

    app.include_router(jobs_router, prefix="/api/v1")

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns basic application status. Used by load balancers
        and monitoring systems.
        """
        database = "connected"
        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Health check database probe failed", error=str(e))
            database = "unavailable"
        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=API_VERSION,
            database=database,
        )

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "app": settings.app_name,
            "version": API_VERSION,
            "docs": "/docs" if settings.debug else "Disabled in production",
            "health": "/health",
            "api": "/api/v1",
        }

    logger.info("FastAPI application created")

    return app
