"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pixelrelay.api.routes import credits, internal, tasks, trial, webhooks
from pixelrelay.core.config import Settings, configure_logging
from pixelrelay.core.database import setup_db_session
from pixelrelay.services.container import open_services
from pixelrelay.services.exceptions import CoordinatorError
from pixelrelay.uow import create_uow_factory
from pixelrelay.workers.timeout_sweeper import run_timeout_sweeper

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, service, settings, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_timeout_sweeper)
        service: Service the worker drives
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Loop workers never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(service, settings))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(service, settings))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, database session factory, network clients,
      orchestration services and the timeout sweeper
    - Shutdown: stop the sweeper, close network clients
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory

    async with open_services(settings, uow_factory) as services:
        app.state.services = services

        shutdown_event = asyncio.Event()
        sweeper_task = create_resilient_worker(
            run_timeout_sweeper, services.sweeper, settings, "timeout_sweeper", shutdown_event
        )

        logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

        yield

        logger.info("application.shutdown")
        shutdown_event.set()
        sweeper_task.cancel()
        await asyncio.gather(sweeper_task, return_exceptions=True)


def register_routes(app: FastAPI) -> None:
    """Attach API routers and the health check to an application."""
    app.include_router(tasks.router)
    app.include_router(credits.router)
    app.include_router(trial.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(internal.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check with database and coordination store connectivity tests.

        Returns:
            200: {"status": "healthy"} if both dependencies answer
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            if not await app.state.services.coordinator.ping():
                raise CoordinatorError("Redis ping failed")

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PixelRelay API",
        description="Asynchronous AI image task orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app


# Create app instance for uvicorn
app = create_app()
