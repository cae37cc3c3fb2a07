"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from aistudio.api.routes import admin, jobs, prompts
from aistudio.core import timezone  # noqa: F401  # sets TZ=UTC
from aistudio.core.config import Settings, configure_logging
from aistudio.core.database import setup_db_session
from aistudio.models.generation_job import InvalidStateTransition
from aistudio.services.exceptions import (
    AccessDenied,
    NotFoundError,
    ProviderError,
    ServiceError,
    StorageError,
    ValidationError,
)
from aistudio.services.image_generation.replicate_client import ReplicateClient
from aistudio.services.prompt_generation.llm_client import LLMPromptClient
from aistudio.services.storage import CachedUrlSigner, InMemoryUrlCache, StorageClient
from aistudio.uow import create_uow_factory
from aistudio.workers.dispatch_queue import DispatchQueue, run_dispatch_consumer
from aistudio.workers.dispatcher import Dispatcher, run_dispatch_worker
from aistudio.workers.prompt_processor import PromptProcessor, run_prompt_processor
from aistudio.workers.reaper import Reaper, run_cleanup_worker

logger = structlog.get_logger()

ERROR_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AccessDenied, status.HTTP_403_FORBIDDEN),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_502_BAD_GATEWAY),
]


def create_resilient_worker(
    coro_factory: Callable[[], Awaitable[None]], worker_name: str, shutdown_event: asyncio.Event
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_factory: Zero-argument callable returning a fresh worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

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
            # Workers loop forever; a clean return is unexpected
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
            new_task = asyncio.create_task(coro_factory())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_factory())
    task.add_done_callback(on_worker_done)
    return task


def build_services(app: FastAPI, settings: Settings) -> None:
    """Create clients, queue and workers and store them in app.state."""
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    storage = StorageClient(
        settings.storage_url,
        settings.storage_service_key,
        outputs_bucket=settings.storage_outputs_bucket,
    )
    signer = CachedUrlSigner(storage, InMemoryUrlCache())
    provider = ReplicateClient(settings.replicate_api_token, settings.replicate_model)
    llm = LLMPromptClient(
        settings.llm_api_key,
        settings.llm_api_base,
        settings.llm_models_list,
        timeout=settings.llm_timeout_seconds,
    )

    dispatch_queue = DispatchQueue(maxsize=settings.dispatch_queue_size)
    dispatcher = Dispatcher(
        uow_factory,
        provider,
        signer,
        storage,
        max_concurrency=settings.dispatch_max_concurrency,
        batch_size=settings.dispatch_batch_size,
        active_window_seconds=settings.dispatch_active_window_seconds,
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        min_dimension=settings.provider_min_dimension,
        max_dimension=settings.provider_max_dimension,
        save_lease_seconds=settings.dispatch_save_lease_seconds,
    )
    prompt_processor = PromptProcessor(
        uow_factory,
        llm,
        signer,
        dispatch_queue=dispatch_queue,
        batch_size=settings.prompt_batch_size,
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        retry_base_delay_seconds=settings.prompt_retry_base_delay_seconds,
        retry_max_delay_seconds=settings.prompt_retry_max_delay_seconds,
        retry_backoff_multiplier=settings.prompt_retry_backoff_multiplier,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.dispatch_queue = dispatch_queue
    app.state.dispatcher = dispatcher
    app.state.prompt_processor = prompt_processor
    app.state.reaper = Reaper(uow_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build services, start workers
    - Shutdown: Stop workers

    Workers automatically restart on failure.
    """
    settings: Settings = app.state.settings
    configure_logging(settings)
    build_services(app, settings)

    shutdown_event = asyncio.Event()
    state = app.state

    tasks = [
        create_resilient_worker(
            lambda: run_dispatch_worker(state.dispatcher, settings.poll_interval_seconds),
            "dispatch",
            shutdown_event,
        ),
        create_resilient_worker(
            lambda: run_prompt_processor(
                state.prompt_processor, settings.prompt_poll_interval_seconds
            ),
            "prompt_processor",
            shutdown_event,
        ),
        create_resilient_worker(
            lambda: run_cleanup_worker(state.reaper, settings.cleanup_interval_seconds),
            "reaper",
            shutdown_event,
        ),
    ]
    for worker_id in range(settings.dispatch_workers):
        tasks.append(
            create_resilient_worker(
                lambda worker_id=worker_id: run_dispatch_consumer(
                    state.dispatch_queue, state.dispatcher, worker_id
                ),
                f"dispatch_consumer_{worker_id}",
                shutdown_event,
            )
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        dispatch_consumers=settings.dispatch_workers,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    for task in tasks:
        task.cancel()

    await asyncio.gather(*tasks, return_exceptions=True)


async def service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map service exceptions to HTTP responses."""
    for exc_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_type):
            if status_code >= 500:
                logger.error(
                    "request.upstream_error",
                    path=request.url.path,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    logger.error(
        "request.internal_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="AI Studio Backend API",
        description="Generation job and prompt queue service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(InvalidStateTransition, service_error_handler)

    app.include_router(jobs.router)
    app.include_router(prompts.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

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

    return app


# Create app instance for uvicorn
app = create_app()
