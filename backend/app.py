"""
TradeFlow FastAPI Backend
Main application entry point for the workflow automation service.

Startup prepares logging, the database and the workflow engine; shutdown
stops accepting writes and lets in-flight workflow runs write their logs
before the broker is disconnected.
"""
import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.middleware.gzip import GZipMiddleware
import uvicorn

from api.routes import router as api_router
from api.middleware import (
    ApiKeyMiddleware,
    RequestContextMiddleware,
    ShutdownGuardMiddleware,
    configure_structured_logging,
    limiter,
    rate_limit_exceeded_handler,
)
from api.health import APP_VERSION, build_health_response, mark_startup
from api.engine_manager import engine_manager
from config.settings import Settings, get_settings
from services.logging_service import configure_file_logging, cleanup_old_files
from storage.database import init_db, check_integrity
from storage.service import StorageService

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 10
_shutdown_event = threading.Event()

TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    try:
        configure_file_logging(settings.log_directory, level)
        removed = cleanup_old_files(settings.log_directory, settings.log_retention_days)
        if removed:
            logger.info("Removed %d expired log file(s)", removed)
    except OSError:
        logger.warning("File logging unavailable; continuing with console logging", exc_info=True)
    configure_structured_logging(settings.log_level)


def _prepare_database(settings: Settings) -> None:
    init_db()
    ok, result = check_integrity()
    if not ok:
        logger.critical("Database integrity check failed: %s; continuing anyway", result)

    db = engine_manager.session_factory()
    try:
        pruned = StorageService(db).prune_audit_logs(settings.audit_retention_days)
        if pruned:
            logger.info("Pruned %d audit log(s) older than %d days", pruned, settings.audit_retention_days)
    finally:
        db.close()


async def _drain_workflow_runs() -> None:
    """Wait for in-flight workflow runs, up to the shutdown timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + SHUTDOWN_TIMEOUT_SECONDS
    while engine_manager.get_status()["active_runs"] > 0:
        if loop.time() >= deadline:
            logger.warning("Shutdown timeout reached with workflow runs still in flight")
            return
        await asyncio.sleep(0.1)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    settings = get_settings()
    _setup_logging(settings)
    mark_startup()
    logger.info("TradeFlow backend starting up (env=%s)", settings.environment)

    _prepare_database(settings)

    engine = engine_manager.get_engine()
    logger.info("Workflow engine ready (busy_policy=%s)", engine.busy_policy)

    if settings.environment == "production" and not settings.api_auth_key:
        logger.warning("Production environment without TRADEFLOW_API_KEY; API authentication is disabled")

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown...")
        _shutdown_event.set()
        try:
            await _drain_workflow_runs()
        except Exception:
            logger.exception("Error while draining workflow runs during shutdown")
        engine_manager.reset()
        logger.info("Graceful shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="TradeFlow API",
        description="Trading workflow automation backend service",
        version=APP_VERSION,
        lifespan=_lifespan,
    )
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # Added innermost first; RequestContextMiddleware ends up outermost so
    # even auth failures carry X-Request-ID.
    application.add_middleware(GZipMiddleware, minimum_size=500)
    application.add_middleware(ShutdownGuardMiddleware, is_shutting_down=_shutdown_event.is_set)
    application.add_middleware(ApiKeyMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestContextMiddleware)

    @application.get("/")
    async def root():
        return {"message": "TradeFlow API"}

    @application.get("/status")
    async def status():
        """Subsystem health: database, broker and workflow engine."""
        return build_health_response()

    application.include_router(api_router)
    return application


app = create_app()


if __name__ == "__main__":
    reload_enabled = os.getenv("TRADEFLOW_BACKEND_RELOAD", "").strip().lower() in TRUE_VALUES
    logger.info("Backend bootstrap: uvicorn reload=%s", reload_enabled)
    uvicorn.run(
        "app:app",
        host=os.getenv("TRADEFLOW_HOST", "127.0.0.1"),
        port=int(os.getenv("TRADEFLOW_PORT", "8000")),
        reload=reload_enabled,
    )
