"""
Application factory wiring the request logger into a FastAPI app.

Serves as the reference deployment: settings from the environment,
structured logging first, then the access-log middleware.

    uvicorn request_logger.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from request_logger import __version__
from request_logger.capture import RequestView, ResponseView
from request_logger.config import Settings, get_settings
from request_logger.core.logging_config import setup_logging
from request_logger.emitter import LWESEmitter
from request_logger.middleware.logging_middleware import Emitter, RequestLoggerMiddleware

logger = logging.getLogger(__name__)


def skip_paths_policy(paths: frozenset[str]):
    """Skip policy suppressing records for exact request paths."""

    def skip(request: RequestView, response: ResponseView) -> bool:
        return request.scope.get("path") in paths

    return skip


def create_app(settings: Settings | None = None, emitter: Emitter | None = None) -> FastAPI:
    """Application factory: creates and configures the FastAPI instance."""
    settings = settings or get_settings()

    # 1. Configure structured logging (before anything else)
    setup_logging(
        app_env=settings.app_env,
        log_level=settings.log_level,
        log_format=settings.log_format,
        emitter_log_level=settings.lwes_log_level,
    )

    # 2. One emitter per app, closed on shutdown
    owned_emitter = emitter is None
    if emitter is None:
        emitter = LWESEmitter(settings.lwes_options())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s (%s)", settings.app_name, __version__, settings.app_env.value
        )
        yield
        if owned_emitter and isinstance(emitter, LWESEmitter):
            emitter.close()
        logger.info("Shutting down %s", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )

    skip_paths = settings.skip_paths
    app.add_middleware(
        RequestLoggerMiddleware,
        format=settings.access_log_format,
        immediate=settings.access_log_immediate,
        skip=skip_paths_policy(skip_paths) if skip_paths else None,
        emitter=emitter,
        lwes=settings.lwes_options(),
    )

    @app.get("/health", tags=["System"])
    async def health_check():
        return {
            "status": "healthy",
            "app": settings.app_name,
            "version": __version__,
            "environment": settings.app_env.value,
        }

    return app
