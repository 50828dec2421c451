"""
Operational logging for the request logger.

The access records themselves travel as LWES events; this module only sets
up the process's own diagnostics (startup, emitter drops, send failures):
- Development: colored, human-readable console output
- Staging/Production: JSON lines for log aggregation

Every module logs through ``logging.getLogger(__name__)``. A structlog
ProcessorFormatter on the root handler renders those records and merges
in the per-exchange context (``http_method``, ``http_path``) that the
middleware binds through ``structlog.contextvars``.
"""

import logging
import sys

import structlog

from request_logger.config import AppEnv

EMITTER_LOGGER = "request_logger.emitter"

# Superseded by the middleware's own records
SERVER_ACCESS_LOGGERS = ("uvicorn.access", "hypercorn.access")


def setup_logging(
    app_env: AppEnv,
    log_level: str = "INFO",
    log_format: str = "auto",
    emitter_log_level: str | None = None,
) -> None:
    """
    Route all stdlib logging through structlog rendering.

    Args:
        app_env: Current environment (development, staging, production).
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR).
        log_format: ``"json"``, ``"console"``, or ``"auto"``
                    (auto = console in dev, json otherwise).
        emitter_log_level: Level for the LWES emitter's logger. ``None``
                    lets it follow the root level.
    """
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=_renderer(_should_use_json(app_env, log_format)),
        foreign_pre_chain=_pre_chain(),
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(_level(log_level))

    # Per-datagram debug lines are loud; let them be tuned separately
    emitter_logger = logging.getLogger(EMITTER_LOGGER)
    if emitter_log_level:
        emitter_logger.setLevel(_level(emitter_log_level))
    else:
        emitter_logger.setLevel(logging.NOTSET)

    for name in SERVER_ACCESS_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _pre_chain() -> list[structlog.types.Processor]:
    # Keys on the record itself win over bound exchange context
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(use_json: bool) -> structlog.types.Processor:
    if use_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _should_use_json(app_env: AppEnv, log_format: str) -> bool:
    """Determine whether to use JSON output."""
    if log_format == "json":
        return True
    if log_format == "console":
        return False
    # auto: JSON for staging/production, console for development
    return app_env != AppEnv.DEVELOPMENT
