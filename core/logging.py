"""
Logging configuration for the Survey Relay service.

structlog renders everything, including records from plain stdlib loggers,
so API modules and the sync services end up in the same stream and files.
"""

import logging
import logging.handlers
import os
import sys
import time
import uuid

import structlog

from core.config import settings

# Loggers whose records also go to the sync audit file
SYNC_LOGGERS = ("services.sync_coordinator", "services.sync_runner", "services.relay_store")


def _add_deployment(logger, method_name, event_dict):
    event_dict.setdefault("profile", settings.DEPLOYMENT_PROFILE)
    return event_dict


class _SyncOnly(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(SYNC_LOGGERS)


def _shared_processors():
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_deployment,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _file_handler(path: str, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(path, when="midnight", backupCount=14, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> structlog.stdlib.BoundLogger:
    """Configure structlog and route stdlib logging through it."""

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level, *_shared_processors(),
                    structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.dev.ConsoleRenderer() if settings.DEBUG else structlog.processors.JSONRenderer()
    console_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )
    # Files are always JSON lines so they can be grepped and shipped
    file_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if settings.ENABLE_FILE_LOGGING:
        os.makedirs(settings.LOGS_DIR, exist_ok=True)
        root_logger.addHandler(_file_handler(os.path.join(settings.LOGS_DIR, "app.log"), logging.INFO, file_formatter))
        root_logger.addHandler(_file_handler(os.path.join(settings.LOGS_DIR, "error.log"), logging.ERROR, file_formatter))

        # Relay outages and ingest failures in one place
        sync_handler = _file_handler(os.path.join(settings.LOGS_DIR, "sync.log"), logging.INFO, file_formatter)
        sync_handler.addFilter(_SyncOnly())
        root_logger.addHandler(sync_handler)

    # uvicorn installs its own handlers; let ours render its records
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    logger = structlog.get_logger("core.logging")
    logger.info(
        "Logging configured",
        level=settings.LOG_LEVEL,
        file_logging=settings.ENABLE_FILE_LOGGING,
    )
    return logger


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)


async def log_request_middleware(request, call_next):
    """Tag every log line of a request with an id and log its outcome."""
    logger = get_logger("request")
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("request_id")

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
        request_id=request_id,
    )
    response.headers["x-request-id"] = request_id
    return response
