"""
Structured logging for the manual Q&A service.

structlog events and plain stdlib records (uvicorn, httpx) share one JSON-line
file handler, so everything the process logs ends up in a single stream.
"""
from __future__ import annotations

import logging
from pathlib import Path

import structlog

_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]

_handler: logging.Handler | None = None


def configure_logging(log_path: str | Path, level: int = logging.INFO) -> logging.Handler:
    """Idempotent; the first call decides the destination file."""
    global _handler
    if _handler is not None:
        return _handler

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _handler = handler
    return handler


def get_logger(name: str):
    return structlog.get_logger(name)
