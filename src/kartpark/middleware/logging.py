"""Logging setup.

Services log through stdlib ``logging`` with %-style messages; middleware and
error handlers log through structlog. Both go through one handler with the
same processors, so every line carries the bound request id.
"""

import logging

import structlog

from kartpark.config import Settings

# SQL echo and per-job worker chatter only in debug
_QUIET_LOGGERS = ("sqlalchemy.engine", "arq.worker", "uvicorn.access")

_handler: logging.Handler | None = None


def setup_logging(settings: Settings) -> None:
    """Configure structlog and route the stdlib root logger through it."""
    global _handler  # noqa: PLW0603

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.log_format == "json":
        final: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
        )
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    _handler = handler

    quiet_level = logging.DEBUG if settings.debug else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
