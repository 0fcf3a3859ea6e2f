"""structlog setup for the daemon.

Events from structlog loggers and from plain stdlib loggers share one
processor chain and are rendered by ``ProcessorFormatter`` per handler:
the rotating file always gets JSON lines, stdout gets JSON too unless
debug mode asks for the console renderer.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog

LOG_FILE_NAME = "splitroute.log"

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _formatter(renderer) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(
    debug: bool = False,
    log_dir: str = "logs",
    log_max_bytes: int = 10_000_000,
    log_backup_count: int = 5,
) -> None:
    """Route all logging through the root logger to stdout and ``<log_dir>/splitroute.log``.

    Safe to call again (e.g. after a config reload); existing root handlers
    are replaced. An unwritable ``log_dir`` leaves stdout as the only sink.
    """
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=_SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.setFormatter(_formatter(console))
    root_logger.addHandler(stdout_handler)

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        root_logger.warning("log file unavailable (%s), logging to stdout only", e)
        return

    file_handler.setLevel(log_level)
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    root_logger.addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger; ``name`` ("area.module") appears as the ``logger`` field."""
    return structlog.get_logger(name)
