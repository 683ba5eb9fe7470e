"""
logging_config.py — Centralized Logging Configuration for freightintel

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so SQLAlchemy, httpx and alembic records route through
Loguru with the same format and sinks.

Business Rules:
- All logs go through Loguru (no direct print() or stdlib logging)
- JSON format in production for machine parsing
- Human-readable format in development
- Optional rotating file sink: 50MB files, 7-day retention

Called by: scripts/*.py (on startup), pipeline callers
Depends on: freightintel/config.py (log_level, log_json, log_file, app_env)
"""

import logging
import sys

from loguru import logger

from .config import settings


def setup_logging() -> None:
    """Configure Loguru and intercept stdlib logging.

    Call once at process start, before any other imports that log.
    """
    logger.remove()

    log_level = settings.log_level.upper()
    as_json = settings.log_json or settings.is_production

    if as_json:
        logger.add(
            sys.stdout,
            level=log_level,
            format="{message}",
            serialize=True,
        )
    else:
        logger.add(
            sys.stdout,
            level=log_level,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            colorize=True,
        )

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=log_level,
            rotation="50 MB",
            retention="7 days",
            compression="gz",
            serialize=True,
        )

    # Intercept stdlib logging → route through Loguru
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "alembic.runtime.migration"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured", level=log_level, json=as_json)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
