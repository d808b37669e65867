"""
Logging setup (loguru).

Job runs log inside `logger.contextualize(job_id=..., run_id=...)`, so every
line emitted by a job body, the stores it calls and the notifier carries the
run it belongs to. The text sinks print that context as a `[job_id:run]`
prefix; the JSON sink keeps it under `record.extra`.
"""

import logging
import sys
from typing import Any

from loguru import logger

from postpilot.config import get_settings

# stdlib loggers routed into loguru
INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "apscheduler",
    "alembic",
)

# Bound by get_logger / contextualize; shown in the prefix, not repeated in extras
_CONTEXT_KEYS = ("name", "job_id", "run_id")


class InterceptHandler(logging.Handler):
    """Intercept stdlib logging and redirect to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that called the stdlib logger
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _run_prefix(extra: dict[str, Any]) -> str:
    job_id = extra.get("job_id")
    if not job_id:
        return ""
    run_id = extra.get("run_id")
    return f"[{job_id}:{str(run_id)[:8]}] " if run_id else f"[{job_id}] "


def _format(colored: bool):
    """Build a loguru format callable for the text sinks."""
    location = "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
    head = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level>"
    if not colored:
        location = "{name}:{function}:{line}"
        head = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8}"

    def formatter(record: dict[str, Any]) -> str:
        extra = record["extra"]
        record["extra"]["_prefix"] = _run_prefix(extra)
        record["extra"]["_fields"] = {
            k: v for k, v in extra.items() if k not in _CONTEXT_KEYS and not k.startswith("_")
        }
        return (
            f"{head} | {location} | {{extra[_prefix]}}<level>{{message}}</level>"
            " | {extra[_fields]}\n{exception}"
        )

    return formatter


def _health_log_filter(record: dict[str, Any]) -> bool:
    """Filter health check logs - only show at DEBUG level."""
    if "/health" in record.get("message", ""):
        return bool(record["level"].no <= 10)
    return True


def setup_logging() -> None:
    """Configure loguru sinks and route stdlib logging into them."""
    settings = get_settings()

    logger.remove()

    if settings.log_json:
        logger.add(
            sys.stderr,
            level="DEBUG" if settings.debug else "INFO",
            serialize=True,
            filter=_health_log_filter,
        )
    elif settings.debug:
        logger.add(
            sys.stderr,
            level="DEBUG",
            format=_format(colored=True),
            backtrace=True,
            diagnose=True,
        )
    else:
        logger.add(
            sys.stderr,
            level="INFO",
            format=_format(colored=False),
            filter=_health_log_filter,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED_LOGGERS:
        logging.getLogger(name).handlers = [InterceptHandler()]


def get_logger(name: str) -> Any:
    """Get a logger bound to a module name."""
    return logger.bind(name=name)
