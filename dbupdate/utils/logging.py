"""
Structured logging configuration for dbupdate.
Uses structlog for JSON-formatted logs, with optional upload of log lines
to blob storage for scheduled runs.
"""

import functools
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from structlog.types import Processor

from dbupdate.utils.config import get_project_root, get_settings

if TYPE_CHECKING:
    from dbupdate.storage.blob_storage import BlobContainer

T = TypeVar("T")


def _add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add ISO timestamp to log event."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat().replace("+00:00", "Z")
    return event_dict


def _add_log_level(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def configure_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool = True,
    extra_handlers: list[logging.Handler] | None = None,
) -> None:
    """Configure structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Uses settings if None.
        log_file: Path to log file. Uses settings if None.
        json_format: Whether to use JSON format (True) or console format (False).
        extra_handlers: Additional stdlib handlers (e.g. BlobLogSink).
    """
    settings = get_settings()

    if log_level is None:
        log_level = settings.general.log_level

    if log_file is None:
        log_dir = get_project_root() / settings.general.logs_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"dbupdate_{datetime.now().strftime('%Y%m%d')}.log"

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stderr),
        logging.FileHandler(log_file, encoding="utf-8"),
    ]
    if extra_handlers:
        handlers.extend(extra_handlers)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _add_timestamp,
        _add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Logger name (usually __name__).

    Returns:
        Configured logger instance.
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to all subsequent log calls."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(stage="urls"):
            logger.info("Checking urls")
            # All logs within this block will have stage="urls"
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        bind_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        unbind_context(*self.context.keys())


class BlobLogSink(logging.Handler):
    """Buffers log lines per level target and uploads them to blob storage.

    Targets are named after the current date, so each day of scheduled runs
    lands in its own blobs:
        errors:        {YYYY-MM}/db-update_errors_{YYYY-MM-DD}
        warnings/info: {YYYY-MM}/db-update_{YYYY-MM-DD}
    """

    def __init__(self, container: "BlobContainer", level: int = logging.INFO):
        super().__init__(level=level)
        self.container = container
        self.enabled = True
        self._buffers: dict[str, list[str]] = {}
        self.targets = self.date_targets()

    @staticmethod
    def date_targets(now: datetime | None = None) -> dict[str, str]:
        """Build level -> blob name targets for a date."""
        now = now or datetime.now(UTC)
        date = now.strftime("%Y-%m-%d")
        month = now.strftime("%Y-%m")
        return {
            "error": f"{month}/db-update_errors_{date}",
            "warning": f"{month}/db-update_{date}",
            "info": f"{month}/db-update_{date}",
        }

    def set_targets(self, targets: dict[str, str]) -> None:
        self.targets = targets

    def disable(self) -> None:
        self.enabled = False

    def _target_for(self, levelno: int) -> str | None:
        if levelno >= logging.ERROR:
            return self.targets.get("error")
        if levelno >= logging.WARNING:
            return self.targets.get("warning")
        return self.targets.get("info")

    def emit(self, record: logging.LogRecord) -> None:
        if not self.enabled:
            return
        target = self._target_for(record.levelno)
        if target is None:
            return
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        self._buffers.setdefault(target, []).append(line)

    def pending(self) -> dict[str, list[str]]:
        """Buffered lines per target (copy)."""
        return {name: list(lines) for name, lines in self._buffers.items()}

    async def upload(self) -> int:
        """Append buffered lines to their blobs and clear the buffers.

        Returns:
            Number of lines uploaded.
        """
        if not self.enabled or not self._buffers:
            return 0

        buffers, self._buffers = self._buffers, {}
        uploaded = 0

        for name, lines in buffers.items():
            await self.container.blob(name).append("\n".join(lines) + "\n")
            uploaded += len(lines)

        return uploaded


def log_timing(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Decorator logging the wall time of an async call."""
    timing_logger = get_logger(func.__module__)

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            timing_logger.info(
                "Timing",
                operation=func.__qualname__,
                elapsed_seconds=round(time.perf_counter() - start, 3),
            )

    return wrapper


class ProgressLogger:
    """Iteration progress with elapsed time and ETA, for long maintenance loops."""

    def __init__(self, total: int, name: str = "progress", log_every: int = 1):
        self.total = total
        self.name = name
        self.log_every = max(1, log_every)
        self.count = 0
        self._start = time.perf_counter()
        self._logger = get_logger(__name__)

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self._start

    def eta_seconds(self) -> float | None:
        if self.count == 0:
            return None
        per_item = self.elapsed / self.count
        return per_item * max(0, self.total - self.count)

    def log_iteration(self, message: str = "") -> None:
        self.count += 1
        if self.count % self.log_every and self.count != self.total:
            return
        eta = self.eta_seconds()
        self._logger.info(
            message or self.name,
            progress=f"{self.count}/{self.total}",
            elapsed_seconds=round(self.elapsed, 1),
            eta_seconds=round(eta, 1) if eta is not None else None,
        )
