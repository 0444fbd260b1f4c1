"""
dbupdate utilities module.
"""

from dbupdate.utils.config import ensure_directories, get_project_root, get_settings
from dbupdate.utils.errors import (
    EmptyCollectionError,
    InconsistentDataError,
    InvalidOptionsError,
    LanguageDetectionError,
    PipelineError,
)
from dbupdate.utils.logging import (
    BlobLogSink,
    LogContext,
    ProgressLogger,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    log_timing,
    unbind_context,
)

__all__ = [
    # Config
    "get_settings",
    "get_project_root",
    "ensure_directories",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
    "BlobLogSink",
    "ProgressLogger",
    "log_timing",
    # Errors
    "PipelineError",
    "EmptyCollectionError",
    "InconsistentDataError",
    "LanguageDetectionError",
    "InvalidOptionsError",
]
