"""Utility module initialization."""

from .logging import get_logger, setup_logging
from .paths import (
    ensure_directory,
    format_size,
    get_staging_path,
    safe_filename,
)
from .timeutil import (
    format_elapsed,
    parse_restic_time,
)

__all__ = [
    # logging
    "get_logger",
    "setup_logging",
    # paths
    "ensure_directory",
    "format_size",
    "get_staging_path",
    "safe_filename",
    # timeutil
    "format_elapsed",
    "parse_restic_time",
]
