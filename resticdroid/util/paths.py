"""Utility functions for path operations."""

from datetime import datetime
from pathlib import Path
from typing import Optional

from ..util.logging import get_logger

logger = get_logger(__name__)


def ensure_directory(path: Path) -> Path:
    """Ensure directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(filename: str) -> str:
    """Create a safe filename by removing/replacing problematic characters."""
    replacements = {
        "/": "_",
        "\\": "_",
        ":": "_",
        "*": "_",
        "?": "_",
        '"': "_",
        "'": "_",
        "<": "_",
        ">": "_",
        "|": "_",
        "\n": "_",
        "\r": "_",
        "\t": "_",
    }

    safe_name = filename
    for old, new in replacements.items():
        safe_name = safe_name.replace(old, new)

    # Remove leading/trailing whitespace and dots
    safe_name = safe_name.strip(" .")

    if not safe_name:
        safe_name = "unknown"

    return safe_name


def get_staging_path(staging_root: Path, prefix: str = "restore", timestamp: Optional[str] = None) -> Path:
    """Get a fresh staging directory path below the staging root.

    The directory is not created.
    """
    if timestamp is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")

    return staging_root / f"{safe_filename(prefix)}-{timestamp}"


def format_size(size_bytes: int) -> str:
    """Format file size in human readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    size = float(size_bytes)
    while size >= 1024.0 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1

    return f"{size:.1f} {size_names[i]}"
