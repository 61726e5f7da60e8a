"""Tests for utility helpers."""

import tempfile
from pathlib import Path

import pytest

from resticdroid.util import (
    format_elapsed,
    format_size,
    get_logger,
    get_staging_path,
    parse_restic_time,
    safe_filename,
    setup_logging,
)


class TestTimeUtil:
    """Test time helpers."""

    def test_parse_nanoseconds(self):
        """Test restic's nanosecond timestamps."""
        parsed = parse_restic_time("2024-05-01T10:00:00.123456789+02:00")

        assert parsed.microsecond == 123456
        assert parsed.utcoffset().total_seconds() == 7200

    def test_parse_zulu(self):
        """Test UTC timestamps with a Z suffix."""
        assert parse_restic_time("2024-05-01T10:00:00Z").hour == 10

    def test_parse_invalid(self):
        """Test unparseable values raise."""
        with pytest.raises(ValueError):
            parse_restic_time("last tuesday")

    def test_format_elapsed(self):
        """Test elapsed time formatting."""
        assert format_elapsed(0) == "00:00"
        assert format_elapsed(75.9) == "01:15"
        assert format_elapsed(3725) == "01:02:05"


class TestPaths:
    """Test path helpers."""

    def test_format_size(self):
        """Test human readable sizes."""
        assert format_size(0) == "0 B"
        assert format_size(512) == "512.0 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(5 * 1024 ** 3) == "5.0 GB"

    def test_staging_path(self):
        """Test staging paths are unique names below the root and not created."""
        path = get_staging_path(Path("/cache/staging"), prefix="metadata", timestamp="20240501_100000_000001")

        assert path == Path("/cache/staging/metadata-20240501_100000_000001")
        assert not path.exists()

    def test_safe_filename(self):
        """Test problematic characters are replaced."""
        assert safe_filename("a/b:c") == "a_b_c"
        assert safe_filename("...") == "unknown"


class TestLogging:
    """Test logging setup."""

    def test_log_file_records_debug(self):
        """Test the log file captures debug messages below the console level."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "logs" / "resticdroid.log"
            root = setup_logging(level="WARNING", log_file=log_file)

            get_logger("resticdroid.test").debug("restore staging ready")
            for handler in root.handlers:
                handler.flush()

            assert "restore staging ready" in log_file.read_text()

            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
