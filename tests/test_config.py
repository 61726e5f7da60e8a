"""Tests for configuration loading."""

import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from resticdroid.config import BackupConfig, load_config


class TestConfig:
    """Test configuration models."""

    def test_backup_tags_from_file(self):
        """Test backup tags are read from the config file."""
        with tempfile.TemporaryDirectory() as temp_dir:
            config_file = Path(temp_dir) / "config.yaml"
            config_file.write_text("backup:\n  tags: [droid, nightly]\n")

            config = load_config(config_file)

            assert config.backup.tags == ["droid", "nightly"]

    def test_invalid_backup_tags(self):
        """Test empty tag lists and comma-separated tags are rejected."""
        with pytest.raises(ValidationError):
            BackupConfig(tags=[])
        with pytest.raises(ValidationError):
            BackupConfig(tags=["restoid,backup"])
