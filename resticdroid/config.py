"""Configuration management for ResticDroid."""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from ruamel.yaml import YAML

DEFAULT_CONFIG_PATH = Path.home() / ".config/resticdroid/config.yaml"

# restic's JSON status protocol is an external, versioned contract.
PINNED_RESTIC_VERSION = "0.18.0"


class CategoryDefaults(BaseModel):
    """Default category toggles for an operation."""

    apk: bool = Field(default=True, description="Package files (APK splits)")
    data: bool = Field(default=True, description="/data/data/<pkg>")
    device_protected_data: bool = Field(default=True, description="/data/user_de/0/<pkg>")
    external_data: bool = Field(default=False, description="/storage/emulated/0/Android/data/<pkg>")
    obb: bool = Field(default=False, description="/storage/emulated/0/Android/obb/<pkg>")
    media: bool = Field(default=False, description="/storage/emulated/0/Android/media/<pkg>")


class BackupConfig(BaseModel):
    """Configuration for backup operations."""

    categories: CategoryDefaults = Field(default_factory=CategoryDefaults)
    tags: List[str] = Field(default=["restoid", "backup"], description="Tags put on every app backup snapshot")

    @field_validator("tags")
    @classmethod
    def check_tags(cls, tags: List[str]) -> List[str]:
        # restic splits tag lists on commas
        if not tags or any(not tag or "," in tag for tag in tags):
            raise ValueError("backup tags must be non-empty and must not contain commas")
        return tags


class RestoreConfig(BaseModel):
    """Configuration for restore operations."""

    categories: CategoryDefaults = Field(default_factory=CategoryDefaults)
    allow_downgrade: bool = Field(default=False, description="Allow restoring an older version over a newer one")


class ResticDroidConfig(BaseModel):
    """Main configuration for ResticDroid."""

    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local/share/resticdroid",
        description="Private storage for metadata, caches and staging directories"
    )

    backup: BackupConfig = Field(default_factory=BackupConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)

    # Runtime settings
    restic_path: str = Field(default="restic", description="Path to the restic binary")
    restic_version: str = Field(default=PINNED_RESTIC_VERSION, description="restic version the parser is pinned to")
    strict_version: bool = Field(default=True, description="Refuse to run with a different restic version")
    su_path: str = Field(default="su", description="Path to the su binary")
    shell_timeout: int = Field(default=120, description="Timeout in seconds for non-streaming shell commands")
    metadata_retention: int = Field(default=5, description="Metadata snapshots kept in each repository")
    log_level: str = Field(default="INFO", description="Logging level")
    file_logging: bool = Field(default=True, description="Keep a rotating debug log in the data directory")
    max_concurrent_operations: int = Field(default=4, description="Max concurrent package registry lookups")

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @property
    def metadata_dir(self) -> Path:
        return self.data_dir / "metadata"

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    @property
    def staging_root(self) -> Path:
        return self.cache_dir / "staging"

    @property
    def app_cache_file(self) -> Path:
        return self.data_dir / "app_info_cache.json"

    @property
    def repositories_file(self) -> Path:
        return self.data_dir / "repositories.yaml"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "logs" / "resticdroid.log"


def load_config(config_path: Optional[Path] = None) -> ResticDroidConfig:
    """Load configuration from file or create default."""

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if config_path.exists():
        yaml = YAML(typ="safe")
        with open(config_path, "r") as f:
            data = yaml.load(f) or {}
        return ResticDroidConfig(**data)
    else:
        config = ResticDroidConfig()
        save_config(config, config_path)
        return config


def save_config(config: ResticDroidConfig, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config_path.parent.mkdir(parents=True, exist_ok=True)

    yaml = YAML()
    yaml.default_flow_style = False

    with open(config_path, "w") as f:
        yaml.dump(config.model_dump(mode="json"), f)


def get_config() -> ResticDroidConfig:
    """Get the global configuration instance."""

    if not hasattr(get_config, "_config"):
        get_config._config = load_config()

    return get_config._config


def set_config(config: ResticDroidConfig) -> None:
    """Replace the global configuration instance."""
    get_config._config = config
