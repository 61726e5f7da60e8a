"""Data models for restic repository objects."""

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from ..util.timeutil import parse_restic_time

BACKUP_TAGS = ("restoid", "backup")
METADATA_TAGS = ("restoid", "metadata")


class SnapshotRecord(BaseModel):
    """A snapshot as listed by ``restic snapshots --json``.

    Produced by restic and never modified here.
    """

    id: str = Field(description="Full snapshot ID")
    short_id: str = Field(default="", description="Abbreviated snapshot ID")
    time: str = Field(description="Snapshot creation time as reported by restic")
    paths: Tuple[str, ...] = Field(default=(), description="Paths included in the snapshot")
    tags: Tuple[str, ...] = Field(default=(), description="Snapshot tags")
    hostname: str = Field(default="", description="Host the snapshot was taken on")

    class Config:
        """Pydantic configuration."""
        frozen = True
        extra = "ignore"

    @field_validator("paths", "tags", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return () if value is None else value

    @property
    def timestamp(self) -> Optional[datetime]:
        try:
            return parse_restic_time(self.time)
        except ValueError:
            return None

    def has_tags(self, *tags: str) -> bool:
        return all(tag in self.tags for tag in tags)

    @property
    def is_metadata(self) -> bool:
        return self.has_tags(*METADATA_TAGS)


class RepositoryConfig(BaseModel):
    """Output of ``restic cat config``."""

    id: str
    version: int
    chunker_polynomial: str = ""

    class Config:
        """Pydantic configuration."""
        extra = "ignore"
