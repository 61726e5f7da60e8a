"""Per-snapshot app metadata store, mirrored into the repository."""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import ResticDroidError
from ..restic.models import METADATA_TAGS
from ..restic.repository import ResticRepository
from ..root.shell import RootShell
from ..util.logging import get_logger
from ..util.paths import ensure_directory, get_staging_path

logger = get_logger(__name__)


class AppMetadataEntry(BaseModel):
    """Version and size of one app at backup time."""

    package_name: str = Field(default="", exclude=True, description="Package name (the key in the snapshot map)")
    version_name: str = Field(default="", alias="versionName")
    version_code: int = Field(default=0, alias="versionCode")
    size: int = Field(default=0, description="Backed-up bytes")
    types: List[str] = Field(default_factory=list, description="Metadata type keys of the backed-up categories")

    class Config:
        """Pydantic configuration."""
        populate_by_name = True
        extra = "ignore"


class SnapshotMetadata(BaseModel):
    """Contents of one ``<snapshot_id>.json`` file."""

    apps: Dict[str, AppMetadataEntry] = Field(default_factory=dict)

    class Config:
        """Pydantic configuration."""
        extra = "ignore"

    def entries(self) -> Dict[str, AppMetadataEntry]:
        return {
            package_name: entry.model_copy(update={"package_name": package_name})
            for package_name, entry in self.apps.items()
        }


class MetadataStore:
    """Local ``<metadata_dir>/<repo_id>/<snapshot_id>.json`` files.

    The whole directory is backed up into the repository as a snapshot
    tagged ``restoid,metadata`` so it can be recovered on a fresh install.
    """

    def __init__(
        self,
        metadata_dir: Path,
        shell: Optional[RootShell] = None,
        staging_root: Optional[Path] = None,
        retention: int = 5,
    ):
        self.metadata_dir = metadata_dir
        self.shell = shell
        self.staging_root = staging_root or metadata_dir.parent / "staging"
        self.retention = retention

    def _repo_dir(self, repo_id: str) -> Path:
        return self.metadata_dir / repo_id

    def _snapshot_file(self, repo_id: str, snapshot_id: str) -> Path:
        return self._repo_dir(repo_id) / f"{snapshot_id}.json"

    def save(self, repo_id: str, snapshot_id: str, entries: Mapping[str, AppMetadataEntry]) -> Path:
        """Write the metadata of one snapshot, replacing any previous file atomically."""
        repo_dir = ensure_directory(self._repo_dir(repo_id))
        document = SnapshotMetadata(apps=dict(entries))
        target = self._snapshot_file(repo_id, snapshot_id)

        fd, temp_name = tempfile.mkstemp(prefix=f".{snapshot_id}.", suffix=".tmp", dir=repo_dir)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document.model_dump(by_alias=True), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_name, target)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

        logger.debug(f"Saved metadata for {len(document.apps)} apps to {target}")
        return target

    def get_metadata_for_snapshot(self, repo_id: str, snapshot_id: str) -> Dict[str, AppMetadataEntry]:
        """Per-package metadata of a snapshot; empty when none was recorded."""
        path = self._snapshot_file(repo_id, snapshot_id)
        if not path.is_file():
            return {}
        return self._load(path)

    def get_all_metadata(self, repo_id: str) -> Dict[str, Dict[str, AppMetadataEntry]]:
        repo_dir = self._repo_dir(repo_id)
        if not repo_dir.is_dir():
            return {}
        return {path.stem: self._load(path) for path in sorted(repo_dir.glob("*.json"))}

    def delete_metadata_for_snapshot(self, repo_id: str, snapshot_id: str) -> bool:
        try:
            self._snapshot_file(repo_id, snapshot_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete metadata for snapshot {snapshot_id}: {e}")
            return False
        return True

    def _load(self, path: Path) -> Dict[str, AppMetadataEntry]:
        try:
            return SnapshotMetadata.model_validate_json(path.read_text()).entries()
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable metadata file {path}: {e}")
            return {}

    def mirror(self, repo: ResticRepository, repo_id: str) -> bool:
        """Back up this repository's metadata directory, then prune old copies.

        Failures are logged and reported through the return value only.
        """
        if not self._repo_dir(repo_id).is_dir():
            logger.debug(f"No local metadata for repository {repo_id}, nothing to mirror")
            return False

        try:
            repo.backup_directory(self.metadata_dir, repo_id, tags=METADATA_TAGS)
        except ResticDroidError as e:
            logger.warning(f"Metadata backup failed: {e}")
            return False

        try:
            result = repo.forget_metadata(keep_last=self.retention)
            logger.debug(f"Pruned metadata snapshots: {result}")
        except ResticDroidError as e:
            logger.warning(f"Forgetting old metadata snapshots failed: {e}")
            return False

        return True

    def bootstrap(self, repo: ResticRepository, repo_id: str) -> int:
        """Merge the newest metadata snapshot of ``repo`` into local state.

        Local files win over restored ones. Never raises.

        Returns:
            Number of snapshot metadata files added
        """
        try:
            snapshot = repo.latest_snapshot(tags=METADATA_TAGS)
        except ResticDroidError as e:
            logger.warning(f"Could not list metadata snapshots: {e}")
            return 0

        if snapshot is None:
            logger.info("Repository has no metadata snapshot")
            return 0

        staging = get_staging_path(self.staging_root, prefix="metadata")
        try:
            repo.restore(snapshot.id, staging)
            if self.shell is not None:
                # restic ran as root; take the restored files back
                self.shell.chown_recursive(f"{os.getuid()}:{os.getgid()}", staging)
            return self._merge(staging, repo_id)
        except (ResticDroidError, OSError) as e:
            logger.warning(f"Metadata restore failed: {e}")
            return 0
        finally:
            self._remove_staging(staging)

    def _merge(self, staging: Path, repo_id: str) -> int:
        source = next((p for p in [staging / repo_id, *staging.rglob(repo_id)] if p.is_dir()), None)
        if source is None:
            logger.info(f"Metadata snapshot holds nothing for repository {repo_id}")
            return 0

        target_dir = ensure_directory(self._repo_dir(repo_id))
        added = 0
        for path in sorted(source.glob("*.json")):
            target = target_dir / path.name
            if target.exists():
                continue
            try:
                entries = SnapshotMetadata.model_validate_json(path.read_text()).apps
            except ValidationError as e:
                logger.warning(f"Skipping restored metadata file {path.name}: {e}")
                continue
            self.save(repo_id, path.stem, entries)
            added += 1

        logger.info(f"Recovered metadata for {added} snapshots")
        return added

    def _remove_staging(self, staging: Path) -> None:
        try:
            if self.shell is not None:
                self.shell.remove_tree(staging)
            elif staging.exists():
                shutil.rmtree(staging)
        except (ResticDroidError, OSError) as e:
            logger.warning(f"Could not remove {staging}: {e}")
