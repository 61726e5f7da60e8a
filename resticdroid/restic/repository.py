"""High-level operations on one restic repository."""

import threading
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Union

from pydantic import TypeAdapter, ValidationError

from ..errors import ToolInvocationFailure
from ..util.logging import get_logger
from .executor import ResticExecutor, restic_args
from .models import BACKUP_TAGS, METADATA_TAGS, RepositoryConfig, SnapshotRecord
from .parser import MaintenanceOutputParser

logger = get_logger(__name__)

_SNAPSHOTS = TypeAdapter(Optional[List[SnapshotRecord]])

LineCallback = Optional[Callable[[str], None]]


def _tag_filter(tags: Iterable[str]) -> str:
    # a comma-joined value matches snapshots carrying all of the tags
    return ",".join(tags)


class ResticRepository:
    """A restic repository bound to its password.

    Args:
        executor: Executor used for every command
        path: Repository location as passed to ``restic -r``
        password: Repository password
        repo_id: Repository ID, read lazily from ``cat config`` when omitted
        backup_tags: Tags identifying app backup snapshots for listing and retention
    """

    def __init__(
        self,
        executor: ResticExecutor,
        path: str,
        password: str,
        repo_id: Optional[str] = None,
        backup_tags: Sequence[str] = BACKUP_TAGS,
    ):
        self.executor = executor
        self.path = path
        self.password = password
        self.backup_tags = tuple(backup_tags)
        self._id = repo_id

    def _run(self, args: Sequence[Union[str, Path]], **kwargs) -> str:
        return self.executor.run(self.path, self.password, args, **kwargs)

    @property
    def id(self) -> str:
        if self._id is None:
            self._id = self.config().id
        return self._id

    def exists(self) -> bool:
        """Check whether a local repository has been initialized."""
        if not self.path.startswith("/"):
            # remote backends cannot be probed without credentials
            return True
        return self.executor.shell.exists(f"{self.path.rstrip('/')}/config")

    def init(self) -> None:
        logger.info(f"Initializing repository at {self.path}")
        self._run(["init"])

    def config(self) -> RepositoryConfig:
        """Read the repository config; also verifies the password."""
        output = self._run(["cat", "config"])
        try:
            return RepositoryConfig.model_validate_json(output)
        except ValidationError as e:
            raise ToolInvocationFailure(f"Unreadable repository config: {e}") from e

    def snapshots(self, tags: Optional[Sequence[str]] = None) -> List[SnapshotRecord]:
        """List snapshots, newest first.

        Args:
            tags: Only snapshots carrying all of these tags; None means the
                app backup tags, an empty sequence lists everything
        """
        if tags is None:
            tags = self.backup_tags
        args = ["snapshots", "--json"]
        if tags:
            args.extend(["--tag", _tag_filter(tags)])

        output = self._run(args)
        try:
            records = _SNAPSHOTS.validate_json(output or "[]") or []
        except ValidationError as e:
            raise ToolInvocationFailure(f"Unreadable snapshot list: {e}") from e

        return sorted(records, key=_sort_key, reverse=True)

    def find_snapshot(self, prefix: str, tags: Sequence[str] = ()) -> Optional[SnapshotRecord]:
        """Find a snapshot by full or short ID prefix, among all snapshots by default."""
        for snapshot in self.snapshots(tags=tags):
            if snapshot.id.startswith(prefix) or (snapshot.short_id and snapshot.short_id.startswith(prefix)):
                return snapshot
        return None

    def latest_snapshot(self, tags: Sequence[str]) -> Optional[SnapshotRecord]:
        records = self.snapshots(tags=tags)
        return records[0] if records else None

    def forget_snapshot(self, snapshot_id: str) -> str:
        return self._run(["forget", snapshot_id])

    def forget(
        self,
        keep_last: Optional[int] = None,
        keep_daily: Optional[int] = None,
        keep_weekly: Optional[int] = None,
        keep_monthly: Optional[int] = None,
        prune: bool = False,
    ) -> str:
        """Apply a retention policy to app backup snapshots.

        Returns:
            Condensed summary of the forget output
        """
        policy = {
            "keep_last": keep_last,
            "keep_daily": keep_daily,
            "keep_weekly": keep_weekly,
            "keep_monthly": keep_monthly,
        }
        if not any(value for value in policy.values()):
            raise ValueError("At least one keep policy is required.")

        args = restic_args("forget", tag=_tag_filter(self.backup_tags), prune=prune, **policy)
        return MaintenanceOutputParser.summarize("forget", self._run(args))

    def forget_metadata(self, keep_last: int) -> str:
        args = restic_args("forget", tag=_tag_filter(METADATA_TAGS), keep_last=keep_last)
        return MaintenanceOutputParser.summarize("forget", self._run(args))

    def check(self, read_data: bool = False) -> str:
        return MaintenanceOutputParser.summarize("check", self._run(restic_args("check", read_data=read_data)))

    def prune(self) -> str:
        return MaintenanceOutputParser.summarize("prune", self._run(["prune"]))

    def unlock(self) -> str:
        return MaintenanceOutputParser.summarize("unlock", self._run(["unlock"]))

    def change_password(self, new_password: str) -> None:
        with self.executor.password_file(new_password) as new_file:
            self._run(["key", "passwd", "--new-password-file", new_file])
        self.password = new_password
        logger.info(f"Changed password of repository {self.path}")

    def backup(
        self,
        files_from: Path,
        tags: Sequence[str],
        excludes: Sequence[str] = (),
        on_line: LineCallback = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Back up the paths listed in ``files_from`` with ``--json`` progress."""
        args = restic_args(
            "backup",
            files_from=files_from,
            json=True,
            tag=list(tags),
            exclude=list(excludes),
        )
        args.append("--verbose=2")
        return self._run(args, on_line=on_line, cancel_event=cancel_event)

    def backup_directory(
        self,
        directory: Union[str, Path],
        name: str,
        tags: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Back up ``directory/name`` with paths recorded relative to ``directory``."""
        args = restic_args("backup", name, tag=list(tags))
        return self._run(args, cwd=directory, cancel_event=cancel_event)

    def restore(
        self,
        snapshot_id: str,
        target: Union[str, Path],
        includes: Sequence[str] = (),
        on_line: LineCallback = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Restore a snapshot (optionally filtered) into ``target``."""
        args = restic_args(
            "restore",
            snapshot_id,
            target=target,
            exclude_xattr="security.selinux",
            include=list(includes),
            json=True,
        )
        return self._run(args, on_line=on_line, cancel_event=cancel_event)


def _sort_key(snapshot: SnapshotRecord):
    timestamp = snapshot.timestamp
    return timestamp.timestamp() if timestamp is not None else 0.0
