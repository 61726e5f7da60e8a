"""Backup execution engine."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..errors import PathResolutionFailure, ResticDroidError, ToolInvocationFailure
from ..restic.executor import ResticExecutor
from ..restic.models import BACKUP_TAGS
from ..restic.parser import OutputParser, ProgressUpdate
from ..restic.repository import ResticRepository
from ..root.package import PackageInfo
from ..root.shell import RootShell
from ..util.logging import get_logger
from .categories import AppPaths, DataCategory, app_tag, exclude_patterns, generate_paths
from .metadata import AppMetadataEntry, MetadataStore
from .progress import OperationContext, ProgressState, StageScheduler

logger = get_logger(__name__)

BACKUP_STAGES = ["Prepare", "Transfer", "Finalize"]


@dataclass
class BackupSelection:
    """Apps to back up and the categories to include.

    ``overrides`` replaces ``categories`` for individual packages.
    """

    apps: List[PackageInfo]
    categories: List[DataCategory]
    overrides: Dict[str, List[DataCategory]] = field(default_factory=dict)

    def categories_for(self, package_name: str) -> List[DataCategory]:
        return self.overrides.get(package_name, self.categories)


@dataclass
class BackupPlan:
    """Resolved paths and bookkeeping for one backup."""

    paths: List[str] = field(default_factory=list)
    excludes: List[str] = field(default_factory=list)
    entries: Dict[str, AppMetadataEntry] = field(default_factory=dict)

    @property
    def app_tags(self) -> List[str]:
        return [
            app_tag(entry.package_name, entry.version_code, entry.version_name)
            for entry in self.entries.values()
        ]


class BackupOrchestrator:
    """Runs one backup into one repository.

    Args:
        shell: Root shell for path checks and size computation
        executor: restic executor, checked for readiness before starting
        metadata: Store receiving per-app metadata of the new snapshot
        work_dir: Private directory for the ``--files-from`` list
        tags: Tags put on every app backup snapshot
    """

    def __init__(
        self,
        shell: RootShell,
        executor: ResticExecutor,
        metadata: MetadataStore,
        work_dir: Path,
        tags: Sequence[str] = BACKUP_TAGS,
    ):
        self.shell = shell
        self.executor = executor
        self.metadata = metadata
        self.work_dir = work_dir
        self.tags = list(tags)

    def run(self, context: OperationContext, repo: ResticRepository, selection: BackupSelection) -> ProgressState:
        """Execute the backup, publishing progress through ``context``.

        Returns:
            The final ProgressState; operation-level failures are in ``error``
        """
        scheduler = StageScheduler(BACKUP_STAGES)
        files_from: Optional[Path] = None

        try:
            self._preflight(selection)
            self.executor.ensure_ready()
            repo_id = repo.id

            context.enter_stage(scheduler, "Prepare")
            plan = self.prepare(context, scheduler, selection)
            context.complete_stage(scheduler, "Prepare")
            context.check_cancelled()

            context.enter_stage(scheduler, "Transfer", current_item="", items_processed=0, total_items=0)
            files_from = self._write_files_from(plan.paths)
            final = self._transfer(context, scheduler, repo, plan, files_from)

            context.enter_stage(scheduler, "Finalize")
            warnings = self._finalize(repo, repo_id, final.snapshot_id, plan)
            context.complete_stage(scheduler, "Finalize")

        except (ResticDroidError, OSError) as e:
            logger.error(f"Backup failed: {e}")
            return context.finish(error=str(e), summary=f"A fatal error occurred: {e}")
        except Exception as e:
            logger.exception("Unexpected error during backup")
            message = str(e) or type(e).__name__
            return context.finish(error=message, summary=f"A fatal error occurred: {message}")
        finally:
            if files_from is not None:
                _unlink(files_from)

        summary = final.summary or f"Backed up {len(plan.entries)} app(s)."
        if warnings:
            summary += "\n" + "\n".join(warnings)

        logger.info(f"Backup created snapshot {final.snapshot_id}")
        return context.finish(
            summary=summary,
            snapshot_id=final.snapshot_id,
            files_new=final.files_new,
            files_changed=final.files_changed,
            data_added=final.data_added,
            total_duration=final.total_duration,
        )

    def _preflight(self, selection: BackupSelection) -> None:
        if not selection.apps:
            raise PathResolutionFailure("No apps selected for backup.")
        if not any(selection.categories_for(app.package_name) for app in selection.apps):
            raise PathResolutionFailure("No backup categories selected.")

    def prepare(
        self,
        context: OperationContext,
        scheduler: StageScheduler,
        selection: BackupSelection,
    ) -> BackupPlan:
        """Generate per-app paths, keep those present on the device and size them.

        Raises:
            PathResolutionFailure: If no selected app has any path on the device
        """
        plan = BackupPlan()
        total = len(selection.apps)

        for index, app in enumerate(selection.apps):
            context.check_cancelled()
            fraction = index / total
            context.update(
                stage_percentage=fraction,
                overall_percentage=scheduler.overall("Prepare", fraction),
                current_item=app.display_name,
                items_processed=index,
                total_items=total,
            )

            categories = selection.categories_for(app.package_name)
            candidates = generate_paths(AppPaths(app.package_name, app.apk_paths), categories)
            existing = [path for path in candidates if self.shell.exists(path)]
            if not existing:
                logger.warning(f"Nothing to back up for {app.package_name}")
                continue

            for path in existing:
                if path not in plan.paths:
                    plan.paths.append(path)
            plan.excludes.extend(exclude_patterns(app.package_name, categories))
            plan.entries[app.package_name] = AppMetadataEntry(
                package_name=app.package_name,
                version_name=app.version_name,
                version_code=app.version_code,
                size=self.shell.disk_usage(existing),
                types=[category.type_key for category in categories],
            )

        if not plan.paths:
            raise PathResolutionFailure("No files found to back up for the selected apps.")

        logger.info(f"Backing up {len(plan.paths)} paths for {len(plan.entries)} apps")
        return plan

    def _write_files_from(self, paths: Sequence[str]) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="restic-files-", suffix=".txt", dir=self.work_dir)
        with os.fdopen(fd, "w") as f:
            f.write("\n".join(paths) + "\n")
        return Path(name)

    def _transfer(
        self,
        context: OperationContext,
        scheduler: StageScheduler,
        repo: ResticRepository,
        plan: BackupPlan,
        files_from: Path,
    ) -> ProgressUpdate:
        final: List[ProgressUpdate] = []

        def on_line(line: str) -> None:
            update = OutputParser.parse(line)
            if update is None:
                return
            if update.is_finished:
                final.append(update)
            context.apply(update, scheduler, "Transfer")

        repo.backup(
            files_from,
            tags=self.tags + plan.app_tags,
            excludes=list(dict.fromkeys(plan.excludes)),
            on_line=on_line,
            cancel_event=context.cancel_event,
        )

        if not final or not final[-1].snapshot_id:
            raise ToolInvocationFailure("restic finished without reporting a snapshot ID.")
        return final[-1]

    def _finalize(self, repo: ResticRepository, repo_id: str, snapshot_id: str, plan: BackupPlan) -> List[str]:
        """Record metadata for the new snapshot; failures become warnings."""
        warnings = []
        try:
            self.metadata.save(repo_id, snapshot_id, plan.entries)
        except OSError as e:
            logger.warning(f"Could not save metadata for snapshot {snapshot_id}: {e}")
            warnings.append("Warning: Could not save backup metadata file locally.")

        if not self.metadata.mirror(repo, repo_id):
            warnings.append("Warning: Could not back up metadata to the repository.")
        return warnings


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
