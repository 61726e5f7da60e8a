"""Restore planning and execution."""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from ..errors import PathResolutionFailure, PerAppFailure, ResticDroidError, ShellError
from ..restic.executor import ResticExecutor
from ..restic.models import SnapshotRecord
from ..restic.parser import OutputParser
from ..restic.repository import ResticRepository
from ..root.package import PackageManager
from ..root.shell import RootShell
from ..util.logging import get_logger
from ..util.paths import get_staging_path
from ..util.timeutil import format_elapsed
from .categories import (
    DataCategory,
    build_include_filters,
    classify,
    find_apk_path,
    parse_app_tag,
    staged_path,
)
from .metadata import AppMetadataEntry
from .progress import OperationContext, ProgressState, StageScheduler

logger = get_logger(__name__)

TRANSFER = "Transfer"
PROCESSING = "Processing Apps"
CLEANUP = "Cleanup"

NO_PACKAGE_FILES = "No package files found in restored data."
DATA_INCOMPLETE = "Data restore failed or incomplete."


class InstalledApp(Protocol):
    label: str
    version_code: int


@dataclass
class RestoreCandidate:
    """One app found in a snapshot, with its state on this device."""

    package_name: str
    label: str
    version_name: str = ""
    version_code: int = 0
    backup_size: Optional[int] = None
    backed_up_items: List[str] = field(default_factory=list)
    installed_version_code: Optional[int] = None
    selected: bool = True

    @property
    def is_installed(self) -> bool:
        return self.installed_version_code is not None

    @property
    def is_downgrade(self) -> bool:
        return self.is_installed and self.version_code < self.installed_version_code


def plan(
    snapshot: SnapshotRecord,
    metadata: Mapping[str, AppMetadataEntry],
    installed: Mapping[str, InstalledApp],
) -> List[RestoreCandidate]:
    """Build restore candidates for a snapshot.

    Apps come from the recorded metadata, or from the per-app snapshot tags
    when nothing was recorded locally.

    Args:
        snapshot: Snapshot to restore from
        metadata: Recorded per-package metadata of the snapshot
        installed: Currently installed apps by package name

    Returns:
        Candidates sorted by backup size (largest first), then label
    """
    entries: Dict[str, AppMetadataEntry] = dict(metadata)
    if not entries:
        for tag in snapshot.tags:
            parsed = parse_app_tag(tag)
            if parsed is not None:
                package_name, version_code, version_name = parsed
                entries[package_name] = AppMetadataEntry(
                    package_name=package_name, version_code=version_code, version_name=version_name
                )

    candidates = []
    for package_name, entry in entries.items():
        app = installed.get(package_name)
        candidates.append(
            RestoreCandidate(
                package_name=package_name,
                label=app.label if app is not None and app.label else package_name,
                version_name=entry.version_name,
                version_code=entry.version_code,
                backup_size=entry.size if metadata else None,
                backed_up_items=classify(snapshot.paths, package_name),
                installed_version_code=app.version_code if app is not None else None,
            )
        )

    return sorted(candidates, key=lambda c: (-(c.backup_size or 0), c.label.lower()))


class RestoreSelection:
    """User choices for a restore.

    A candidate can only be selected when downgrades are allowed or it is not
    a downgrade; toggles never select anything else.
    """

    def __init__(
        self,
        candidates: Sequence[RestoreCandidate],
        categories: Sequence[DataCategory],
        allow_downgrade: bool = False,
    ):
        self.candidates = list(candidates)
        self.categories = list(categories)
        self.allow_downgrade = allow_downgrade
        for candidate in self.candidates:
            candidate.selected = candidate.selected and self.can_select(candidate)

    def can_select(self, candidate: RestoreCandidate) -> bool:
        return self.allow_downgrade or not candidate.is_downgrade

    def find(self, package_name: str) -> Optional[RestoreCandidate]:
        return next((c for c in self.candidates if c.package_name == package_name), None)

    def toggle(self, package_name: str) -> None:
        candidate = self.find(package_name)
        if candidate is not None and self.can_select(candidate):
            candidate.selected = not candidate.selected

    def toggle_all(self) -> None:
        select = any(not c.selected for c in self.candidates)
        for candidate in self.candidates:
            candidate.selected = select and self.can_select(candidate)

    def select_only(self, package_names: Sequence[str]) -> None:
        wanted = set(package_names)
        for candidate in self.candidates:
            candidate.selected = candidate.package_name in wanted and self.can_select(candidate)

    def set_allow_downgrade(self, allow: bool) -> None:
        self.allow_downgrade = allow
        if not allow:
            for candidate in self.candidates:
                if candidate.is_downgrade:
                    candidate.selected = False

    def toggle_category(self, category: DataCategory) -> None:
        if category in self.categories:
            self.categories.remove(category)
        else:
            self.categories.append(category)

    @property
    def selected(self) -> List[RestoreCandidate]:
        return [c for c in self.candidates if c.selected and self.can_select(c)]

    @property
    def install_selected(self) -> bool:
        return DataCategory.APK in self.categories

    @property
    def data_categories(self) -> List[DataCategory]:
        return [c for c in DataCategory if c.is_data and c in self.categories]

    def stages(self) -> List[str]:
        stages = [TRANSFER]
        if self.install_selected or self.data_categories:
            stages.append(PROCESSING)
        stages.append(CLEANUP)
        return stages


@dataclass
class AppOutcome:
    package_name: str
    label: str
    failures: List[PerAppFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class RestoreOrchestrator:
    """Restores apps from one snapshot.

    Files are restored into a fresh staging directory, then each app is
    installed and its data copied into place, strictly one app at a time.
    """

    def __init__(
        self,
        shell: RootShell,
        executor: ResticExecutor,
        staging_root: Path,
        packages: Optional[PackageManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.shell = shell
        self.executor = executor
        self.staging_root = staging_root
        self.packages = packages or PackageManager(shell)
        self._clock = clock

    def run(
        self,
        context: OperationContext,
        repo: ResticRepository,
        snapshot: SnapshotRecord,
        selection: RestoreSelection,
    ) -> ProgressState:
        """Execute the restore, publishing progress through ``context``.

        Per-app failures end up in the summary only; ``error`` is set for
        failures of the whole operation.
        """
        started = self._clock()
        apps = selection.selected
        scheduler = StageScheduler(selection.stages())
        staging: Optional[Path] = None
        outcomes: List[AppOutcome] = []
        fatal: Optional[str] = None

        try:
            if not apps:
                raise PathResolutionFailure("No apps selected for restore.")

            includes = build_include_filters(
                [app.package_name for app in apps], selection.categories, snapshot.paths
            )
            if not includes:
                raise PathResolutionFailure("No files found in the snapshot for the selected apps.")

            self.executor.ensure_ready()
            staging = get_staging_path(self.staging_root)
            self._transfer(context, scheduler, repo, snapshot, staging, includes)

            if PROCESSING in scheduler:
                outcomes = self._process_apps(context, scheduler, selection, apps, staging, includes)
            else:
                outcomes = [AppOutcome(app.package_name, app.label) for app in apps]

        except (ResticDroidError, OSError) as e:
            logger.error(f"Restore failed: {e}")
            fatal = str(e)
        except Exception as e:
            logger.exception("Unexpected error during restore")
            fatal = str(e) or type(e).__name__

        cleanup_warning = self._cleanup(context, scheduler, staging)

        if fatal is not None:
            summary = f"A fatal error occurred: {fatal}"
            if cleanup_warning:
                summary += f"\n{cleanup_warning}"
            return context.finish(error=fatal, summary=summary)

        successes = sum(1 for outcome in outcomes if outcome.success)
        return context.finish(
            summary=self._summary(outcomes, self._clock() - started, cleanup_warning),
            items_processed=successes,
            total_items=len(outcomes),
        )

    def _transfer(
        self,
        context: OperationContext,
        scheduler: StageScheduler,
        repo: ResticRepository,
        snapshot: SnapshotRecord,
        staging: Path,
        includes: List[str],
    ) -> None:
        context.enter_stage(scheduler, TRANSFER)
        logger.info(f"Restoring {len(includes)} paths from {snapshot.short_id or snapshot.id} into {staging}")

        def on_line(line: str) -> None:
            update = OutputParser.parse(line)
            if update is not None:
                context.apply(update, scheduler, TRANSFER)

        repo.restore(snapshot.id, staging, includes=includes, on_line=on_line, cancel_event=context.cancel_event)
        context.complete_stage(scheduler, TRANSFER)

    def _process_apps(
        self,
        context: OperationContext,
        scheduler: StageScheduler,
        selection: RestoreSelection,
        apps: List[RestoreCandidate],
        staging: Path,
        includes: List[str],
    ) -> List[AppOutcome]:
        context.enter_stage(scheduler, PROCESSING)
        outcomes = []
        total = len(apps)

        for index, app in enumerate(apps):
            context.check_cancelled()
            context.update(
                stage_percentage=index / total,
                overall_percentage=scheduler.overall(PROCESSING, index / total),
                current_item=app.label,
                items_processed=index,
                total_items=total,
            )

            outcomes.append(self._process_app(selection, app, staging, includes))

            fraction = (index + 1) / total
            context.update(
                stage_percentage=fraction,
                overall_percentage=scheduler.overall(PROCESSING, fraction),
                items_processed=index + 1,
            )

        return outcomes

    def _process_app(
        self,
        selection: RestoreSelection,
        app: RestoreCandidate,
        staging: Path,
        includes: List[str],
    ) -> AppOutcome:
        outcome = AppOutcome(app.package_name, app.label)
        install_ok = True

        if selection.install_selected:
            try:
                self.install(app, staging, includes, selection.allow_downgrade)
            except PerAppFailure as failure:
                outcome.failures.append(failure)
                # without package files no session was opened, so data still goes in
                install_ok = failure.reason == NO_PACKAGE_FILES

        if install_ok and selection.data_categories:
            try:
                self.restore_data(app, staging, selection.data_categories)
            except PerAppFailure as failure:
                outcome.failures.append(failure)

        for failure in outcome.failures:
            logger.warning(f"Restore of {app.package_name} failed: {failure.reason}")
        return outcome

    def install(self, app: RestoreCandidate, staging: Path, includes: Sequence[str], allow_downgrade: bool) -> None:
        """Install all staged package files of ``app`` in one session.

        Raises:
            PerAppFailure: If no package files were staged or the session failed
        """
        apk_dir = find_apk_path(includes, app.package_name)
        apk_files: List[str] = []
        if apk_dir is not None:
            try:
                apk_files = self.shell.find_files(staged_path(staging, apk_dir), ".apk")
            except ShellError as e:
                logger.warning(f"Could not list staged package files of {app.package_name}: {e}")
        if not apk_files:
            raise PerAppFailure(app.label, NO_PACKAGE_FILES)

        # base.apk first
        apk_files.sort(key=lambda path: (not path.endswith("/base.apk"), path))

        session = self.packages.open_session(allow_downgrade=allow_downgrade)
        try:
            with session:
                for index, apk_file in enumerate(apk_files):
                    session.write(index, apk_file)
                session.commit()
        except ShellError as e:
            raise PerAppFailure(app.label, str(e)) from e

        logger.info(f"Installed {app.package_name} ({len(apk_files)} package files)")

    def restore_data(self, app: RestoreCandidate, staging: Path, categories: Sequence[DataCategory]) -> None:
        """Copy staged data of ``app`` into place and hand it to the app's owner.

        Every category is attempted even after an earlier one failed.

        Raises:
            PerAppFailure: If the owner could not be resolved or any copy/chown failed
        """
        package_name = app.package_name
        try:
            owner = self.shell.owner_of(DataCategory.DATA.path_for(package_name))
        except ShellError as e:
            logger.warning(f"Could not resolve owner of {package_name}: {e}")
            raise PerAppFailure(app.label, DATA_INCOMPLETE) from e

        try:
            if not self.shell.force_stop(package_name):
                logger.debug(f"force-stop of {package_name} failed")
        except ShellError as e:
            logger.debug(f"force-stop of {package_name} failed: {e}")

        complete = True
        for category in categories:
            destination = category.path_for(package_name)
            source = staged_path(staging, destination)

            try:
                if not self.shell.exists(source):
                    continue
                self.shell.mkdirs(destination)
                self.shell.copy_tree(source, destination)
                self.shell.chown_recursive(owner, destination)
            except ShellError as e:
                logger.warning(f"{category.label} restore of {package_name} incomplete: {e}")
                complete = False

        if not complete:
            raise PerAppFailure(app.label, DATA_INCOMPLETE)

    def _cleanup(self, context: OperationContext, scheduler: StageScheduler, staging: Optional[Path]) -> Optional[str]:
        """Remove the staging directory; returns a warning instead of raising."""
        context.enter_stage(scheduler, CLEANUP, current_item="")
        warning = None

        if staging is not None:
            try:
                self.shell.remove_tree(staging)
            except (ShellError, OSError) as e:
                logger.warning(f"Could not remove staging directory {staging}: {e}")
                warning = f"Warning: Could not remove temporary restore directory {staging}."

        context.complete_stage(scheduler, CLEANUP)
        return warning

    def _summary(self, outcomes: List[AppOutcome], elapsed: float, cleanup_warning: Optional[str]) -> str:
        successes = sum(1 for outcome in outcomes if outcome.success)
        failures = len(outcomes) - successes
        details = [str(failure) for outcome in outcomes for failure in outcome.failures]

        summary = f"Restore finished in {format_elapsed(elapsed)}. Successfully processed {successes} app(s)."
        if failures:
            summary += f" Failed to restore {failures} app(s)."
        if details:
            summary += "\n\nDetails:\n- " + "\n- ".join(details)
        if cleanup_warning:
            summary += f"\n\n{cleanup_warning}"
        return summary
