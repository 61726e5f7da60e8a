"""Command Line Interface for ResticDroid."""

import os
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from .apps import AppInventoryCache
from .backup import (
    BackupOrchestrator,
    BackupSelection,
    DataCategory,
    MetadataStore,
    OperationContext,
    ProgressState,
    RestoreOrchestrator,
    RestoreSelection,
    parse_app_tag,
    plan,
)
from .config import ResticDroidConfig, get_config, load_config, set_config
from .errors import ResticDroidError
from .repositories import LocalRepository, RepositoryRegistry
from .restic import BinaryState, ResticExecutor, ResticRepository
from .root import PackageManager, RootShell
from .util import format_size, get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

PASSWORD_ENV = "RESTICDROID_PASSWORD"
CATEGORY_CHOICES = [category.name.lower() for category in DataCategory]


def setup_cli_logging(verbose: bool = False, level: str = "INFO", log_file: Optional[Path] = None):
    """Setup logging for CLI."""
    setup_logging(level="DEBUG" if verbose else level, log_file=log_file, console=console)


class Services:
    """Wires the components together from the configuration."""

    def __init__(self, config: ResticDroidConfig):
        self.config = config
        self.shell = RootShell(su_path=config.su_path, timeout=config.shell_timeout)
        self.packages = PackageManager(self.shell)
        self.executor = ResticExecutor(
            self.shell,
            restic_path=config.restic_path,
            cache_dir=config.cache_dir,
            pinned_version=config.restic_version,
            strict=config.strict_version,
        )
        self.metadata = MetadataStore(
            config.metadata_dir,
            shell=self.shell,
            staging_root=config.staging_root,
            retention=config.metadata_retention,
        )
        self.registry = RepositoryRegistry(
            config.repositories_file, self.executor, self.metadata, backup_tags=config.backup.tags
        )
        self._inventory: Optional[AppInventoryCache] = None

    @property
    def inventory(self) -> AppInventoryCache:
        if self._inventory is None:
            self._inventory = AppInventoryCache(
                self.packages,
                self.config.app_cache_file,
                max_workers=self.config.max_concurrent_operations,
            )
        return self._inventory

    def open_selected(self) -> Tuple[LocalRepository, ResticRepository]:
        repository = self.registry.selected()
        if repository is None:
            raise click.ClickException("No repository selected. Use 'resticdroid repo add' first.")
        return repository, self.registry.open(repository, _password(repository.display_name))


def _password(name: str, confirm: bool = False) -> str:
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    return click.prompt(f"Password for {name}", hide_input=True, confirmation_prompt=confirm)


def _categories(selected: List[str], defaults) -> List[DataCategory]:
    if selected:
        return [DataCategory[name.upper()] for name in selected]
    return DataCategory.from_defaults(defaults)


class TqdmObserver:
    """Renders OperationContext progress as a tqdm bar."""

    def __init__(self, title: str):
        self.bar = tqdm(total=100, desc=title, unit="%", bar_format="{desc}: {percentage:3.0f}%|{bar}| {postfix}")

    def __call__(self, state: ProgressState) -> None:
        if state.stage_title:
            self.bar.set_description(state.stage_title, refresh=False)
        self.bar.n = round(state.overall_percentage * 100, 1)
        if state.current_item:
            self.bar.set_postfix_str(state.current_item[-40:], refresh=False)
        self.bar.refresh()
        if state.is_finished:
            self.bar.close()


def _run_operation(context: OperationContext, title: str, operation: Callable[[], ProgressState]) -> ProgressState:
    """Run an operation on a worker thread so Ctrl-C can cancel it cleanly."""
    context.subscribe(TqdmObserver(title))
    result = {}

    def work() -> None:
        try:
            result["state"] = operation()
        except Exception as e:
            logger.exception(f"{title} crashed")
            if not context.state.is_finished:
                context.finish(error=str(e) or type(e).__name__, summary=f"A fatal error occurred: {e}")

    worker = threading.Thread(target=work, name=context.name, daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling, cleaning up...[/yellow]")
        context.cancel()
        worker.join()

    return result.get("state", context.state)


def _report(state: ProgressState) -> None:
    if state.error:
        console.print(f"[red]{state.summary or state.error}[/red]")
        sys.exit(1)
    console.print(f"[bold green]{state.summary}[/bold green]")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--config", "-c", type=click.Path(exists=True, path_type=Path), help="Configuration file path")
@click.pass_context
def cli(ctx, verbose: bool, config: Optional[Path]):
    """ResticDroid - restic-based app backup and restore for rooted Android devices."""
    if config:
        set_config(load_config(config))

    settings = get_config()
    setup_cli_logging(verbose, settings.log_level, settings.log_file if settings.file_logging else None)

    ctx.ensure_object(dict)
    ctx.obj["services"] = Services(settings)


def _services(ctx) -> Services:
    return ctx.obj["services"]


# Repositories


@cli.group()
def repo():
    """Repository management commands."""
    pass


@repo.command("add")
@click.argument("path")
@click.option("--name", "-n", default="", help="Display name")
@click.pass_context
def repo_add(ctx, path: str, name: str):
    """Register a repository, initializing it if needed."""
    services = _services(ctx)
    try:
        repository = services.registry.add(path, _password(path, confirm=True), name=name)
    except ResticDroidError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"[bold green]Added repository {repository.display_name}[/bold green] ({repository.id[:8]})")


@repo.command("list")
@click.pass_context
def repo_list(ctx):
    """List registered repositories."""
    services = _services(ctx)
    repositories = services.registry.repositories
    if not repositories:
        console.print("[yellow]No repositories registered[/yellow]")
        return

    selected = services.registry.selected()
    table = Table(title="Repositories")
    table.add_column("", style="green")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="white")
    table.add_column("ID", style="white")

    for repository in repositories:
        marker = "*" if selected is not None and selected.path == repository.path else ""
        table.add_row(marker, repository.display_name, repository.path, repository.id[:8])

    console.print(table)


@repo.command("select")
@click.argument("path")
@click.pass_context
def repo_select(ctx, path: str):
    """Select the repository used by other commands."""
    try:
        repository = _services(ctx).registry.select(path)
    except ResticDroidError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"Selected {repository.display_name}")


@repo.command("remove")
@click.argument("path")
@click.confirmation_option(prompt="Forget this repository? Its data is left untouched.")
@click.pass_context
def repo_remove(ctx, path: str):
    """Unregister a repository."""
    try:
        _services(ctx).registry.remove(path)
    except ResticDroidError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"Removed {path}")


@repo.command("passwd")
@click.pass_context
def repo_passwd(ctx):
    """Change the password of the selected repository."""
    services = _services(ctx)
    _, restic = services.open_selected()
    new_password = click.prompt("New password", hide_input=True, confirmation_prompt=True)
    try:
        restic.change_password(new_password)
    except ResticDroidError as e:
        console.print(f"[red]Password change failed: {e}[/red]")
        sys.exit(1)
    console.print("[bold green]Password changed[/bold green]")


# Snapshots


@cli.command("snapshots")
@click.option("--all", "show_all", is_flag=True, help="Include metadata snapshots")
@click.pass_context
def snapshots(ctx, show_all: bool):
    """List snapshots of the selected repository."""
    services = _services(ctx)
    repository, restic = services.open_selected()
    try:
        records = restic.snapshots(tags=() if show_all else None)
    except ResticDroidError as e:
        console.print(f"[red]Error listing snapshots: {e}[/red]")
        sys.exit(1)

    if not records:
        console.print("[yellow]No snapshots found[/yellow]")
        return

    all_metadata = services.metadata.get_all_metadata(repository.id)
    table = Table(title=f"Snapshots - {repository.display_name}")
    table.add_column("ID", style="cyan")
    table.add_column("Time", style="white")
    table.add_column("Apps", style="white")
    table.add_column("Size", style="white")
    table.add_column("Tags", style="dim")

    for record in records:
        entries = all_metadata.get(record.id, {})
        timestamp = record.timestamp
        table.add_row(
            record.short_id or record.id[:8],
            timestamp.strftime("%Y-%m-%d %H:%M:%S") if timestamp else record.time,
            str(len(entries)) if entries else "-",
            format_size(sum(e.size for e in entries.values())) if entries else "-",
            ", ".join(tag for tag in record.tags if not tag.startswith("app:")),
        )

    console.print(table)


@cli.group()
def snapshot():
    """Single snapshot commands."""
    pass


@snapshot.command("show")
@click.argument("snapshot_id")
@click.pass_context
def snapshot_show(ctx, snapshot_id: str):
    """Show the apps contained in a snapshot."""
    services = _services(ctx)
    repository, restic = services.open_selected()
    try:
        record = restic.find_snapshot(snapshot_id)
    except ResticDroidError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if record is None:
        console.print(f"[red]Snapshot not found: {snapshot_id}[/red]")
        sys.exit(1)

    metadata = services.metadata.get_metadata_for_snapshot(repository.id, record.id)
    candidates = plan(record, metadata, services.inventory.get_many(list(metadata) or _tagged(record)))

    table = Table(title=f"Snapshot {record.short_id or record.id[:8]} - {record.time}")
    table.add_column("App", style="cyan")
    table.add_column("Version", style="white")
    table.add_column("Size", style="white")
    table.add_column("Items", style="white")
    table.add_column("Installed", style="green")

    for candidate in candidates:
        installed = "-"
        if candidate.is_installed:
            installed = "downgrade" if candidate.is_downgrade else str(candidate.installed_version_code)
        table.add_row(
            candidate.label,
            f"{candidate.version_name} ({candidate.version_code})",
            format_size(candidate.backup_size) if candidate.backup_size is not None else "-",
            ", ".join(candidate.backed_up_items),
            installed,
        )

    console.print(table)


def _tagged(record) -> List[str]:
    return [parsed[0] for parsed in map(parse_app_tag, record.tags) if parsed is not None]


@snapshot.command("forget")
@click.argument("snapshot_id")
@click.confirmation_option(prompt="Forget this snapshot?")
@click.pass_context
def snapshot_forget(ctx, snapshot_id: str):
    """Forget a snapshot and its recorded metadata."""
    services = _services(ctx)
    repository, restic = services.open_selected()
    try:
        record = restic.find_snapshot(snapshot_id)
        if record is None:
            console.print(f"[red]Snapshot not found: {snapshot_id}[/red]")
            sys.exit(1)
        restic.forget_snapshot(record.id)
    except ResticDroidError as e:
        console.print(f"[red]Forget failed: {e}[/red]")
        sys.exit(1)

    services.metadata.delete_metadata_for_snapshot(repository.id, record.id)
    services.metadata.mirror(restic, repository.id)
    console.print(f"Forgot snapshot {record.short_id or record.id[:8]}")


# Apps


@cli.group()
def apps():
    """Installed application commands."""
    pass


@apps.command("list")
@click.pass_context
def apps_list(ctx):
    """List installed user applications."""
    descriptors = _services(ctx).inventory.installed_user_apps()
    if not descriptors:
        console.print("[yellow]No user applications found[/yellow]")
        return

    table = Table(title="Installed Applications")
    table.add_column("Label", style="cyan")
    table.add_column("Package", style="white")
    table.add_column("Version", style="white")

    for descriptor in descriptors:
        table.add_row(descriptor.label, descriptor.package_name, f"{descriptor.version_name} ({descriptor.version_code})")

    console.print(table)


# Backup and restore


@cli.group()
def backup():
    """Backup commands."""
    pass


@backup.command("run")
@click.option("--package", "-p", "packages", multiple=True, help="Package to back up (default: all user apps)")
@click.option("--category", "categories", multiple=True, type=click.Choice(CATEGORY_CHOICES), help="Category to include")
@click.pass_context
def backup_run(ctx, packages: List[str], categories: List[str]):
    """Back up apps into the selected repository."""
    services = _services(ctx)
    _, restic = services.open_selected()

    descriptors = services.inventory.installed_user_apps()
    if packages:
        wanted = set(packages)
        descriptors = [d for d in descriptors if d.package_name in wanted]
        missing = wanted - {d.package_name for d in descriptors}
        if missing:
            console.print(f"[yellow]Not installed: {', '.join(sorted(missing))}[/yellow]")

    selection = BackupSelection(
        apps=[descriptor.to_package_info() for descriptor in descriptors],
        categories=_categories(categories, services.config.backup.categories),
    )
    orchestrator = BackupOrchestrator(
        services.shell,
        services.executor,
        services.metadata,
        work_dir=services.config.cache_dir,
        tags=services.config.backup.tags,
    )

    console.print(f"[bold cyan]Backing up {len(selection.apps)} apps[/bold cyan]")
    context = OperationContext("backup")
    _report(_run_operation(context, "Backup", lambda: orchestrator.run(context, restic, selection)))


@cli.group()
def restore():
    """Restore commands."""
    pass


@restore.command("run")
@click.argument("snapshot_id")
@click.option("--package", "-p", "packages", multiple=True, help="Package to restore (default: all)")
@click.option("--category", "categories", multiple=True, type=click.Choice(CATEGORY_CHOICES), help="Category to restore")
@click.option("--allow-downgrade/--no-allow-downgrade", default=None, help="Allow installing older versions")
@click.pass_context
def restore_run(ctx, snapshot_id: str, packages: List[str], categories: List[str], allow_downgrade: Optional[bool]):
    """Restore apps from a snapshot."""
    services = _services(ctx)
    repository, restic = services.open_selected()

    try:
        record = restic.find_snapshot(snapshot_id)
    except ResticDroidError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if record is None:
        console.print(f"[red]Snapshot not found: {snapshot_id}[/red]")
        sys.exit(1)

    metadata = services.metadata.get_metadata_for_snapshot(repository.id, record.id)
    installed = services.inventory.get_many(list(metadata) or _tagged(record))
    if allow_downgrade is None:
        allow_downgrade = services.config.restore.allow_downgrade

    selection = RestoreSelection(
        plan(record, metadata, installed),
        _categories(categories, services.config.restore.categories),
        allow_downgrade=allow_downgrade,
    )
    if packages:
        selection.select_only(packages)

    skipped = [c.label for c in selection.candidates if c.is_downgrade and not selection.can_select(c)]
    if skipped:
        console.print(f"[yellow]Skipping downgrades: {', '.join(skipped)}[/yellow]")

    orchestrator = RestoreOrchestrator(
        services.shell,
        services.executor,
        services.config.staging_root,
        packages=services.packages,
    )

    console.print(f"[bold cyan]Restoring {len(selection.selected)} apps[/bold cyan]")
    context = OperationContext("restore")
    _report(_run_operation(context, "Restore", lambda: orchestrator.run(context, restic, record, selection)))


# Maintenance


@cli.group()
def maintenance():
    """Repository maintenance commands."""
    pass


def _maintenance(ctx, task: Callable[[ResticRepository], str]) -> None:
    _, restic = _services(ctx).open_selected()
    try:
        console.print(task(restic))
    except (ResticDroidError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@maintenance.command("check")
@click.option("--read-data", is_flag=True, help="Verify all pack data")
@click.pass_context
def maintenance_check(ctx, read_data: bool):
    """Check repository integrity."""
    _maintenance(ctx, lambda restic: restic.check(read_data=read_data))


@maintenance.command("prune")
@click.pass_context
def maintenance_prune(ctx):
    """Remove unreferenced data."""
    _maintenance(ctx, lambda restic: restic.prune())


@maintenance.command("unlock")
@click.pass_context
def maintenance_unlock(ctx):
    """Remove stale locks."""
    _maintenance(ctx, lambda restic: restic.unlock())


@maintenance.command("forget")
@click.option("--keep-last", type=int, help="Keep the last N snapshots")
@click.option("--keep-daily", type=int, help="Keep N daily snapshots")
@click.option("--keep-weekly", type=int, help="Keep N weekly snapshots")
@click.option("--keep-monthly", type=int, help="Keep N monthly snapshots")
@click.option("--prune", is_flag=True, help="Prune after forgetting")
@click.pass_context
def maintenance_forget(ctx, keep_last, keep_daily, keep_weekly, keep_monthly, prune: bool):
    """Apply a retention policy to app backups."""
    _maintenance(
        ctx,
        lambda restic: restic.forget(
            keep_last=keep_last,
            keep_daily=keep_daily,
            keep_weekly=keep_weekly,
            keep_monthly=keep_monthly,
            prune=prune,
        ),
    )


@cli.command("status")
@click.pass_context
def status(ctx):
    """Show restic binary and repository status."""
    services = _services(ctx)
    binary = services.executor.binary_status()

    table = Table(title="ResticDroid Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="white")

    if binary.state is BinaryState.INSTALLED:
        version = binary.version
        if version != services.config.restic_version:
            version += f" (expected {services.config.restic_version})"
        table.add_row("restic", f"{binary.path} {version}")
    elif binary.state is BinaryState.NOT_INSTALLED:
        table.add_row("restic", "[red]not installed[/red]")
    else:
        table.add_row("restic", f"[red]{binary.message}[/red]")

    selected = services.registry.selected()
    table.add_row("Repository", selected.display_name if selected else "-")
    table.add_row("Data directory", str(services.config.data_dir))
    console.print(table)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
