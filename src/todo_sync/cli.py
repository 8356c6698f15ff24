"""Command-line interface for todo-sync."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .adapters import TodoistTaskService, VaultDocumentStore
from .backup import BackupArchiver
from .config import SyncConfig, get_config_path, load_config, save_config
from .credentials import get_token, store_token
from .documents import DocumentLayout
from .models import SyncDirection, SyncState
from .sync.change_detector import ChangeDetector
from .sync.conflict_resolver import ConflictResolver
from .sync.mapping_store import MappingStore
from .sync.orchestrator import SyncOrchestrator, SyncReport
from .sync.safe_write import SafeWriteFilter
from .sync.services import RemoteTaskService


console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def build_remote(config: SyncConfig) -> RemoteTaskService:
    """Todoist client for the stored token; exits when there is none."""
    token = get_token()
    if not token:
        console.print("[red]No Todoist API token found.[/red] Run [cyan]todo-sync auth set-token[/cyan] "
                      "or set TODOIST_API_TOKEN.")
        sys.exit(1)
    return TodoistTaskService(token, timeout=config.request_timeout)


def build_mapping_store(config: SyncConfig) -> MappingStore:
    return MappingStore(config.mapping_path)


def build_orchestrator(config: SyncConfig, remote: RemoteTaskService,
                       mapping_store: MappingStore) -> SyncOrchestrator:
    """Wire an orchestrator from configuration."""
    documents = VaultDocumentStore(config.vault_dir, excluded_folders=config.excluded_folders)
    resolver = ConflictResolver(config.content_change_threshold)
    return SyncOrchestrator(
        remote=remote,
        documents=documents,
        mapping_store=mapping_store,
        archiver=BackupArchiver(remote, config.backup_dir, config.backup_retention),
        layout=DocumentLayout(config.inbox_document, config.projects_folder),
        detector=ChangeDetector(
            mapping_store,
            min_sample_size=config.incremental_min_tasks,
            change_threshold=config.incremental_change_threshold,
        ),
        resolver=resolver,
        safe_filter=SafeWriteFilter(config.content_change_threshold),
        fetch_timeout=config.fetch_timeout,
        auto_sync_interval=config.auto_sync_interval,
        enable_reverse_sync=config.enable_reverse_sync,
    )


async def _run_sync(config: SyncConfig, direction: SyncDirection) -> SyncReport:
    remote = build_remote(config)
    mapping_store = build_mapping_store(config)
    await mapping_store.initialize()
    if mapping_store.quarantined_path is not None:
        console.print(f"[yellow]Mapping record was unreadable and moved to {mapping_store.quarantined_path}[/yellow]")

    orchestrator = build_orchestrator(config, remote, mapping_store)
    try:
        return await orchestrator.run(direction)
    finally:
        close = getattr(remote, "aclose", None)
        if close is not None:
            await close()


def render_report(report: SyncReport) -> None:
    """Print a sync report as rich tables."""
    if report.state == SyncState.FAILED:
        style, title = "red", "Sync failed"
    elif report.partial:
        style, title = "yellow", "Sync partially succeeded"
    else:
        style, title = "green", "Sync complete"

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    stats = report.stats
    reverse = report.reverse
    table.add_row("Direction", report.direction.value)
    table.add_row("Tasks", str(stats.tasks_processed))
    table.add_row("Projects", str(stats.projects_processed))
    table.add_row("Documents created", str(stats.files_created))
    table.add_row("Documents updated", str(stats.files_updated))
    table.add_row("Documents unchanged", str(stats.files_unchanged))
    table.add_row("Efficiency", f"{stats.efficiency * 100:.1f}%")
    table.add_row("Strategy", "incremental" if stats.incremental else "full")
    table.add_row("Completed remotely", str(reverse.completed))
    table.add_row("Updated remotely", str(reverse.updated))
    table.add_row("Created remotely", str(reverse.created))
    table.add_row("Deleted remotely", str(reverse.deleted))
    table.add_row("Skipped edits", str(reverse.skipped))
    table.add_row("Backup", reverse.backup_file or "-")
    console.print(table)

    if report.manual_conflicts:
        conflicts = Table(title="Conflicts needing attention", show_header=True, header_style="bold yellow")
        conflicts.add_column("Task", style="dim")
        conflicts.add_column("Kind")
        conflicts.add_column("Description")
        for conflict in report.manual_conflicts:
            conflicts.add_row(conflict.task_id, conflict.kind.value, conflict.describe())
        console.print(conflicts)

    for error in report.errors:
        console.print(f"[{style}]• {error}[/{style}]")


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(__version__, prog_name="todo-sync")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """todo-sync - keep Todoist and a markdown vault in sync."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["config"] = load_config(config_path)


@main.command()
@click.option("--pull-only", is_flag=True, help="Only write remote changes into the vault")
@click.option("--push-only", is_flag=True, help="Only push vault edits to Todoist")
@click.pass_context
def sync(ctx, pull_only: bool, push_only: bool):
    """Run one sync transaction."""
    if pull_only and push_only:
        raise click.UsageError("--pull-only and --push-only are mutually exclusive")

    direction = SyncDirection.BIDIRECTIONAL
    if pull_only:
        direction = SyncDirection.PULL_ONLY
    elif push_only:
        direction = SyncDirection.PUSH_ONLY

    report = asyncio.run(_run_sync(ctx.obj["config"], direction))
    render_report(report)
    if report.state == SyncState.FAILED:
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show mapping and backup status."""
    config = ctx.obj["config"]
    mapping_store = build_mapping_store(config)
    asyncio.run(mapping_store.initialize())
    mapping_stats = mapping_store.get_stats()
    backup_stats = BackupArchiver(None, config.backup_dir, config.backup_retention).get_backup_statistics()

    table = Table(title="todo-sync status", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Vault", str(config.vault_dir))
    table.add_row("Mappings", str(mapping_stats["total_mappings"]))
    table.add_row("Documents", str(mapping_stats["documents"]))
    table.add_row("Last sync", mapping_stats["last_sync_time"] or "never")
    table.add_row("Backups", str(backup_stats["total_backups"]))
    table.add_row("Newest backup", str(backup_stats["newest"]) if backup_stats["newest"] else "-")
    console.print(table)


# Backups

@main.group()
def backup():
    """Manage pre-sync backups."""
    pass


@backup.command("create")
@click.option("--reason", default="manual", help="Reason recorded in the backup")
@click.pass_context
def backup_create(ctx, reason: str):
    """Snapshot the Todoist account now."""
    config = ctx.obj["config"]

    async def create():
        remote = build_remote(config)
        try:
            archiver = BackupArchiver(remote, config.backup_dir, config.backup_retention)
            return await archiver.create_pre_sync_backup(reason=reason)
        finally:
            await remote.aclose()

    result = asyncio.run(create())
    if not result.success:
        console.print(f"[red]Backup failed: {result.error}[/red]")
        sys.exit(1)
    console.print(f"[green]Backup written to {result.backup_file}[/green]")


@backup.command("list")
@click.pass_context
def backup_list(ctx):
    """List backups, newest first."""
    config = ctx.obj["config"]
    backups = BackupArchiver(None, config.backup_dir, config.backup_retention).list_backups()
    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("File", style="cyan")
    table.add_column("Taken")
    table.add_column("Tasks", justify="right")
    table.add_column("Projects", justify="right")
    table.add_column("Reason")
    for info in backups:
        taken = info.timestamp.strftime("%Y-%m-%d %H:%M:%S") if info.timestamp else "?"
        table.add_row(info.file_name, taken, str(info.total_tasks), str(info.total_projects), info.reason)
    console.print(table)


@backup.command("show")
@click.argument("name")
@click.pass_context
def backup_show(ctx, name: str):
    """Validate a backup and summarise what it would restore."""
    config = ctx.obj["config"]
    archiver = BackupArchiver(None, config.backup_dir, config.backup_retention)
    path = Path(name)
    if not path.is_absolute():
        path = config.backup_dir / name

    result = archiver.restore_from_backup(path)
    if not result.success:
        console.print(f"[red]Invalid backup: {result.error}[/red]")
        sys.exit(1)

    record = result.record
    console.print(Panel(
        f"Taken: {record.timestamp.isoformat()}\n"
        f"Reason: {record.reason}\n"
        f"Tasks: {len(record.tasks)}\n"
        f"Projects: {len(record.projects)}\n"
        f"Sections: {len(record.sections)}\n"
        f"Labels: {len(record.labels)}",
        title=path.name,
    ))


@backup.command("stats")
@click.pass_context
def backup_stats(ctx):
    """Show backup statistics."""
    config = ctx.obj["config"]
    stats = BackupArchiver(None, config.backup_dir, config.backup_retention).get_backup_statistics()
    console.print(f"Backups: {stats['total_backups']}")
    console.print(f"Oldest: {stats['oldest'] or '-'}")
    console.print(f"Newest: {stats['newest'] or '-'}")
    console.print(f"Total size: {stats['total_size']} bytes")


# Mappings

@main.group()
def mappings():
    """Inspect task mappings."""
    pass


@mappings.command("list")
@click.option("--document", help="Only mappings of this document")
@click.pass_context
def mappings_list(ctx, document: Optional[str]):
    """List task mappings."""
    mapping_store = build_mapping_store(ctx.obj["config"])
    asyncio.run(mapping_store.initialize())
    entries = sorted(mapping_store.get_all_mappings(), key=lambda m: (m.document_path, m.line_number))
    if document:
        entries = [mapping for mapping in entries if mapping.document_path == document]
    if not entries:
        console.print("[yellow]No task mappings[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Task", style="dim")
    table.add_column("Document", style="cyan")
    table.add_column("Line", justify="right")
    table.add_column("Content")
    for mapping in entries:
        table.add_row(mapping.task_id, mapping.document_path, str(mapping.line_number + 1), mapping.content)
    console.print(table)


@mappings.command("cleanup")
@click.pass_context
def mappings_cleanup(ctx):
    """Remove mappings whose line no longer holds their task."""
    config = ctx.obj["config"]

    async def cleanup():
        mapping_store = build_mapping_store(config)
        await mapping_store.initialize()
        documents = VaultDocumentStore(config.vault_dir, excluded_folders=config.excluded_folders)
        removed = await mapping_store.cleanup_orphaned(documents)
        await mapping_store.save()
        return removed

    removed = asyncio.run(cleanup())
    console.print(f"Removed {removed} orphaned mappings")


# Configuration

@main.group("config")
def config_group():
    """Show or create the configuration."""
    pass


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration."""
    config = ctx.obj["config"]
    console.print(Panel(config.to_yaml().rstrip(), title=str(ctx.obj["config_path"] or get_config_path())))


@config_group.command("init")
@click.option("--vault", "vault_path", required=True, help="Vault directory")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration")
@click.pass_context
def config_init(ctx, vault_path: str, force: bool):
    """Write a configuration file."""
    path = ctx.obj["config_path"] or get_config_path()
    if Path(path).exists() and not force:
        console.print(f"[yellow]Configuration already exists at {path}; use --force to overwrite[/yellow]")
        sys.exit(1)
    written = save_config(SyncConfig(vault_path=vault_path), path)
    console.print(f"[green]Configuration written to {written}[/green]")


# Credentials

@main.group()
def auth():
    """Manage the Todoist API token."""
    pass


@auth.command("set-token")
@click.option("--token", prompt=True, hide_input=True, help="Todoist API token")
def auth_set_token(token: str):
    """Store the API token in the system keyring."""
    if not store_token(token.strip()):
        console.print("[red]Could not store the token; set TODOIST_API_TOKEN instead[/red]")
        sys.exit(1)
    console.print("[green]Token stored[/green]")


if __name__ == "__main__":
    main()
