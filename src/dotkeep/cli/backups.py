"""CLI commands for listing, pruning, and restoring backups."""

from __future__ import annotations

import importlib
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from rich.console import Console
from rich.table import Table

from dotkeep.cli.common import (
    DataRootOption,
    fail,
    format_size,
    parse_duration,
    resolve_layout,
)
from dotkeep.core.backup import BackupStore
from dotkeep.core.constants import DEFAULT_BACKUP_KEEP_LAST
from dotkeep.core.errors import DotkeepError
from dotkeep.core.lock import FileLock
from dotkeep.core.registry import Registry
from dotkeep.fs.paths import expand_path

app: TyperType = typer.Typer(help="Manage timestamped backups.")

console = Console()

FilenameOption = Annotated[
    str | None,
    typer.Option("--file", help="Only show backups of this file name."),
]
OlderThanOption = Annotated[
    str,
    typer.Option(
        "--older-than", help="Delete backups older than this (12h, 7d, 2w, 1m)."
    ),
]
KeepOption = Annotated[
    int,
    typer.Option(
        "--keep", min=0, help="Always keep this many of the newest buckets."
    ),
]
AllFlag = Annotated[
    bool,
    typer.Option("--all", help="Delete every backup."),
]
DryRunFlag = Annotated[
    bool,
    typer.Option("--dry-run", help="Show what would be deleted."),
]
TargetArgument = Annotated[
    Path,
    typer.Argument(help="File to restore (its latest backup is used)."),
]
FromOption = Annotated[
    Path | None,
    typer.Option("--from", help="Restore this specific backup file instead."),
]
ForceFlag = Annotated[
    bool,
    typer.Option("--force", help="Restore over a managed symlink."),
]


def list_backups(
    filename: FilenameOption = None,
    data_root: DataRootOption = None,
) -> None:
    """List backups, newest first."""

    layout = resolve_layout(data_root)
    store = BackupStore(layout.backups_dir)
    entries = store.backups_for(filename) if filename else store.list()

    if not entries:
        typer.echo("No backups.")
        return

    table = Table(title=f"Backups ({format_size(store.total_size())} total)")
    table.add_column("Taken")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.name,
            format_size(entry.size),
        )
    console.print(table)


def cleanup_backups(
    older_than: OlderThanOption = "30d",
    keep: KeepOption = DEFAULT_BACKUP_KEEP_LAST,
    delete_all: AllFlag = False,
    dry_run: DryRunFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """Delete old backup buckets, always keeping the newest ones."""

    if delete_all:
        max_age, keep_last = timedelta(0), 0
    else:
        try:
            max_age = parse_duration(older_than)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--older-than") from exc
        keep_last = keep

    layout = resolve_layout(data_root)
    store = BackupStore(layout.backups_dir)

    if dry_run:
        doomed = store.preview_cleanup(max_age, keep_last)
        if not doomed:
            typer.echo("Nothing to clean up.")
            return
        for bucket in doomed:
            typer.echo(f"Would delete {bucket.name}")
        return

    try:
        with FileLock(layout.root).held():
            result = store.cleanup(max_age, keep_last)
    except DotkeepError as exc:
        fail(exc)

    typer.secho(
        f"Deleted {result.deleted} backup bucket(s), "
        f"freed {format_size(result.freed_bytes)}.",
        fg=typer.colors.GREEN,
    )


def restore_backup(
    target: TargetArgument,
    backup: FromOption = None,
    force: ForceFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """Restore a file from its most recent backup."""

    layout = resolve_layout(data_root)
    store = BackupStore(layout.backups_dir)

    try:
        target_path = expand_path(target)
        registry = Registry.open(layout.registry_path)
        if registry.is_managed(target_path) and not force:
            typer.secho(
                f"{target} is managed; run `dotkeep files remove` first "
                "or pass --force.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)

        if backup is not None:
            source = backup
        else:
            source = store.latest_backup(target_path.name).path
        with FileLock(layout.root).held():
            restored = store.restore(source, target_path)
    except DotkeepError as exc:
        fail(exc)

    typer.secho(f"Restored {restored} from {source}", fg=typer.colors.GREEN)


app.command("list")(list_backups)
app.command("cleanup")(cleanup_backups)
app.command("restore")(restore_backup)
