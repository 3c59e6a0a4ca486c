"""CLI commands for adding, removing, and inspecting managed files."""

from __future__ import annotations

import importlib
import json
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

from dotkeep.chains.manage_chain import ManageChain, ManageReport
from dotkeep.cli.common import DataRootOption, fail, resolve_layout
from dotkeep.core.errors import DotkeepError
from dotkeep.core.registry import Registry

app: TyperType = typer.Typer(help="Add, remove, and inspect managed dotfiles.")

console = Console()

PathsArgument = Annotated[
    list[Path],
    typer.Argument(help="Files to operate on.", show_default=False),
]
CategoryOption = Annotated[
    str | None,
    typer.Option("--category", help="Store directory to file the dotfile under."),
]
DryRunFlag = Annotated[
    bool,
    typer.Option("--dry-run", help="Show what would change without changing it."),
]
KeepStoreFlag = Annotated[
    bool,
    typer.Option(
        "--keep-store",
        help="Leave the content store copy in place and copy the file back.",
    ),
]
JsonFlag = Annotated[
    bool,
    typer.Option("--json", help="Emit JSON instead of a table."),
]


def _exit_for(report: ManageReport) -> None:
    if report.failed_count:
        raise typer.Exit(code=1)
    if report.vcs_pending:
        typer.secho(
            "Changes applied; commit the content store manually.",
            err=True,
            fg=typer.colors.YELLOW,
        )


def add_files(
    paths: PathsArgument,
    category: CategoryOption = None,
    dry_run: DryRunFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """Move files into the content store and replace them with symlinks."""

    layout = resolve_layout(data_root)
    try:
        chain = ManageChain(layout, ui=console)
        report = chain.add(paths, category=category, dry_run=dry_run)
    except DotkeepError as exc:
        fail(exc)
    _exit_for(report)


def remove_files(
    paths: PathsArgument,
    keep_store: KeepStoreFlag = False,
    dry_run: DryRunFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """Replace managed symlinks with real files and stop tracking them."""

    layout = resolve_layout(data_root)
    try:
        chain = ManageChain(layout, ui=console)
        report = chain.remove(paths, keep_store=keep_store, dry_run=dry_run)
    except DotkeepError as exc:
        fail(exc)
    _exit_for(report)


def list_files(
    json_output: JsonFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """List managed files."""

    layout = resolve_layout(data_root)
    try:
        registry = Registry.open(layout.registry_path)
    except DotkeepError as exc:
        fail(exc)

    entries = registry.entries()

    if json_output:
        typer.echo(
            json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2)
        )
        return

    if not entries:
        typer.echo("No managed files.")
        return

    table = Table(title=f"Managed files ({len(entries)})")
    table.add_column("Source")
    table.add_column("Store path")
    table.add_column("Platforms")
    table.add_column("Added")
    for entry in entries:
        table.add_row(
            entry.source_path,
            entry.repo_path,
            ", ".join(entry.platforms) or "all",
            entry.added_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def check_files(data_root: DataRootOption = None) -> None:
    """Verify that every managed file is a symlink into the content store."""

    layout = resolve_layout(data_root)
    try:
        reports = ManageChain(layout, ui=console).check()
    except DotkeepError as exc:
        fail(exc)

    if not reports:
        typer.echo("No managed files.")
        return

    styles = {
        "ok": "green",
        "missing": "yellow",
        "not_symlink": "red",
        "broken": "red",
        "wrong_target": "red",
    }
    table = Table(title="Symlink health")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Detail")
    for report in reports:
        style = styles[report.status]
        table.add_row(
            report.source_path,
            f"[{style}]{report.status}[/{style}]",
            report.detail or "",
        )
    console.print(table)

    if any(report.status != "ok" for report in reports):
        raise typer.Exit(code=1)


app.command("add")(add_files)
app.command("remove")(remove_files)
app.command("list")(list_files)
app.command("check")(check_files)
