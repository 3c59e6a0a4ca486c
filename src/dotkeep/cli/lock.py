"""CLI commands for inspecting and repairing the data-root lock."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Annotated, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from dotkeep.cli.common import DataRootOption, fail, resolve_layout
from dotkeep.core.errors import DotkeepError, MalformedLockRecord
from dotkeep.core.lock import FileLock

app: TyperType = typer.Typer(help="Inspect or clear the dotkeep lock.")

StaleOnlyFlag = Annotated[
    bool,
    typer.Option("--stale-only", help="Only remove the lock if it is stale."),
]
YesFlag = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Do not ask for confirmation."),
]


def lock_status(data_root: DataRootOption = None) -> None:
    """Show who holds the lock and whether it looks stale."""

    layout = resolve_layout(data_root)
    lock = FileLock(layout.root)

    try:
        record = lock.read_record()
    except MalformedLockRecord as exc:
        typer.secho(f"Lock file is malformed: {exc.reason}", fg=typer.colors.RED)
        typer.echo("Run `dotkeep lock clear --stale-only` to remove it.")
        return

    if record is None:
        typer.secho("Not locked.", fg=typer.colors.GREEN)
        return

    age_seconds = int(record.age().total_seconds())
    typer.echo(f"Locked by PID {record.pid} on {record.hostname}")
    typer.echo(f"Acquired: {record.timestamp.isoformat()} ({age_seconds}s ago)")
    if lock.is_stale(record):
        typer.secho(
            "Lock appears stale; `dotkeep lock clear --stale-only` removes it.",
            fg=typer.colors.YELLOW,
        )


def lock_clear(
    stale_only: StaleOnlyFlag = False,
    yes: YesFlag = False,
    data_root: DataRootOption = None,
) -> None:
    """Remove the lock file."""

    layout = resolve_layout(data_root)
    lock = FileLock(layout.root)

    if stale_only:
        try:
            removed = lock.clear_if_stale()
        except DotkeepError as exc:
            fail(exc)
    else:
        if not yes:
            typer.confirm("Remove the lock regardless of its owner?", abort=True)
        removed = lock.force_clear()

    if removed:
        typer.secho("Lock removed.", fg=typer.colors.GREEN)
    else:
        typer.echo("Not locked.")


app.command("status")(lock_status)
app.command("clear")(lock_clear)
