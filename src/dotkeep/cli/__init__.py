"""CLI entrypoints for dotkeep."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Annotated, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from dotkeep.cli.backups import app as backups_app
from dotkeep.cli.files import app as files_app
from dotkeep.cli.lock import app as lock_app
from dotkeep.utils.logging import configure_logging

app: TyperType = typer.Typer(
    help="Keep dotfiles in one place and symlink them home.",
    no_args_is_help=True,
)

LogLevelOption = Annotated[
    str,
    typer.Option("--log-level", help="Structured log level written to stderr."),
]


def main(log_level: LogLevelOption = "WARNING") -> None:
    """Keep dotfiles in one place and symlink them home."""

    configure_logging(log_level)


app.callback()(main)
app.add_typer(files_app, name="files")
app.add_typer(lock_app, name="lock")
app.add_typer(backups_app, name="backups")

__all__ = ["app", "backups_app", "files_app", "lock_app"]
