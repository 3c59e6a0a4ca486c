"""Shared CLI options and helpers."""

from __future__ import annotations

import importlib
import re
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, NoReturn

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")

from dotkeep.core.errors import DotkeepError
from dotkeep.core.settings import DataLayout

DataRootOption = Annotated[
    Path | None,
    typer.Option(
        "--data-root",
        help="Data directory (default: $DOTKEEP_HOME or ~/.dotkeep).",
    ),
]

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([hdwm])\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
}


def parse_duration(text: str) -> timedelta:
    """Parse a retention period such as `12h`, `7d`, `2w`, or `1m`.

    A month counts as 30 days.

    Raises:
        ValueError: If the text is not a count followed by h, d, w, or m
    """
    match = _DURATION_PATTERN.match(text)
    if match is None:
        raise ValueError(
            f"invalid duration {text!r} (expected e.g. 12h, 7d, 2w, 1m)"
        )
    count, unit = match.groups()
    return int(count) * _DURATION_UNITS[unit.lower()]


def format_size(size: int) -> str:
    """Render a byte count for humans (`1.5 KB`)."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def resolve_layout(data_root: Path | None) -> DataLayout:
    try:
        return DataLayout.resolve(data_root)
    except DotkeepError as exc:
        fail(exc)


def fail(exc: DotkeepError) -> NoReturn:
    """Report an engine error on stderr and exit with status 1."""
    typer.secho(f"Error: {exc}", err=True, fg=typer.colors.RED)
    raise typer.Exit(code=1) from exc
