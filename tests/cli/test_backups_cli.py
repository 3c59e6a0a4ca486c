"""CLI tests for backup commands and their helpers."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dotkeep.cli.backups import app
from dotkeep.cli.common import format_size, parse_duration
from dotkeep.cli.files import app as files_app
from dotkeep.core.backup import BackupStore
from dotkeep.core.settings import DataLayout

runner = CliRunner()


def _root(layout: DataLayout) -> list[str]:
    return ["--data-root", str(layout.root)]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("12h", timedelta(hours=12)),
        ("7d", timedelta(days=7)),
        ("2w", timedelta(weeks=2)),
        ("1m", timedelta(days=30)),
        ("3D", timedelta(days=3)),
    ],
)
def test_parse_duration(text: str, expected: timedelta) -> None:
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "7", "d", "7y", "-1d", "1.5d"])
def test_parse_duration_rejects(text: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(text)


def test_format_size() -> None:
    assert format_size(512) == "512 B"
    assert format_size(1536) == "1.5 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"


def test_list_empty(layout: DataLayout) -> None:
    result = runner.invoke(app, ["list", *_root(layout)])

    assert result.exit_code == 0
    assert "No backups." in result.output


def test_list_after_add(layout: DataLayout, zshrc: Path) -> None:
    runner.invoke(files_app, ["add", str(zshrc), *_root(layout)])

    result = runner.invoke(app, ["list", *_root(layout)])

    assert result.exit_code == 0
    assert ".zshrc" in result.output


def test_cleanup_all(layout: DataLayout, home: Path) -> None:
    bucket = layout.backups_dir / "2020-01-01_00-00-00"
    bucket.mkdir(parents=True)
    (bucket / ".zshrc").write_text("old")

    result = runner.invoke(app, ["cleanup", "--all", *_root(layout)])

    assert result.exit_code == 0, result.output
    assert "Deleted 1 backup bucket(s)" in result.output
    assert not bucket.exists()


def test_cleanup_dry_run(layout: DataLayout) -> None:
    bucket = layout.backups_dir / "2020-01-01_00-00-00"
    bucket.mkdir(parents=True)
    (bucket / ".zshrc").write_text("old")

    result = runner.invoke(
        app,
        ["cleanup", "--older-than", "7d", "--keep", "0", "--dry-run", *_root(layout)],
    )

    assert result.exit_code == 0
    assert "Would delete 2020-01-01_00-00-00" in result.output
    assert bucket.exists()


def test_cleanup_invalid_duration(layout: DataLayout) -> None:
    result = runner.invoke(app, ["cleanup", "--older-than", "soon", *_root(layout)])

    assert result.exit_code != 0
    assert layout.backups_dir.exists()


def test_restore_latest(layout: DataLayout, home: Path) -> None:
    path = home / ".vimrc"
    path.write_text("set number\n")
    BackupStore(layout.backups_dir).create(path)
    path.write_text("broken\n")

    result = runner.invoke(app, ["restore", str(path), *_root(layout)])

    assert result.exit_code == 0, result.output
    assert path.read_text() == "set number\n"


def test_restore_refuses_managed_file(layout: DataLayout, zshrc: Path) -> None:
    runner.invoke(files_app, ["add", str(zshrc), *_root(layout)])

    result = runner.invoke(app, ["restore", str(zshrc), *_root(layout)])

    assert result.exit_code == 1
    assert "is managed" in result.output
    assert zshrc.is_symlink()


def test_restore_without_backup(layout: DataLayout, home: Path) -> None:
    result = runner.invoke(app, ["restore", str(home / ".vimrc"), *_root(layout)])

    assert result.exit_code == 1
    assert "Backup not found" in result.output
