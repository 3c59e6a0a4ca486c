"""Pytest configuration and fixtures for dotkeep tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from dotkeep.core.settings import DataLayout


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo any logging configuration a CLI invocation installed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect the home directory into a temporary directory."""
    home_path = tmp_path / "home"
    home_path.mkdir()
    monkeypatch.setenv("HOME", str(home_path))
    monkeypatch.setenv("USERPROFILE", str(home_path))
    monkeypatch.delenv("DOTKEEP_HOME", raising=False)
    monkeypatch.delenv("DOTKEEP_LOCK_STALE_SECONDS", raising=False)
    return home_path


@pytest.fixture
def layout(home: Path) -> DataLayout:
    """Data layout under the temporary home directory."""
    data_layout = DataLayout(root=home / ".dotkeep")
    data_layout.ensure()
    return data_layout


@pytest.fixture
def zshrc(home: Path) -> Path:
    """A regular dotfile in the temporary home directory."""
    path = home / ".zshrc"
    path.write_text("export EDITOR=nvim\n")
    return path
