"""Helpers for resolving the data root and its on-disk layout."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from dotkeep.core.constants import (
    BACKUPS_DIR_NAME,
    DATA_ROOT_ENV_VAR,
    DEFAULT_DATA_DIR_NAME,
    FILES_DIR_NAME,
    LOCK_FILE_NAME,
    LOCK_STALE_AFTER,
    LOCK_STALE_ENV_VAR,
    REGISTRY_FILE_NAME,
)
from dotkeep.fs.paths import expand_path, home_dir

__all__ = ["DataLayout", "resolve_data_root", "resolve_lock_stale_after"]


def resolve_data_root(data_root: str | Path | None = None) -> Path:
    """Resolve the directory holding the lock, backups, and content store.

    Args:
        data_root: Optional explicit location. When omitted, resolves to
            `DOTKEEP_HOME` or `~/.dotkeep`.

    Returns:
        Absolute path (not created).
    """

    chosen: str | Path | None = data_root
    env_path = os.getenv(DATA_ROOT_ENV_VAR)
    if chosen is None and env_path:
        chosen = env_path
    if chosen is None:
        return home_dir() / DEFAULT_DATA_DIR_NAME

    return expand_path(chosen)


def resolve_lock_stale_after() -> timedelta:
    """Return the lock staleness threshold, honouring the env override."""

    raw = os.getenv(LOCK_STALE_ENV_VAR)
    if not raw:
        return LOCK_STALE_AFTER
    try:
        seconds = float(raw)
    except ValueError:
        return LOCK_STALE_AFTER
    if seconds <= 0:
        return LOCK_STALE_AFTER
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class DataLayout:
    """Paths derived from a data root.

    Attributes:
        root: The data root itself
    """

    root: Path

    @classmethod
    def resolve(cls, data_root: str | Path | None = None) -> DataLayout:
        return cls(root=resolve_data_root(data_root))

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE_NAME

    @property
    def backups_dir(self) -> Path:
        return self.root / BACKUPS_DIR_NAME

    @property
    def files_dir(self) -> Path:
        return self.root / FILES_DIR_NAME

    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILE_NAME

    def store_path(self, repo_path: str) -> Path:
        """Full path of a content-store-relative path."""
        return self.files_dir.joinpath(*repo_path.split("/"))

    def ensure(self) -> None:
        """Create the data root, backups directory, and content store."""
        for directory in (self.root, self.backups_dir, self.files_dir):
            directory.mkdir(parents=True, exist_ok=True)
