"""Timestamped backup store.

Snapshots are grouped into bucket directories named by the second they
were taken in (`2025-10-07_15-01-25`). Files snapshotted within the same
second share a bucket; name collisions inside a bucket get a numeric
suffix before the extension (`init_1.lua`, `init_2.lua`).

    <data root>/backups/
        2025-10-07_15-01-25/
            .zshrc
            .zshrc_1
        2025-10-08_09-30-00/
            init.lua
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, NamedTuple

import structlog

from dotkeep.core.constants import (
    BACKUP_TIMESTAMP_FORMAT,
    DEFAULT_BACKUP_KEEP_LAST,
    DEFAULT_BACKUP_MAX_AGE,
)
from dotkeep.core.errors import BackupNotFound, CopyError, SourceNotFound
from dotkeep.fs.fs_ops import copy_with_permissions, dir_size
from dotkeep.fs.paths import expand_path, temp_sibling

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackupEntry:
    """A snapshot of one file at one instant.

    Attributes:
        timestamp: Bucket timestamp (second resolution)
        name: File name inside the bucket (may carry a collision suffix)
        path: Full path to the snapshot
        size: Snapshot size in bytes
    """

    timestamp: datetime
    name: str
    path: Path
    size: int


@dataclass(frozen=True)
class BackupBucket:
    """One timestamp directory in the backup store."""

    timestamp: datetime
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class CleanupResult(NamedTuple):
    """Outcome of a retention cleanup."""

    deleted: int
    freed_bytes: int


def parse_bucket_name(name: str) -> datetime | None:
    """Parse a bucket directory name, returning None when malformed."""
    try:
        return datetime.strptime(name, BACKUP_TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _collision_name(filename: str, counter: int) -> str:
    # Path(".zshrc").suffix is "", so dotfiles become ".zshrc_1"
    path = Path(filename)
    return f"{path.stem}_{counter}{path.suffix}"


class BackupStore:
    """Create, list, restore, and prune timestamped file snapshots."""

    def __init__(self, root: Path, *, clock: Any = None) -> None:
        """Initialize the backup store.

        Args:
            root: Directory holding the timestamp buckets
            clock: Optional callable returning the current naive local
                datetime (defaults to `datetime.now`)
        """
        self.root = Path(root)
        self._clock = clock or datetime.now

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Create / restore
    # ------------------------------------------------------------------

    def create(self, source: str | os.PathLike[str]) -> Path:
        """Snapshot a file before a destructive operation.

        Args:
            source: File to back up (portable or absolute notation)

        Returns:
            Full path of the snapshot

        Raises:
            SourceNotFound: If the source is missing or not a regular file
            CopyError: If the bucket cannot be created or the copy fails
        """
        expanded = expand_path(source)
        if not expanded.exists():
            raise SourceNotFound(str(expanded))
        if not expanded.is_file():
            raise SourceNotFound(str(expanded), reason="is not a regular file")

        bucket = self.root / self._now().strftime(BACKUP_TIMESTAMP_FORMAT)
        try:
            bucket.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CopyError(str(expanded), str(bucket), str(exc)) from exc

        backup_path = self._reserve(bucket, expanded.name)
        try:
            copy_with_permissions(expanded, backup_path)
        except OSError as exc:
            backup_path.unlink(missing_ok=True)
            raise CopyError(str(expanded), str(backup_path), str(exc)) from exc

        logger.info(
            "backup.created",
            source=str(expanded),
            backup_path=str(backup_path),
            bucket=bucket.name,
        )
        return backup_path

    def _reserve(self, bucket: Path, filename: str) -> Path:
        """Claim a free snapshot name in a bucket with exclusive creation."""
        candidate = bucket / filename
        counter = 1
        while True:
            try:
                with open(candidate, "xb"):
                    return candidate
            except FileExistsError:
                candidate = bucket / _collision_name(filename, counter)
                counter += 1
            except OSError as exc:
                raise CopyError(filename, str(candidate), str(exc)) from exc

    def restore(
        self, backup_path: str | os.PathLike[str], target_path: str | os.PathLike[str]
    ) -> Path:
        """Copy a snapshot back to a target location.

        The snapshot is copied to a temporary sibling and moved over the
        target with `os.replace`, so a symlink occupying the target is
        replaced rather than written through, and a failed copy leaves the
        target untouched.

        Returns:
            The expanded target path

        Raises:
            BackupNotFound: If the snapshot does not exist
            CopyError: If the copy fails
        """
        backup = expand_path(backup_path)
        target = expand_path(target_path)

        if not backup.is_file():
            raise BackupNotFound(str(backup))

        staging = temp_sibling(target, tag="restore")
        try:
            copy_with_permissions(backup, staging)
            os.replace(staging, target)
        except OSError as exc:
            staging.unlink(missing_ok=True)
            raise CopyError(str(backup), str(target), str(exc)) from exc

        logger.info("backup.restored", backup_path=str(backup), target=str(target))
        return target

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def buckets(self) -> list[BackupBucket]:
        """Return well-formed buckets, newest first."""
        if not self.root.is_dir():
            return []

        found: list[BackupBucket] = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry.is_symlink():
                continue
            timestamp = parse_bucket_name(entry.name)
            if timestamp is None:
                continue
            found.append(BackupBucket(timestamp=timestamp, path=entry))

        found.sort(key=lambda bucket: bucket.timestamp, reverse=True)
        return found

    def list(self) -> list[BackupEntry]:
        """Return every snapshot, newest bucket first.

        Malformed bucket names and files directly under the root are
        skipped.
        """
        entries: list[BackupEntry] = []
        for bucket in self.buckets():
            files: list[BackupEntry] = []
            for path in bucket.path.rglob("*"):
                if not path.is_file():
                    continue
                try:
                    size = path.stat().st_size
                except OSError:
                    continue
                files.append(
                    BackupEntry(
                        timestamp=bucket.timestamp,
                        name=path.name,
                        path=path,
                        size=size,
                    )
                )
            files.sort(key=lambda entry: entry.name)
            entries.extend(files)
        return entries

    def backups_for(self, filename: str) -> list[BackupEntry]:
        """Return snapshots of a file name (collision suffixes included)."""
        stem = Path(filename).stem
        suffix = Path(filename).suffix
        matches = []
        for entry in self.list():
            if entry.name == filename:
                matches.append(entry)
                continue
            entry_path = Path(entry.name)
            head, sep, counter = entry_path.stem.rpartition("_")
            if (
                sep
                and head == stem
                and counter.isdigit()
                and entry_path.suffix == suffix
            ):
                matches.append(entry)
        return matches

    def latest_backup(self, filename: str) -> BackupEntry:
        """Return the most recent snapshot of a file name.

        Raises:
            BackupNotFound: If no snapshot exists
        """
        matches = self.backups_for(filename)
        if not matches:
            raise BackupNotFound(filename)
        return matches[0]

    def total_size(self) -> int:
        """Total size in bytes of everything under the backup root."""
        if not self.root.is_dir():
            return 0
        return dir_size(self.root)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def preview_cleanup(
        self,
        older_than: timedelta = DEFAULT_BACKUP_MAX_AGE,
        keep_last: int = DEFAULT_BACKUP_KEEP_LAST,
    ) -> list[BackupBucket]:
        """Return the buckets `cleanup` would delete, without deleting."""
        cutoff = self._now() - older_than
        keep_last = max(keep_last, 0)
        return [
            bucket
            for index, bucket in enumerate(self.buckets())
            if index >= keep_last and bucket.timestamp < cutoff
        ]

    def cleanup(
        self,
        older_than: timedelta = DEFAULT_BACKUP_MAX_AGE,
        keep_last: int = DEFAULT_BACKUP_KEEP_LAST,
    ) -> CleanupResult:
        """Delete old buckets, always keeping the newest `keep_last`.

        A bucket that cannot be deleted is logged and skipped; the rest of
        the batch continues.

        Returns:
            Number of buckets deleted and bytes freed by them
        """
        deleted = 0
        freed = 0

        for bucket in self.preview_cleanup(older_than, keep_last):
            size = dir_size(bucket.path)
            try:
                shutil.rmtree(bucket.path)
            except OSError as exc:
                logger.warning(
                    "backup.cleanup_skipped", bucket=bucket.name, error=str(exc)
                )
                continue
            deleted += 1
            freed += size

        logger.info(
            "backup.cleanup",
            deleted=deleted,
            freed_bytes=freed,
            older_than_seconds=int(older_than.total_seconds()),
            keep_last=keep_last,
        )
        return CleanupResult(deleted=deleted, freed_bytes=freed)
