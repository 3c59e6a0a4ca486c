"""Concrete reversible operations and the transactions built from them.

Each operation wraps one filesystem or registry mutation with its inverse.
The add/remove builders order operations so that rollback in reverse
order is always safe: a file is moved into the content store before its
symlink is created, so on rollback the symlink is removed before the file
moves back.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotkeep.core.backup import BackupStore
from dotkeep.core.registry import ManagedFile, Registry
from dotkeep.core.settings import DataLayout
from dotkeep.core.transaction import Operation, Transaction
from dotkeep.fs.fs_ops import copy_with_permissions, move_file
from dotkeep.fs.paths import expand_path
from dotkeep.fs.symlinks import create_symlink, read_symlink, remove_symlink


class MoveFileOp(Operation):
    """Move a file from `src` to `dst`; undo moves it back."""

    def __init__(self, src: Path, dst: Path) -> None:
        self.src = Path(src)
        self.dst = Path(dst)

    def do(self) -> None:
        move_file(self.src, self.dst)

    def undo(self) -> None:
        move_file(self.dst, self.src)

    def describe(self) -> str:
        return f"move {self.src} to {self.dst}"


class CopyFileOp(Operation):
    """Copy a file; undo deletes the copy.

    Refuses to overwrite an existing destination, since undo could not
    bring the overwritten content back.
    """

    def __init__(self, src: Path, dst: Path) -> None:
        self.src = Path(src)
        self.dst = Path(dst)

    def do(self) -> None:
        if os.path.lexists(self.dst):
            raise FileExistsError(f"destination already exists: {self.dst}")
        copy_with_permissions(self.src, self.dst)

    def undo(self) -> None:
        self.dst.unlink()

    def describe(self) -> str:
        return f"copy {self.src} to {self.dst}"


class CreateSymlinkOp(Operation):
    """Create a relative symlink at `link` pointing to `target`."""

    def __init__(self, target: Path, link: Path) -> None:
        self.target = Path(target)
        self.link = Path(link)

    def do(self) -> None:
        create_symlink(self.target, self.link)

    def undo(self) -> None:
        remove_symlink(self.link)

    def describe(self) -> str:
        return f"create symlink {self.link} -> {self.target}"


class RemoveSymlinkOp(Operation):
    """Remove a symlink, remembering its raw target for undo."""

    def __init__(self, link: Path) -> None:
        self.link = Path(link)
        self._saved_target: str | None = None

    def do(self) -> None:
        self._saved_target = read_symlink(self.link)
        remove_symlink(self.link)

    def undo(self) -> None:
        if self._saved_target is None:
            raise RuntimeError("no saved symlink target to restore")
        # Restore the exact stored string, relative or not
        os.symlink(self._saved_target, expand_path(self.link))

    def describe(self) -> str:
        return f"remove symlink {self.link}"


class BackupFileOp(Operation):
    """Snapshot a file into the backup store.

    A failed backup fails the transaction. The snapshot is kept on
    rollback, so undo does nothing.
    """

    def __init__(self, backups: BackupStore, path: Path) -> None:
        self.backups = backups
        self.path = Path(path)
        self.backup_path: Path | None = None

    def do(self) -> None:
        self.backup_path = self.backups.create(self.path)

    def undo(self) -> None:
        return None

    def describe(self) -> str:
        return f"back up {self.path}"


class RemoveFileOp(Operation):
    """Delete a file after backing it up; undo restores the backup."""

    def __init__(self, backups: BackupStore, path: Path) -> None:
        self.backups = backups
        self.path = Path(path)
        self.backup_path: Path | None = None

    def do(self) -> None:
        # Fails closed: no backup, no delete
        self.backup_path = self.backups.create(self.path)
        self.path.unlink()

    def undo(self) -> None:
        if self.backup_path is None:
            raise RuntimeError("no backup available for undo")
        self.backups.restore(self.backup_path, self.path)

    def describe(self) -> str:
        return f"remove file {self.path}"


class CreateDirOp(Operation):
    """Create a directory (and parents).

    Undo is best-effort, not a true inverse: the directory is removed only
    if this operation created it and it is still empty. Parents created
    along the way are left in place.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._created = False

    def do(self) -> None:
        self._created = not self.path.exists()
        self.path.mkdir(parents=True, exist_ok=True)

    def undo(self) -> None:
        if not self._created or not self.path.is_dir():
            return
        if any(self.path.iterdir()):
            return
        self.path.rmdir()

    def describe(self) -> str:
        return f"create directory {self.path}"


class WriteFileOp(Operation):
    """Write content to a file, backing up any existing content first."""

    def __init__(
        self,
        backups: BackupStore,
        path: Path,
        content: bytes,
        mode: int = 0o644,
    ) -> None:
        self.backups = backups
        self.path = Path(path)
        self.content = content
        self.mode = mode
        self.backup_path: Path | None = None
        self._existed = False

    def do(self) -> None:
        self._existed = self.path.exists()
        if self._existed:
            self.backup_path = self.backups.create(self.path)
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(self.content)
        if not self._existed:
            os.chmod(self.path, self.mode)

    def undo(self) -> None:
        if self._existed:
            if self.backup_path is None:
                raise RuntimeError("no backup available for undo")
            self.backups.restore(self.backup_path, self.path)
            return
        self.path.unlink()

    def describe(self) -> str:
        return f"write file {self.path}"


class AddRegistryEntryOp(Operation):
    """Add an entry to the registry and persist it."""

    def __init__(self, registry: Registry, entry: ManagedFile) -> None:
        self.registry = registry
        self.entry = entry

    def do(self) -> None:
        self.registry.add(self.entry)
        try:
            self.registry.save()
        except Exception:
            self.registry.remove(self.entry.source_path)
            raise

    def undo(self) -> None:
        self.registry.remove(self.entry.source_path)
        self.registry.save()

    def describe(self) -> str:
        return f"add {self.entry.source_path} to registry"


class RemoveRegistryEntryOp(Operation):
    """Remove an entry from the registry, keeping it for undo."""

    def __init__(self, registry: Registry, source_path: str) -> None:
        self.registry = registry
        self.source_path = source_path
        self._saved: ManagedFile | None = None

    def do(self) -> None:
        self._saved = self.registry.remove(self.source_path)
        try:
            self.registry.save()
        except Exception:
            self.registry.add(self._saved)
            raise

    def undo(self) -> None:
        if self._saved is None:
            raise RuntimeError("no saved registry entry to restore")
        self.registry.add(self._saved)
        self.registry.save()

    def describe(self) -> str:
        return f"remove {self.source_path} from registry"


# ============================================================================
# Compound transactions
# ============================================================================


def add_file_transaction(
    layout: DataLayout,
    registry: Registry,
    backups: BackupStore,
    entry: ManagedFile,
) -> Transaction:
    """Plan the transaction that brings a file under management.

    Steps: back up the original -> move it into the content store ->
    link the original location to it -> record it in the registry.
    Call `execute_all()` to run it.
    """
    source = expand_path(entry.source_path)
    store_path = layout.store_path(entry.repo_path)

    tx = Transaction(name=f"add {entry.source_path}")
    tx.add(BackupFileOp(backups, source))
    tx.add(MoveFileOp(source, store_path))
    tx.add(CreateSymlinkOp(target=store_path, link=source))
    tx.add(AddRegistryEntryOp(registry, entry))
    return tx


def remove_file_transaction(
    layout: DataLayout,
    registry: Registry,
    backups: BackupStore,
    entry: ManagedFile,
    *,
    keep_store: bool = False,
) -> Transaction:
    """Plan the transaction that takes a file out of management.

    Steps: back up the store copy -> remove the symlink (if one is there)
    -> move the store copy back (or copy it back when `keep_store`) ->
    drop the registry entry. Call `execute_all()` to run it.
    """
    source = expand_path(entry.source_path)
    store_path = layout.store_path(entry.repo_path)

    tx = Transaction(name=f"remove {entry.source_path}")
    if store_path.is_file():
        tx.add(BackupFileOp(backups, store_path))
    if os.path.islink(source):
        tx.add(RemoveSymlinkOp(source))
    if store_path.is_file():
        if keep_store:
            tx.add(CopyFileOp(store_path, source))
        else:
            tx.add(MoveFileOp(store_path, source))
    tx.add(RemoveRegistryEntryOp(registry, entry.source_path))
    return tx
