"""Tests for reversible operations and the add/remove transactions."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from dotkeep.core.backup import BackupStore
from dotkeep.core.errors import CopyError, NotASymlink, OperationFailed
from dotkeep.core.operations import (
    AddRegistryEntryOp,
    BackupFileOp,
    CopyFileOp,
    CreateDirOp,
    CreateSymlinkOp,
    MoveFileOp,
    RemoveFileOp,
    RemoveRegistryEntryOp,
    RemoveSymlinkOp,
    WriteFileOp,
    add_file_transaction,
    remove_file_transaction,
)
from dotkeep.core.registry import ManagedFile, Registry
from dotkeep.core.settings import DataLayout


@pytest.fixture
def registry(layout: DataLayout) -> Registry:
    return Registry(layout.registry_path)


@pytest.fixture
def backups(layout: DataLayout) -> BackupStore:
    return BackupStore(layout.backups_dir)


@pytest.fixture
def zshrc_entry() -> ManagedFile:
    return ManagedFile(source_path="~/.zshrc", repo_path="shell/zshrc")


class TestFileOperations:
    """Test single-file operations and their inverses."""

    def test_move_and_undo(self, tmp_path: Path) -> None:
        """Test that undo moves the file back."""
        src = tmp_path / "a"
        dst = tmp_path / "store" / "a"
        src.write_text("content")
        op = MoveFileOp(src, dst)

        op.do()
        assert dst.read_text() == "content" and not src.exists()
        op.undo()

        assert src.read_text() == "content" and not dst.exists()

    def test_copy_refuses_existing_destination(self, tmp_path: Path) -> None:
        """Test that a copy never overwrites."""
        src = tmp_path / "a"
        dst = tmp_path / "b"
        src.write_text("new")
        dst.write_text("old")

        with pytest.raises(FileExistsError):
            CopyFileOp(src, dst).do()

        assert dst.read_text() == "old"

    def test_copy_undo_deletes_copy(self, tmp_path: Path) -> None:
        """Test that undoing a copy removes only the copy."""
        src = tmp_path / "a"
        dst = tmp_path / "b"
        src.write_text("x")
        op = CopyFileOp(src, dst)

        op.do()
        op.undo()

        assert src.exists() and not dst.exists()

    def test_remove_file_backs_up_first(
        self, home: Path, backups: BackupStore
    ) -> None:
        """Test that removal takes a backup and undo restores it."""
        path = home / ".vimrc"
        path.write_text("set number\n")
        op = RemoveFileOp(backups, path)

        op.do()
        assert not path.exists()
        assert op.backup_path is not None and op.backup_path.exists()
        op.undo()

        assert path.read_text() == "set number\n"

    def test_remove_file_fails_closed(self, home: Path, backups: BackupStore) -> None:
        """Test that a failed backup prevents the delete."""
        path = home / ".vimrc"
        path.write_text("set number\n")

        with patch.object(backups, "create", side_effect=CopyError("a", "b", "full")):
            with pytest.raises(CopyError):
                RemoveFileOp(backups, path).do()

        assert path.read_text() == "set number\n"

    def test_write_new_file_undo_deletes(
        self, tmp_path: Path, backups: BackupStore
    ) -> None:
        """Test that undoing a write of a new file deletes it."""
        path = tmp_path / "conf" / "app.toml"
        op = WriteFileOp(backups, path, b"key = 1\n")

        op.do()
        assert path.read_bytes() == b"key = 1\n"
        op.undo()

        assert not path.exists()

    def test_write_existing_file_undo_restores(
        self, tmp_path: Path, backups: BackupStore
    ) -> None:
        """Test that undoing an overwrite restores the previous content."""
        path = tmp_path / "app.toml"
        path.write_bytes(b"old\n")
        op = WriteFileOp(backups, path, b"new\n")

        op.do()
        assert path.read_bytes() == b"new\n"
        op.undo()

        assert path.read_bytes() == b"old\n"

    def test_backup_undo_keeps_snapshot(
        self, tmp_path: Path, backups: BackupStore
    ) -> None:
        """Test that rolling back a backup leaves the snapshot in place."""
        path = tmp_path / ".zshrc"
        path.write_text("x")
        op = BackupFileOp(backups, path)

        op.do()
        op.undo()

        assert op.backup_path is not None and op.backup_path.exists()


class TestSymlinkOperations:
    """Test symlink operations."""

    def test_create_undo_removes_link(self, home: Path) -> None:
        """Test that undoing a created link removes it."""
        target = home / "store" / "zshrc"
        target.parent.mkdir()
        target.write_text("x")
        link = home / ".zshrc"
        op = CreateSymlinkOp(target=target, link=link)

        op.do()
        assert link.is_symlink()
        op.undo()

        assert not os.path.lexists(link)
        assert target.exists()

    def test_create_undo_never_deletes_regular_file(self, home: Path) -> None:
        """Test that undo refuses if the link was replaced by a real file."""
        target = home / "target"
        target.write_text("x")
        link = home / ".zshrc"
        op = CreateSymlinkOp(target=target, link=link)
        op.do()
        link.unlink()
        link.write_text("user edit")

        with pytest.raises(NotASymlink):
            op.undo()

        assert link.read_text() == "user edit"

    def test_remove_undo_restores_exact_target(self, home: Path) -> None:
        """Test that undo recreates the link with its original raw target."""
        link = home / ".zshrc"
        os.symlink("some/relative/target", link)
        op = RemoveSymlinkOp(link)

        op.do()
        assert not os.path.lexists(link)
        op.undo()

        assert os.readlink(link) == "some/relative/target"


class TestCreateDirOp:
    """Test the best-effort directory inverse."""

    def test_undo_removes_created_empty_dir(self, tmp_path: Path) -> None:
        path = tmp_path / "new"
        op = CreateDirOp(path)

        op.do()
        op.undo()

        assert not path.exists()

    def test_undo_keeps_preexisting_dir(self, tmp_path: Path) -> None:
        path = tmp_path / "existing"
        path.mkdir()
        op = CreateDirOp(path)

        op.do()
        op.undo()

        assert path.is_dir()

    def test_undo_keeps_non_empty_dir(self, tmp_path: Path) -> None:
        """Test that content added after creation keeps the directory."""
        path = tmp_path / "new"
        op = CreateDirOp(path)
        op.do()
        (path / "file").write_text("x")

        op.undo()

        assert (path / "file").exists()


class TestRegistryOperations:
    """Test registry operations."""

    def test_add_persists_and_undo_removes(
        self, home: Path, registry: Registry, zshrc_entry: ManagedFile
    ) -> None:
        op = AddRegistryEntryOp(registry, zshrc_entry)

        op.do()
        assert Registry.open(registry.path).is_managed("~/.zshrc")
        op.undo()

        assert not Registry.open(registry.path).is_managed("~/.zshrc")

    def test_add_save_failure_leaves_memory_unchanged(
        self, home: Path, registry: Registry, zshrc_entry: ManagedFile
    ) -> None:
        """Test that a failed save does not leave a phantom entry."""
        with patch.object(registry, "save", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                AddRegistryEntryOp(registry, zshrc_entry).do()

        assert not registry.is_managed("~/.zshrc")

    def test_remove_undo_restores_entry(
        self, home: Path, registry: Registry, zshrc_entry: ManagedFile
    ) -> None:
        registry.add(zshrc_entry)
        registry.save()
        op = RemoveRegistryEntryOp(registry, "~/.zshrc")

        op.do()
        assert not Registry.open(registry.path).is_managed("~/.zshrc")
        op.undo()

        assert Registry.open(registry.path).get("~/.zshrc").repo_path == "shell/zshrc"


class TestAddFileTransaction:
    """Test the compound add transaction."""

    def test_plan_order(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        zshrc_entry: ManagedFile,
    ) -> None:
        """Test that the file is moved before it is linked."""
        tx = add_file_transaction(layout, registry, backups, zshrc_entry)

        assert [type(op).__name__ for op in tx.planned] == [
            "BackupFileOp",
            "MoveFileOp",
            "CreateSymlinkOp",
            "AddRegistryEntryOp",
        ]

    def test_success(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        zshrc_entry: ManagedFile,
    ) -> None:
        """Test that a committed add leaves a relative link into the store."""
        tx = add_file_transaction(layout, registry, backups, zshrc_entry)

        tx.execute_all()
        tx.commit()

        store_path = layout.files_dir / "shell" / "zshrc"
        assert zshrc.is_symlink()
        assert not os.path.isabs(os.readlink(zshrc))
        assert zshrc.read_text() == "export EDITOR=nvim\n"
        assert store_path.is_file() and not store_path.is_symlink()
        assert Registry.open(layout.registry_path).is_managed("~/.zshrc")
        latest = backups.latest_backup(".zshrc")
        assert latest.path.read_text() == "export EDITOR=nvim\n"

    def test_registry_failure_restores_original_file(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        zshrc_entry: ManagedFile,
    ) -> None:
        """Test that a failing final step rolls the filesystem back."""
        tx = add_file_transaction(layout, registry, backups, zshrc_entry)

        with patch.object(registry, "save", side_effect=OSError("disk full")):
            with pytest.raises(OperationFailed) as exc_info:
                tx.execute_all()

        assert exc_info.value.rolled_back_cleanly
        assert "registry" in exc_info.value.description
        assert zshrc.is_file() and not zshrc.is_symlink()
        assert zshrc.read_text() == "export EDITOR=nvim\n"
        assert not (layout.files_dir / "shell" / "zshrc").exists()
        assert not registry.is_managed("~/.zshrc")
        assert not layout.registry_path.exists()
        # The safety backup survives the rollback
        assert backups.latest_backup(".zshrc").path.exists()

    def test_symlink_failure_moves_file_back(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        zshrc_entry: ManagedFile,
    ) -> None:
        """Test rollback when the link cannot be created."""
        tx = add_file_transaction(layout, registry, backups, zshrc_entry)

        with patch(
            "dotkeep.core.operations.create_symlink",
            side_effect=OSError("read-only file system"),
        ):
            with pytest.raises(OperationFailed, match="read-only"):
                tx.execute_all()

        assert zshrc.read_text() == "export EDITOR=nvim\n"
        assert not zshrc.is_symlink()


class TestRemoveFileTransaction:
    """Test the compound remove transaction."""

    @pytest.fixture
    def managed(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        zshrc_entry: ManagedFile,
    ) -> ManagedFile:
        tx = add_file_transaction(layout, registry, backups, zshrc_entry)
        tx.execute_all()
        tx.commit()
        return registry.get("~/.zshrc")

    def test_moves_file_home(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        managed: ManagedFile,
    ) -> None:
        """Test that remove replaces the link with the real file."""
        tx = remove_file_transaction(layout, registry, backups, managed)

        tx.execute_all()
        tx.commit()

        assert zshrc.is_file() and not zshrc.is_symlink()
        assert zshrc.read_text() == "export EDITOR=nvim\n"
        assert not (layout.files_dir / "shell" / "zshrc").exists()
        assert len(Registry.open(layout.registry_path)) == 0

    def test_keep_store_copies(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        managed: ManagedFile,
    ) -> None:
        """Test that keep_store leaves the store copy in place."""
        tx = remove_file_transaction(
            layout, registry, backups, managed, keep_store=True
        )

        tx.execute_all()
        tx.commit()

        assert zshrc.is_file() and not zshrc.is_symlink()
        assert (layout.files_dir / "shell" / "zshrc").is_file()

    def test_failure_restores_link(
        self,
        layout: DataLayout,
        registry: Registry,
        backups: BackupStore,
        zshrc: Path,
        managed: ManagedFile,
    ) -> None:
        """Test that a failed registry update puts the symlink back."""
        tx = remove_file_transaction(layout, registry, backups, managed)

        with patch.object(registry, "save", side_effect=OSError("disk full")):
            with pytest.raises(OperationFailed):
                tx.execute_all()

        assert zshrc.is_symlink()
        assert zshrc.read_text() == "export EDITOR=nvim\n"
        assert registry.is_managed("~/.zshrc")
