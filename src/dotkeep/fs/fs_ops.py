"""File move and copy primitives used by transaction operations.

Moves prefer an atomic `rename` and fall back to copy + fsync + unlink when
the source and destination live on different devices.
"""

import errno
import os
import shutil
from pathlib import Path

from dotkeep.fs.paths import ensure_parent_dir
from dotkeep.utils.debug import debug


def copy_with_permissions(src: Path, dst: Path) -> None:
    """Copy a file preserving permission bits and modification time.

    Args:
        src: Existing regular file
        dst: Destination path (parent directories are created)

    Raises:
        OSError: If the copy fails
    """
    ensure_parent_dir(dst)
    shutil.copy2(src, dst)
    with open(dst, "rb") as handle:
        os.fsync(handle.fileno())
    debug(f"Copied with permissions: {src} -> {dst}")


def move_file(src: Path, dst: Path) -> None:
    """Move a file, falling back to copy + delete across devices.

    Args:
        src: File to move
        dst: Destination path (parent directories are created)

    Raises:
        FileNotFoundError: If `src` does not exist
        OSError: If the move fails; a partial cross-device copy is removed
    """
    if not os.path.lexists(src):
        raise FileNotFoundError(errno.ENOENT, "source file does not exist", str(src))

    ensure_parent_dir(dst)

    try:
        # Try direct rename first
        os.rename(src, dst)
        debug(f"Direct rename: {src} -> {dst}")
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    # Cross-device move: copy + fsync + remove
    try:
        copy_with_permissions(src, dst)
        os.unlink(src)
    except OSError:
        # Clean up partial copy
        if os.path.lexists(dst) and os.path.lexists(src):
            try:
                os.unlink(dst)
            except OSError as cleanup_error:
                debug(f"Could not remove partial copy {dst}: {cleanup_error}")
        raise
    debug(f"Cross-device move: {src} -> {dst}")


def remove_empty_parents(path: Path, stop_at: Path) -> list[Path]:
    """Remove empty directories from `path` upward, never past `stop_at`.

    Args:
        path: Directory to start from
        stop_at: Ancestor that is never removed

    Returns:
        Directories that were removed, innermost first
    """
    removed: list[Path] = []
    current = path
    stop_at = Path(os.path.normpath(stop_at))

    while current != stop_at and stop_at in current.parents:
        try:
            current.rmdir()
        except OSError:
            # Not empty, already gone, or not removable
            break
        removed.append(current)
        current = current.parent

    if removed:
        debug(f"Pruned empty directories: {[str(p) for p in removed]}")
    return removed


def dir_size(path: Path) -> int:
    """Return the total size in bytes of regular files below `path`."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total
