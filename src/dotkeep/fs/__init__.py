"""Filesystem layer: path resolution, file moves, and symlink management.

This package provides the pure path helpers that translate between the
portable `~/...` notation and absolute paths, move/copy primitives with a
cross-device fallback, and the symlink manager that writes relative links.
"""

from dotkeep.fs.fs_ops import copy_with_permissions, move_file
from dotkeep.fs.paths import expand_path, normalize_path, relative_target
from dotkeep.fs.symlinks import (
    LinkState,
    SymlinkStatus,
    create_symlink,
    is_valid_symlink,
    remove_symlink,
    symlink_status,
)

__all__ = [
    "LinkState",
    "SymlinkStatus",
    "copy_with_permissions",
    "create_symlink",
    "expand_path",
    "is_valid_symlink",
    "move_file",
    "normalize_path",
    "relative_target",
    "remove_symlink",
    "symlink_status",
]
