"""Symlink creation, inspection, and validation.

Each link path is in one of four states, computed fresh from the
filesystem on every call and never cached:

    ABSENT -> NOT_SYMLINK | BROKEN_SYMLINK | VALID_SYMLINK

Every link written here stores a relative target (see
`dotkeep.fs.paths.relative_target`) so the home directory and content
store can be relocated together.
"""

import functools
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotkeep.core.errors import (
    NotASymlink,
    PermissionDenied,
    SymlinkCreationError,
    SymlinkUnsupported,
)
from dotkeep.fs.paths import expand_path, relative_target, temp_sibling
from dotkeep.utils.debug import debug


class LinkState(str, Enum):
    """State of a path as seen by the symlink manager."""

    ABSENT = "absent"
    NOT_SYMLINK = "not_symlink"
    BROKEN_SYMLINK = "broken_symlink"
    VALID_SYMLINK = "valid_symlink"


@dataclass(frozen=True)
class SymlinkStatus:
    """Snapshot of a link path.

    Attributes:
        exists: Something (file, directory, or link) occupies the path
        is_symlink: The path itself is a symbolic link
        target_exists: The link's resolved target exists
        is_relative: The stored target is a relative path
        raw_target: Stored target string, exactly as written in the link
        points_to_expected: Whether the link resolves to the expected target
            (None when no expected target was given or the path is no link)
    """

    exists: bool = False
    is_symlink: bool = False
    target_exists: bool = False
    is_relative: bool = False
    raw_target: str = ""
    points_to_expected: bool | None = None

    @property
    def state(self) -> LinkState:
        if not self.exists:
            return LinkState.ABSENT
        if not self.is_symlink:
            return LinkState.NOT_SYMLINK
        if not self.target_exists:
            return LinkState.BROKEN_SYMLINK
        return LinkState.VALID_SYMLINK


@functools.cache
def supports_symlinks() -> bool:
    """Check whether this process can create symlinks.

    Checked once by creating a throwaway link in a temporary directory.
    On Windows this requires administrator rights or developer mode.
    """
    try:
        with tempfile.TemporaryDirectory(prefix="dotkeep-symlink-check-") as tmpdir:
            target = Path(tmpdir) / "target"
            target.write_text("check")
            link = Path(tmpdir) / "link"
            os.symlink("target", link)
            return os.path.islink(link)
    except (OSError, NotImplementedError) as e:
        debug(f"Symlink check failed: {e}")
        return False


def is_symlink(path: str | os.PathLike[str]) -> bool:
    """Return True if the path itself is a symbolic link."""
    return os.path.islink(expand_path(path))


def read_symlink(link: str | os.PathLike[str]) -> str:
    """Return the raw target stored in a symlink.

    Raises:
        NotASymlink: If the path is not a symlink
    """
    expanded = expand_path(link)
    try:
        return os.readlink(expanded)
    except (FileNotFoundError, OSError) as exc:
        if not os.path.islink(expanded):
            raise NotASymlink(str(expanded)) from exc
        raise


def is_relative_symlink(link: str | os.PathLike[str]) -> bool:
    """Return True if the symlink stores a relative target."""
    return not os.path.isabs(read_symlink(link))


def resolve_symlink(link: str | os.PathLike[str]) -> Path:
    """Resolve a symlink's stored target to an absolute path (one level).

    Relative targets are resolved against the real location of the link's
    directory.
    """
    expanded = expand_path(link)
    raw = read_symlink(expanded)
    link_dir = os.path.realpath(expanded.parent)
    return Path(os.path.normpath(os.path.join(link_dir, raw)))


def symlink_status(
    link: str | os.PathLike[str],
    expected_target: str | os.PathLike[str] | None = None,
) -> SymlinkStatus:
    """Inspect a link path.

    Never fails on a missing path (returns an all-false status).

    Args:
        link: Path to inspect
        expected_target: Optional path the link is supposed to point to

    Raises:
        PermissionDenied: If the path cannot be inspected
    """
    expanded = expand_path(link)

    try:
        os.lstat(expanded)
    except (FileNotFoundError, NotADirectoryError):
        return SymlinkStatus()
    except PermissionError as exc:
        raise PermissionDenied(str(expanded)) from exc

    if not os.path.islink(expanded):
        return SymlinkStatus(exists=True)

    try:
        raw = os.readlink(expanded)
    except PermissionError as exc:
        raise PermissionDenied(str(expanded)) from exc

    # Follow the link the way the OS does, symlinked parents included
    points_to_expected: bool | None = None
    if expected_target is not None:
        points_to_expected = os.path.realpath(expanded) == os.path.realpath(
            expand_path(expected_target)
        )

    return SymlinkStatus(
        exists=True,
        is_symlink=True,
        target_exists=os.path.exists(expanded),
        is_relative=not os.path.isabs(raw),
        raw_target=raw,
        points_to_expected=points_to_expected,
    )


def is_valid_symlink(link: str | os.PathLike[str]) -> bool:
    """Return True if the path is a symlink whose target currently exists."""
    return symlink_status(link).state is LinkState.VALID_SYMLINK


def create_symlink(
    target: str | os.PathLike[str], link: str | os.PathLike[str]
) -> str:
    """Create a relative symlink at `link` pointing to `target`.

    The parent directory of `link` is created if missing. An existing file
    or link at `link` is replaced atomically: the new link is written under
    a temporary sibling name and moved into place with `os.replace`. An
    existing real directory is only replaced when empty.

    Args:
        target: Path the link should point to
        link: Where to create the link

    Returns:
        The relative target stored in the link

    Raises:
        SymlinkUnsupported: If the platform cannot create symlinks
        SymlinkCreationError: If the link cannot be written
        PathComputationError: If no relative path to the target exists
    """
    if not supports_symlinks():
        raise SymlinkUnsupported()

    link_path = expand_path(link)
    stored_target = relative_target(link_path, target)

    try:
        link_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SymlinkCreationError(str(link_path), f"creating parent: {exc}") from exc

    if os.path.isdir(link_path) and not os.path.islink(link_path):
        try:
            link_path.rmdir()
        except OSError as exc:
            raise SymlinkCreationError(
                str(link_path), "a non-empty directory occupies the link path"
            ) from exc

    staging = temp_sibling(link_path, tag="link")
    try:
        os.symlink(stored_target, staging)
        os.replace(staging, link_path)
    except OSError as exc:
        if os.path.lexists(staging):
            try:
                os.unlink(staging)
            except OSError as cleanup_error:
                debug(f"Could not remove staging link {staging}: {cleanup_error}")
        raise SymlinkCreationError(str(link_path), str(exc)) from exc

    debug(f"Created symlink: {link_path} -> {stored_target}")
    return stored_target


def remove_symlink(link: str | os.PathLike[str]) -> None:
    """Remove a symlink.

    Raises:
        NotASymlink: If the path is missing or not a symlink
    """
    expanded = expand_path(link)
    if not os.path.islink(expanded):
        raise NotASymlink(str(expanded))

    os.unlink(expanded)
    debug(f"Removed symlink: {expanded}")
