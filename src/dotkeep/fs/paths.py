"""Path utilities for filesystem operations.

This module converts between the portable `~/...` notation stored in the
registry and absolute paths, and computes the relative targets written
into every symlink dotkeep creates. All functions are pure: they look at
environment variables and the home directory, never at file contents.
"""

import os
import unicodedata
import uuid
from pathlib import Path

from dotkeep.core.errors import InvalidPath, PathComputationError

HOME_MARKER = "~"


def clean_path(path: str | os.PathLike[str], root: Path | None = None) -> Path:
    """Make a path absolute and lexically clean without following symlinks.

    Args:
        path: Path to clean
        root: Optional root directory for relative paths (defaults to cwd)

    Returns:
        Absolute path with `.`/`..` segments collapsed
    """
    text = os.fspath(path)
    if not os.path.isabs(text):
        base = os.fspath(root) if root is not None else os.getcwd()
        text = os.path.join(base, text)

    text = os.path.normpath(text)

    # Normalize Unicode (NFC on macOS, NFD handling)
    if os.name == "posix":
        text = unicodedata.normalize("NFC", text)

    return Path(text)


def home_dir() -> Path:
    """Return the current user's home directory.

    Raises:
        InvalidPath: If the home directory cannot be determined
    """
    try:
        home = Path.home()
    except (RuntimeError, KeyError) as exc:
        raise InvalidPath(HOME_MARKER, "cannot determine home directory") from exc

    if not os.fspath(home) or os.fspath(home) == HOME_MARKER:
        raise InvalidPath(HOME_MARKER, "cannot determine home directory")

    return clean_path(home)


def expand_path(path: str | os.PathLike[str]) -> Path:
    """Expand portable notation to a clean absolute path.

    Handles `~` and `~/...`, environment references (`$VAR`, `${VAR}`, and
    `%VAR%` on Windows), and relative paths (made absolute against cwd).

    Args:
        path: Path in portable or native notation

    Returns:
        Absolute path. Symlinks are not resolved.

    Raises:
        InvalidPath: If the path is empty, or needs the home directory and
            it cannot be determined
    """
    text = os.fspath(path)
    if not text.strip():
        raise InvalidPath(text, "empty path")

    text = os.path.expandvars(text)

    if text == HOME_MARKER:
        return home_dir()

    if text.startswith(HOME_MARKER + "/") or text.startswith(HOME_MARKER + os.sep):
        return clean_path(os.path.join(home_dir(), text[2:]))

    if text.startswith(HOME_MARKER):
        # ~user form
        expanded = os.path.expanduser(text)
        if expanded == text:
            raise InvalidPath(text, "cannot resolve user home directory")
        text = expanded

    return clean_path(text)


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Convert a path to portable notation.

    Example: /Users/you/.zshrc -> ~/.zshrc

    Args:
        path: Absolute, relative, or already-portable path

    Returns:
        `~`-prefixed path with forward slashes when under the home
        directory, otherwise the cleaned absolute path
    """
    expanded = expand_path(path)

    try:
        home = home_dir()
    except InvalidPath:
        return str(expanded)

    try:
        relative = expanded.relative_to(home)
    except ValueError:
        return str(expanded)

    if relative == Path("."):
        return HOME_MARKER
    return f"{HOME_MARKER}/{relative.as_posix()}"


def relative_target(
    link_path: str | os.PathLike[str], target_path: str | os.PathLike[str]
) -> str:
    """Compute the relative path from a link's directory to its target.

    Every symlink dotkeep writes stores this value, so links keep resolving
    when the home directory and the content store move together.

    Both directories are resolved through any symlinks first: the OS
    follows a symlinked parent (`~/.config -> elsewhere`) before applying
    `..`, so a purely lexical answer would point somewhere else.

    Args:
        link_path: Where the symlink lives
        target_path: What the symlink should point to

    Returns:
        Relative path, e.g. `.dotkeep/files/shell/zshrc`

    Raises:
        PathComputationError: If no relative path exists (different drives)
    """
    link_abs = expand_path(link_path)
    target_abs = expand_path(target_path)

    link_dir = os.path.realpath(link_abs.parent)
    target_real = os.path.join(os.path.realpath(target_abs.parent), target_abs.name)

    try:
        return os.path.relpath(target_real, link_dir)
    except ValueError as exc:
        raise PathComputationError(str(link_abs), str(target_abs), str(exc)) from exc


def temp_sibling(path: Path, tag: str = "tmp") -> Path:
    """Get a unique hidden path in the same directory as `path`.

    Used for write-then-replace so the final `os.replace` stays on one
    filesystem and is atomic.
    """
    return path.with_name(f".{path.name}.{tag}_{uuid.uuid4().hex[:8]}")


def ensure_parent_dir(path: Path) -> None:
    """Ensure parent directory exists for a path.

    Args:
        path: Path whose parent directory should exist

    Raises:
        OSError: If parent directory cannot be created
    """
    parent = path.parent
    if not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)
