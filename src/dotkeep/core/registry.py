"""Registry of managed files.

The registry maps each managed file's original location (portable `~/...`
notation) to its path inside the content store. Transactions mutate it
only through `AddRegistryEntryOp` / `RemoveRegistryEntryOp`, so registry
changes roll back together with the filesystem changes.

Stored as JSON next to the content store:

    {
      "schema_version": "1.0",
      "managed_files": [
        {"source_path": "~/.zshrc", "repo_path": "shell/zshrc",
         "added_at": "2025-10-07T15:01:25Z", "platforms": []}
      ]
    }
"""

from __future__ import annotations

import os
import sys
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field, ValidationError, field_validator

from dotkeep.core.constants import PLATFORMS, REGISTRY_SCHEMA_VERSION
from dotkeep.core.errors import (
    AlreadyManaged,
    InvalidPath,
    MalformedRegistry,
    NotManaged,
)
from dotkeep.fs.paths import normalize_path, temp_sibling


def current_platform() -> str:
    """Return `darwin`, `linux`, or `windows` for the running interpreter."""
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


class ManagedFile(BaseModel):
    """A single managed file.

    Attributes:
        source_path: Original location in portable notation (`~/.zshrc`)
        repo_path: Location inside the content store (`shell/zshrc`)
        added_at: When the file was added (UTC)
        platforms: Platforms the link applies to (empty means all)
    """

    source_path: str
    repo_path: str
    added_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    platforms: list[str] = Field(default_factory=list)

    @field_validator("repo_path")
    @classmethod
    def validate_repo_path(cls, value: str) -> str:
        value = value.replace("\\", "/")
        if value.startswith("/") or (len(value) > 1 and value[1] == ":"):
            raise ValueError("repo_path must be relative to the content store")
        value = value.rstrip("/")
        if not value:
            raise ValueError("repo_path cannot be empty")
        if any(part in ("", "..", ".") for part in value.split("/")):
            raise ValueError("repo_path cannot contain empty, '.' or '..' segments")
        return value

    @field_validator("platforms")
    @classmethod
    def validate_platforms(cls, value: list[str]) -> list[str]:
        unknown = [p for p in value if p not in PLATFORMS]
        if unknown:
            raise ValueError(f"unknown platform(s): {', '.join(unknown)}")
        return value

    def applies_to(self, platform: str | None = None) -> bool:
        return not self.platforms or (platform or current_platform()) in self.platforms


class RegistryDocument(BaseModel):
    """On-disk registry document."""

    schema_version: str = REGISTRY_SCHEMA_VERSION
    managed_files: list[ManagedFile] = Field(default_factory=list)


class Registry:
    """JSON-backed registry of managed files."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._entries: dict[str, ManagedFile] = {}

    @classmethod
    def open(cls, path: Path) -> Registry:
        registry = cls(path)
        registry.load()
        return registry

    def load(self) -> None:
        """Load entries from disk; a missing file means an empty registry."""
        if not self.path.exists():
            self._entries = {}
            return
        try:
            document = RegistryDocument.model_validate_json(
                self.path.read_text(encoding="utf-8")
            )
        except UnicodeDecodeError as exc:
            raise MalformedRegistry(str(self.path), "not valid UTF-8") from exc
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"]) or "document"
            raise MalformedRegistry(
                str(self.path), f"{location}: {first['msg']}"
            ) from exc
        self._entries = {entry.source_path: entry for entry in document.managed_files}

    def save(self) -> None:
        """Write entries atomically (temp file + `os.replace`)."""
        document = RegistryDocument(managed_files=self.entries())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = temp_sibling(self.path)
        try:
            staging.write_text(
                document.model_dump_json(indent=2) + "\n", encoding="utf-8"
            )
            os.replace(staging, self.path)
        finally:
            staging.unlink(missing_ok=True)

    def entries(self) -> list[ManagedFile]:
        return sorted(self._entries.values(), key=lambda entry: entry.source_path)

    def for_platform(self, platform: str | None = None) -> list[ManagedFile]:
        return [entry for entry in self.entries() if entry.applies_to(platform)]

    def is_managed(self, source_path: str | os.PathLike[str]) -> bool:
        return normalize_path(source_path) in self._entries

    def get(self, source_path: str | os.PathLike[str]) -> ManagedFile:
        key = normalize_path(source_path)
        try:
            return self._entries[key]
        except KeyError:
            raise NotManaged(key) from None

    def add(self, entry: ManagedFile) -> ManagedFile:
        """Add an entry, keyed by its normalized source path.

        Raises:
            AlreadyManaged: If the source path is already registered
        """
        key = normalize_path(entry.source_path)
        if key in self._entries:
            raise AlreadyManaged(key)
        stored = entry.model_copy(update={"source_path": key})
        self._entries[key] = stored
        return stored

    def remove(self, source_path: str | os.PathLike[str]) -> ManagedFile:
        """Remove and return an entry.

        Raises:
            NotManaged: If the source path is not registered
        """
        key = normalize_path(source_path)
        try:
            return self._entries.pop(key)
        except KeyError:
            raise NotManaged(key) from None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source_path: object) -> bool:
        if not isinstance(source_path, (str, os.PathLike)):
            return False
        return self.is_managed(source_path)


# ============================================================================
# Content store naming
# ============================================================================

#: Dotfile name prefixes and the store directory they are filed under
_CATEGORY_PREFIXES: tuple[tuple[str, str], ...] = (
    (".zsh", "shell"),
    (".bash", "shell"),
    (".profile", "shell"),
    (".inputrc", "shell"),
    (".nvim", "nvim"),
    (".vim", "vim"),
    (".git", "git"),
    (".tmux", "tmux"),
    (".ssh", "ssh"),
)

_DEFAULT_CATEGORY = "misc"


def category_for(filename: str) -> str:
    """Return the store directory for a dotfile name (`.zshrc` -> `shell`)."""
    for prefix, category in _CATEGORY_PREFIXES:
        if filename.startswith(prefix):
            return category
    return _DEFAULT_CATEGORY


def _clean_category(category: str) -> str:
    value = category.replace("\\", "/")
    if value.startswith("/") or (len(value) > 1 and value[1] == ":"):
        raise InvalidPath(category, "category must be relative to the content store")
    value = value.rstrip("/")
    if not value or any(part in ("", ".", "..") for part in value.split("/")):
        raise InvalidPath(
            category, "category cannot contain empty, '.' or '..' segments"
        )
    return value


def generate_repo_path(
    source_path: str | os.PathLike[str], category: str | None = None
) -> str:
    """Derive a content-store path for a source file.

    Examples:
        ~/.zshrc                -> shell/zshrc
        ~/.gitconfig            -> git/gitconfig
        ~/.config/nvim/init.lua -> nvim/init.lua
        ~/.obscurefile          -> misc/obscurefile
        ~/.zshrc, "custom"      -> custom/zshrc

    Args:
        source_path: File being added
        category: Optional store directory overriding the derived one

    Raises:
        InvalidPath: If the category is absolute or has `.`/`..` segments
    """
    portable = normalize_path(source_path)
    parts = PurePosixPath(portable.replace("\\", "/")).parts
    if parts and parts[0] in ("~", "/"):
        parts = parts[1:]

    filename = parts[-1] if parts else portable
    stripped = filename.lstrip(".") or filename

    if category:
        return f"{_clean_category(category)}/{stripped}"

    # ~/.config/<app>/... keeps the app directory and below
    if len(parts) > 2 and parts[0] == ".config":
        return "/".join(parts[1:])

    return f"{category_for(filename)}/{stripped}"
