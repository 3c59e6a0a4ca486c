"""Custom exceptions for dotkeep.

This module defines the typed exceptions raised by the transactional
filesystem engine. They fall into four categories:

- ValidationError: a precondition was not met (not a symlink, missing
  source, path traversal). Surfaced immediately, never retried.
- ConflictError: another actor owns the resource (lock held, transaction
  closed, not the lock owner). Carries enough detail for the caller to
  decide whether to wait, force-clear, or abort.
- HostEnvironmentError: the platform cannot do what was asked (symlinks
  unsupported, permission denied, I/O failure).
- IntegrityError: state is inconsistent (rollback partially failed,
  malformed lock record).
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any


class DotkeepError(Exception):
    """Base exception for all dotkeep errors.

    All custom exceptions inherit from this class so callers can catch
    every engine failure with a single handler.
    """

    category = "error"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for machine-readable output."""
        return {
            "error": type(self).__name__,
            "category": self.category,
            "message": str(self),
        }


class ValidationError(DotkeepError):
    """A precondition of the requested operation was not met."""

    category = "validation"


class ConflictError(DotkeepError):
    """The resource is owned or closed by someone else."""

    category = "conflict"


class HostEnvironmentError(DotkeepError):
    """The host platform cannot perform the operation."""

    category = "environment"


class IntegrityError(DotkeepError):
    """On-disk or in-memory state is inconsistent."""

    category = "integrity"


# ============================================================================
# Validation
# ============================================================================


class InvalidPath(ValidationError):
    """Raised when a path cannot be expanded to an absolute location."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid path '{path}': {reason}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        result["reason"] = self.reason
        return result


class PathComputationError(ValidationError):
    """Raised when no relative path exists between two locations."""

    def __init__(self, link_path: str, target_path: str, reason: str) -> None:
        self.link_path = link_path
        self.target_path = target_path
        super().__init__(
            f"Cannot compute relative path from '{link_path}' to "
            f"'{target_path}': {reason}"
        )


class NotASymlink(ValidationError):
    """Raised when a symlink operation targets something that is not a link.

    Guards against deleting a regular file the caller mistook for a link.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Not a symlink: {path}")


class SourceNotFound(ValidationError):
    """Raised when a backup source is missing or not a regular file."""

    def __init__(self, path: str, reason: str = "does not exist") -> None:
        self.path = path
        super().__init__(f"Source file {reason}: {path}")


class BackupNotFound(ValidationError):
    """Raised when a backup snapshot cannot be located."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Backup not found: {path}")


# ============================================================================
# Conflict
# ============================================================================


class LockHeld(ConflictError):
    """Raised when the lock is held by a live, non-stale owner.

    Attributes:
        owner_pid: Process id recorded in the lock (None if the record is
            still being written by a competing process)
        owner_host: Host name recorded in the lock
    """

    def __init__(self, owner_pid: int | None, owner_host: str | None) -> None:
        self.owner_pid = owner_pid
        self.owner_host = owner_host

        if owner_pid is None:
            message = "Lock is held by another process (record being written)"
        else:
            message = f"Lock is held by PID {owner_pid}"
            if owner_host:
                message += f" on {owner_host}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["owner_pid"] = self.owner_pid
        result["owner_host"] = self.owner_host
        return result

    def __repr__(self) -> str:
        return f"LockHeld(owner_pid={self.owner_pid!r}, owner_host={self.owner_host!r})"


class StaleLockDetected(ConflictError):
    """Raised when an existing lock record is stale.

    The lock is not cleared automatically; the caller decides whether to
    force-clear it.
    """

    def __init__(
        self, owner_pid: int | None, reason: str = "owner appears dead"
    ) -> None:
        self.owner_pid = owner_pid
        self.reason = reason

        owner = f"PID {owner_pid}" if owner_pid is not None else "unknown owner"
        super().__init__(
            f"Stale lock detected ({owner}: {reason}); clear it with "
            "'dotkeep lock clear' if no other dotkeep process is running"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["owner_pid"] = self.owner_pid
        result["reason"] = self.reason
        return result

    def __repr__(self) -> str:
        return (
            f"StaleLockDetected(owner_pid={self.owner_pid!r}, "
            f"reason={self.reason!r})"
        )


class NotOwner(ConflictError):
    """Raised when releasing a lock recorded for another process."""

    def __init__(self, owner_pid: int, caller_pid: int) -> None:
        self.owner_pid = owner_pid
        self.caller_pid = caller_pid
        super().__init__(
            f"Cannot release lock owned by PID {owner_pid} (caller is PID {caller_pid})"
        )


class TransactionClosed(ConflictError):
    """Raised when using a transaction that is no longer open."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"Transaction is closed (state: {state})")


class CannotRollbackCommitted(ConflictError):
    """Raised when rolling back a committed transaction."""

    def __init__(self) -> None:
        super().__init__("Cannot roll back a committed transaction")


class AlreadyManaged(ConflictError):
    """Raised when adding a registry entry for a path already tracked."""

    def __init__(self, source_path: str) -> None:
        self.source_path = source_path
        super().__init__(f"Already managed: {source_path}")


class NotManaged(ConflictError):
    """Raised when a registry lookup finds no entry for a path."""

    def __init__(self, source_path: str) -> None:
        self.source_path = source_path
        super().__init__(f"Not managed: {source_path}")


# ============================================================================
# Environment
# ============================================================================


class SymlinkUnsupported(HostEnvironmentError):
    """Raised when the platform cannot create symbolic links.

    On Windows this usually means neither administrator rights nor
    developer mode are available.
    """

    def __init__(self, reason: str = "symlink creation check failed") -> None:
        self.reason = reason
        super().__init__(f"Symbolic links are not supported here: {reason}")


class SymlinkCreationError(HostEnvironmentError):
    """Raised when writing a symlink fails."""

    def __init__(self, link: str, reason: str) -> None:
        self.link = link
        self.reason = reason
        super().__init__(f"Failed to create symlink {link}: {reason}")


class CopyError(HostEnvironmentError):
    """Raised when copying a file into or out of the backup store fails."""

    def __init__(self, src: str, dst: str, reason: str) -> None:
        self.src = src
        self.dst = dst
        self.reason = reason
        super().__init__(f"Failed to copy {src} to {dst}: {reason}")


class PermissionDenied(HostEnvironmentError):
    """Raised when a path cannot be inspected due to permissions."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Permission denied: {path}")


# ============================================================================
# Integrity
# ============================================================================


class MalformedLockRecord(IntegrityError):
    """Raised when a lock record cannot be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed lock record {path}: {reason}")


class MalformedRegistry(IntegrityError):
    """Raised when the registry file cannot be read or fails validation."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed registry {path}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        result["reason"] = self.reason
        return result


@dataclass(frozen=True)
class RollbackFailure:
    """One inverse action that could not be applied."""

    description: str
    error: BaseException

    def __str__(self) -> str:
        return f"rolling back {self.description}: {self.error}"


class RollbackError(IntegrityError):
    """Raised when one or more inverse actions failed during rollback.

    Every failure is collected; none overwrites another.

    Attributes:
        failures: Failed inverse actions, in the order they were attempted
    """

    def __init__(self, failures: Sequence[RollbackFailure]) -> None:
        self.failures = list(failures)
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(
            f"Rollback incomplete ({len(self.failures)} operation(s) could not "
            f"be undone): {details}"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["failures"] = [
            {"operation": failure.description, "error": str(failure.error)}
            for failure in self.failures
        ]
        return result

    def __repr__(self) -> str:
        return f"RollbackError(failures={len(self.failures)})"


class OperationFailed(DotkeepError):
    """Raised when a transaction step fails; earlier steps were rolled back.

    Attributes:
        description: Human-readable description of the failed operation
        cause: The error raised by the operation's forward action
        rollback_failures: Inverse actions that could not be applied while
            undoing earlier steps (empty when rollback was complete)
    """

    def __init__(
        self,
        description: str,
        cause: BaseException,
        rollback_failures: Sequence[RollbackFailure] = (),
    ) -> None:
        self.description = description
        self.cause = cause
        self.rollback_failures = list(rollback_failures)

        message = f"executing {description}: {cause}"
        if self.rollback_failures:
            message += (
                f" (rollback incomplete: "
                f"{'; '.join(str(f) for f in self.rollback_failures)})"
            )
        super().__init__(message)

    @property
    def category(self) -> str:  # type: ignore[override]
        if self.rollback_failures:
            return IntegrityError.category
        if isinstance(self.cause, DotkeepError):
            return self.cause.category
        return HostEnvironmentError.category

    @property
    def rolled_back_cleanly(self) -> bool:
        return not self.rollback_failures

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.description
        result["cause"] = str(self.cause)
        if self.rollback_failures:
            result["rollback_failures"] = [str(f) for f in self.rollback_failures]
        return result

    def __repr__(self) -> str:
        return (
            f"OperationFailed(description={self.description!r}, "
            f"cause={self.cause!r}, "
            f"rollback_failures={len(self.rollback_failures)})"
        )
