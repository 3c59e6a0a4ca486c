"""Cross-process lock for mutating dotkeep commands.

The lock is a single record file under the data root. It is advisory: any
process that goes through `FileLock` respects it, nothing else does.

Record format (three lines):

    12345
    2025-10-07T15:01:25+00:00
    laptop.local

Creation uses `O_CREAT | O_EXCL`, so two processes racing on an empty
data root cannot both succeed. A record is stale when it is malformed,
older than the staleness threshold, or names a process that no longer
exists. Stale records are reported, never cleared automatically.
"""

from __future__ import annotations

import os
import socket
import sys
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TypeVar

import structlog

from dotkeep.core.constants import (
    LOCK_CREATE_ATTEMPTS,
    LOCK_FILE_NAME,
    LOCK_WRITE_GRACE_SECONDS,
)
from dotkeep.core.errors import (
    LockHeld,
    MalformedLockRecord,
    NotOwner,
    StaleLockDetected,
)
from dotkeep.core.settings import resolve_lock_stale_after

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LockRecord:
    """Ownership of the lock.

    Attributes:
        pid: Owner process id
        timestamp: Acquisition time (timezone-aware, UTC)
        hostname: Owner host name
    """

    pid: int
    timestamp: datetime
    hostname: str

    @classmethod
    def for_current_process(cls) -> LockRecord:
        return cls(
            pid=os.getpid(),
            timestamp=datetime.now(UTC).replace(microsecond=0),
            hostname=socket.gethostname() or "unknown",
        )

    def to_text(self) -> str:
        return f"{self.pid}\n{self.timestamp.isoformat()}\n{self.hostname}\n"

    @classmethod
    def parse(cls, text: str, path: str = "<lock>") -> LockRecord:
        """Parse a record file's contents.

        Raises:
            MalformedLockRecord: If the content is not three valid lines
        """
        lines = text.strip().splitlines()
        if len(lines) < 3:
            raise MalformedLockRecord(path, f"expected 3 lines, got {len(lines)}")

        try:
            pid = int(lines[0].strip())
        except ValueError as exc:
            raise MalformedLockRecord(path, f"invalid PID {lines[0]!r}") from exc
        if pid <= 0:
            raise MalformedLockRecord(path, f"invalid PID {pid}")

        try:
            timestamp = datetime.fromisoformat(lines[1].strip())
        except ValueError as exc:
            raise MalformedLockRecord(path, f"invalid timestamp {lines[1]!r}") from exc
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)

        return cls(pid=pid, timestamp=timestamp, hostname=lines[2].strip())

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(UTC)) - self.timestamp


# ============================================================================
# Process liveness
# ============================================================================


def _is_process_alive_posix(pid: int) -> bool:
    try:
        # Signal 0 checks existence without delivering anything
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError:
        return False
    return True


def _is_process_alive_windows(pid: int) -> bool:
    import ctypes
    from ctypes import wintypes

    process_query_limited_information = 0x1000
    still_active = 259
    error_access_denied = 5

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    kernel32.OpenProcess.restype = wintypes.HANDLE
    kernel32.OpenProcess.argtypes = (wintypes.DWORD, wintypes.BOOL, wintypes.DWORD)
    kernel32.GetExitCodeProcess.argtypes = (
        wintypes.HANDLE,
        ctypes.POINTER(wintypes.DWORD),
    )
    kernel32.CloseHandle.argtypes = (wintypes.HANDLE,)

    handle = kernel32.OpenProcess(process_query_limited_information, False, pid)
    if not handle:
        # The process exists but belongs to someone we cannot query
        return ctypes.get_last_error() == error_access_denied

    try:
        exit_code = wintypes.DWORD()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return True
        return exit_code.value == still_active
    finally:
        kernel32.CloseHandle(handle)


def is_process_alive(pid: int) -> bool:
    """Non-destructive check whether a process id is running."""
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    if sys.platform == "win32":
        return _is_process_alive_windows(pid)
    return _is_process_alive_posix(pid)


# ============================================================================
# Lock
# ============================================================================


class FileLock:
    """Advisory lock over a data root.

    Create one handle per data root and pass it to whatever needs the lock;
    tests point it at a temporary directory.
    """

    def __init__(
        self,
        data_root: Path,
        *,
        stale_after: timedelta | None = None,
        liveness_check: Callable[[int], bool] = is_process_alive,
    ) -> None:
        """Initialize the lock handle.

        Args:
            data_root: Directory holding the lock record
            stale_after: Staleness threshold (defaults to LOCK_STALE_AFTER,
                or DOTKEEP_LOCK_STALE_SECONDS when set)
            liveness_check: Callable reporting whether a pid is alive
        """
        self.data_root = Path(data_root)
        self.path = self.data_root / LOCK_FILE_NAME
        self.stale_after = (
            stale_after if stale_after is not None else resolve_lock_stale_after()
        )
        self._is_alive = liveness_check

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def read_record(self) -> LockRecord | None:
        """Read the current record.

        Returns:
            The record, or None when no lock file exists

        Raises:
            MalformedLockRecord: If the file exists but cannot be parsed
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise MalformedLockRecord(str(self.path), "not valid UTF-8") from exc
        return LockRecord.parse(text, str(self.path))

    def is_locked(self) -> bool:
        return self.path.exists()

    def is_own_lock(self) -> bool:
        try:
            record = self.read_record()
        except MalformedLockRecord:
            return False
        return record is not None and record.pid == os.getpid()

    def is_stale(self, record: LockRecord | None, now: datetime | None = None) -> bool:
        """Decide whether a record may be cleared.

        Args:
            record: Parsed record, or None for a malformed one
            now: Reference time (defaults to the current UTC time)
        """
        if record is None:
            return True
        if record.age(now) > self.stale_after:
            return True
        return not self._is_alive(record.pid)

    def _stale_reason(self, record: LockRecord) -> str:
        if record.age() > self.stale_after:
            return f"older than {int(self.stale_after.total_seconds())}s"
        return "process is not running"

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self) -> LockRecord:
        """Take the lock for the current process.

        Does not wait: callers that want bounded waiting retry with their
        own backoff.

        Returns:
            The record written for this process

        Raises:
            LockHeld: If a live, non-stale owner holds the lock
            StaleLockDetected: If the existing record is stale
        """
        self.data_root.mkdir(parents=True, exist_ok=True)
        record = LockRecord.for_current_process()

        for _attempt in range(LOCK_CREATE_ATTEMPTS):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._raise_for_existing()
                # Record vanished between the create and the ownership read
                continue

            try:
                os.write(fd, record.to_text().encode("utf-8"))
                os.fsync(fd)
            except OSError:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)

            logger.info(
                "lock.acquired",
                path=str(self.path),
                pid=record.pid,
                hostname=record.hostname,
            )
            return record

        raise LockHeld(owner_pid=None, owner_host=None)

    def _raise_for_existing(self) -> None:
        """Raise the error describing an existing record, if it still exists."""
        try:
            existing = self.read_record()
        except MalformedLockRecord as exc:
            if self._written_recently():
                raise LockHeld(owner_pid=None, owner_host=None) from exc
            logger.warning(
                "lock.stale_detected", path=str(self.path), reason=exc.reason
            )
            raise StaleLockDetected(owner_pid=None, reason=exc.reason) from exc

        if existing is None:
            return

        if self.is_stale(existing):
            reason = self._stale_reason(existing)
            logger.warning(
                "lock.stale_detected",
                path=str(self.path),
                owner_pid=existing.pid,
                reason=reason,
            )
            raise StaleLockDetected(owner_pid=existing.pid, reason=reason)

        raise LockHeld(owner_pid=existing.pid, owner_host=existing.hostname)

    def _written_recently(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return time.time() - mtime < LOCK_WRITE_GRACE_SECONDS

    def release(self) -> None:
        """Release the lock held by the current process.

        A missing record is a no-op.

        Raises:
            NotOwner: If the record belongs to another process
            MalformedLockRecord: If the record cannot be parsed
        """
        record = self.read_record()
        if record is None:
            logger.debug("lock.release_noop", path=str(self.path))
            return

        if record.pid != os.getpid():
            raise NotOwner(owner_pid=record.pid, caller_pid=os.getpid())

        self.path.unlink(missing_ok=True)
        logger.info("lock.released", path=str(self.path), pid=record.pid)

    @contextmanager
    def held(self) -> Iterator[LockRecord]:
        """Hold the lock for the duration of a `with` block."""
        record = self.acquire()
        try:
            yield record
        finally:
            self.release()

    def with_lock(self, fn: Callable[[], T]) -> T:
        """Run `fn` while holding the lock, always releasing afterwards.

        Any exception raised by `fn` propagates after the lock is released.
        """
        with self.held():
            return fn()

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def force_clear(self) -> bool:
        """Remove the record regardless of owner.

        For explicit operator-invoked repair only; nothing calls this
        automatically.

        Returns:
            True if a record was removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.warning("lock.force_cleared", path=str(self.path))
        return True

    def clear_if_stale(self) -> bool:
        """Remove the record only if it is stale.

        Returns:
            True if a stale record was removed, False if there was none

        Raises:
            LockHeld: If the record belongs to a live owner
        """
        try:
            record = self.read_record()
        except MalformedLockRecord:
            return self.force_clear()

        if record is None:
            return False
        if not self.is_stale(record):
            raise LockHeld(owner_pid=record.pid, owner_host=record.hostname)
        return self.force_clear()
