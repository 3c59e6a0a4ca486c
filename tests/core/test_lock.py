"""Tests for the cross-process lock."""

import multiprocessing
import os
import subprocess
import sys
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dotkeep.core.errors import (
    LockHeld,
    MalformedLockRecord,
    NotOwner,
    StaleLockDetected,
)
from dotkeep.core.lock import FileLock, LockRecord, is_process_alive


def _write_record(lock: FileLock, pid: int, age: timedelta = timedelta(0)) -> None:
    record = LockRecord(
        pid=pid,
        timestamp=datetime.now(UTC).replace(microsecond=0) - age,
        hostname="other-host",
    )
    lock.path.parent.mkdir(parents=True, exist_ok=True)
    lock.path.write_text(record.to_text())


def _contend(data_root: str, start: object, results: object) -> None:
    lock = FileLock(Path(data_root))
    start.wait()  # type: ignore[attr-defined]
    try:
        lock.acquire()
    except LockHeld:
        results.put("held")  # type: ignore[attr-defined]
    except StaleLockDetected:
        results.put("stale")  # type: ignore[attr-defined]
    else:
        results.put("won")  # type: ignore[attr-defined]
        time.sleep(0.5)
        lock.release()


class TestLockRecord:
    """Test the on-disk record format."""

    def test_text_round_trip(self) -> None:
        """Test that to_text output parses back to the same record."""
        record = LockRecord.for_current_process()

        assert LockRecord.parse(record.to_text()) == record

    def test_three_line_format(self) -> None:
        """Test the record is pid, timestamp, hostname on separate lines."""
        record = LockRecord(
            pid=12345,
            timestamp=datetime(2025, 10, 7, 15, 1, 25, tzinfo=UTC),
            hostname="laptop.local",
        )

        assert record.to_text() == (
            "12345\n2025-10-07T15:01:25+00:00\nlaptop.local\n"
        )

    def test_naive_timestamp_is_utc(self) -> None:
        """Test that a timestamp without offset is read as UTC."""
        record = LockRecord.parse("42\n2025-10-07T15:01:25\nhost\n")

        assert record.timestamp.tzinfo is UTC

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "42\n",
            "abc\n2025-10-07T15:01:25\nhost\n",
            "42\nyesterday\nhost\n",
            "-1\n2025-10-07T15:01:25\nhost\n",
        ],
    )
    def test_malformed(self, text: str) -> None:
        """Test that unparseable records raise MalformedLockRecord."""
        with pytest.raises(MalformedLockRecord):
            LockRecord.parse(text)


class TestAcquireRelease:
    """Test acquiring and releasing the lock."""

    def test_acquire_writes_record(self, tmp_path: Path) -> None:
        """Test that acquire writes this process's record."""
        lock = FileLock(tmp_path)

        record = lock.acquire()

        assert lock.is_locked()
        assert lock.is_own_lock()
        assert record.pid == os.getpid()
        assert lock.read_record() == record

    def test_second_acquire_is_held(self, tmp_path: Path) -> None:
        """Test that a held lock cannot be taken again."""
        lock = FileLock(tmp_path)
        lock.acquire()

        with pytest.raises(LockHeld) as exc_info:
            FileLock(tmp_path).acquire()

        assert exc_info.value.owner_pid == os.getpid()

    def test_release_removes_record(self, tmp_path: Path) -> None:
        """Test that release deletes the record."""
        lock = FileLock(tmp_path)
        lock.acquire()

        lock.release()

        assert not lock.is_locked()

    def test_release_without_record_is_noop(self, tmp_path: Path) -> None:
        """Test that releasing an unheld lock does nothing."""
        FileLock(tmp_path).release()

    def test_release_by_non_owner(self, tmp_path: Path) -> None:
        """Test that only the owner can release."""
        lock = FileLock(tmp_path)
        _write_record(lock, pid=os.getpid() + 100000)

        with pytest.raises(NotOwner):
            lock.release()

        assert lock.is_locked()

    def test_with_lock_returns_value(self, tmp_path: Path) -> None:
        """Test that with_lock returns the function's result."""
        lock = FileLock(tmp_path)

        assert lock.with_lock(lambda: 42) == 42
        assert not lock.is_locked()

    def test_with_lock_releases_on_exception(self, tmp_path: Path) -> None:
        """Test that the lock is released when the function raises."""
        lock = FileLock(tmp_path)

        def boom() -> None:
            assert lock.is_own_lock()
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            lock.with_lock(boom)

        assert not lock.is_locked()


class TestStaleness:
    """Test stale lock detection."""

    def test_dead_owner_is_stale(self, tmp_path: Path) -> None:
        """Test that a record naming a dead process is reported stale."""
        lock = FileLock(tmp_path, liveness_check=lambda pid: False)
        _write_record(lock, pid=999999)

        with pytest.raises(StaleLockDetected) as exc_info:
            lock.acquire()

        assert exc_info.value.owner_pid == 999999
        assert "not running" in exc_info.value.reason
        # Never cleared automatically
        assert lock.is_locked()

    def test_old_record_is_stale_even_if_alive(self, tmp_path: Path) -> None:
        """Test that age alone makes a record stale."""
        lock = FileLock(tmp_path, liveness_check=lambda pid: True)
        _write_record(lock, pid=999999, age=timedelta(hours=2))

        with pytest.raises(StaleLockDetected, match="older than"):
            lock.acquire()

    def test_live_recent_owner_is_held(self, tmp_path: Path) -> None:
        """Test that a live, recent owner blocks acquisition."""
        lock = FileLock(tmp_path, liveness_check=lambda pid: True)
        _write_record(lock, pid=999999, age=timedelta(minutes=5))

        with pytest.raises(LockHeld) as exc_info:
            lock.acquire()

        assert exc_info.value.owner_host == "other-host"

    def test_malformed_old_record_is_stale(self, tmp_path: Path) -> None:
        """Test that an old unparseable record is reported stale."""
        lock = FileLock(tmp_path)
        lock.path.write_text("garbage")
        old = time.time() - 60
        os.utime(lock.path, (old, old))

        with pytest.raises(StaleLockDetected) as exc_info:
            lock.acquire()

        assert exc_info.value.owner_pid is None

    def test_malformed_fresh_record_is_held(self, tmp_path: Path) -> None:
        """Test that a record still being written is treated as held."""
        lock = FileLock(tmp_path)
        lock.path.write_text("")

        with pytest.raises(LockHeld) as exc_info:
            lock.acquire()

        assert exc_info.value.owner_pid is None

    def test_threshold_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that DOTKEEP_LOCK_STALE_SECONDS overrides the threshold."""
        monkeypatch.setenv("DOTKEEP_LOCK_STALE_SECONDS", "10")

        assert FileLock(tmp_path).stale_after == timedelta(seconds=10)

    def test_default_threshold(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the default staleness threshold is one hour."""
        monkeypatch.delenv("DOTKEEP_LOCK_STALE_SECONDS", raising=False)

        assert FileLock(tmp_path).stale_after == timedelta(hours=1)

    def test_explicit_zero_threshold_is_kept(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a zero threshold is honoured, not swapped for the default."""
        monkeypatch.setenv("DOTKEEP_LOCK_STALE_SECONDS", "600")

        lock = FileLock(tmp_path, stale_after=timedelta(0))

        assert lock.stale_after == timedelta(0)
        record = LockRecord.for_current_process()
        assert lock.is_stale(record, now=record.timestamp + timedelta(seconds=1))


class TestRepair:
    """Test operator-invoked lock removal."""

    def test_force_clear(self, tmp_path: Path) -> None:
        """Test that force_clear removes any record."""
        lock = FileLock(tmp_path)
        _write_record(lock, pid=os.getpid() + 100000)

        assert lock.force_clear() is True
        assert lock.force_clear() is False

    def test_clear_if_stale_refuses_live_owner(self, tmp_path: Path) -> None:
        """Test that a live owner's lock is not cleared."""
        lock = FileLock(tmp_path, liveness_check=lambda pid: True)
        _write_record(lock, pid=999999)

        with pytest.raises(LockHeld):
            lock.clear_if_stale()

        assert lock.is_locked()

    def test_clear_if_stale_removes_dead_owner(self, tmp_path: Path) -> None:
        """Test that a dead owner's lock is cleared and can be re-acquired."""
        lock = FileLock(tmp_path, liveness_check=lambda pid: False)
        _write_record(lock, pid=999999)

        assert lock.clear_if_stale() is True
        lock.acquire()
        assert lock.is_own_lock()

    def test_clear_if_stale_without_lock(self, tmp_path: Path) -> None:
        """Test that clearing with no record reports nothing removed."""
        assert FileLock(tmp_path).clear_if_stale() is False


class TestProcessLiveness:
    """Test the pid liveness check."""

    def test_current_process_is_alive(self) -> None:
        assert is_process_alive(os.getpid())

    def test_invalid_pid(self) -> None:
        assert not is_process_alive(0)
        assert not is_process_alive(-5)

    def test_exited_process_is_dead(self) -> None:
        """Test that a reaped child process is reported dead."""
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()

        assert not is_process_alive(child.pid)


@pytest.mark.skipif(sys.platform == "win32", reason="needs fork start method")
def test_exactly_one_process_wins_race(tmp_path: Path) -> None:
    """Test that concurrent acquirers on an empty data root get one winner."""
    ctx = multiprocessing.get_context("fork")
    contenders = 6
    start = ctx.Barrier(contenders)
    results = ctx.Queue()

    processes = [
        ctx.Process(target=_contend, args=(str(tmp_path), start, results))
        for _ in range(contenders)
    ]
    for process in processes:
        process.start()
    for process in processes:
        process.join(timeout=30)

    outcomes = [results.get(timeout=5) for _ in range(contenders)]

    assert outcomes.count("won") == 1
    assert "stale" not in outcomes
    assert not (tmp_path / ".lock").exists()
