"""
Unit tests for the lock manager.

Tests cover:
- Acquire/release lifecycle and marker contents
- Timeouts while another holder is live
- Staleness rules and reclamation
- Ownership checks on release
"""

import json
import os
import socket
import subprocess
import sys
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import psutil
import pytest
from filelock import FileLock

from ctxlog.errors import LockOwnershipError, LockTimeoutError
from ctxlog.store.lock import (
    GUARD_SUFFIX,
    LockInfo,
    LockManager,
    marker_path,
    pid_alive,
    process_start_time,
)


def dead_pid() -> int:
    """Return the pid of a process that has exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def write_marker(resource: Path, **overrides: object) -> Path:
    """Write a marker file by hand."""
    data = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "acquired_at": time.time(),
        "token": "f" * 32,
    }
    data.update(overrides)
    marker = marker_path(resource)
    marker.write_text(json.dumps(data))
    return marker


@pytest.fixture
def resource(temp_dir: Path) -> Path:
    """Path of a data file to lock."""
    return temp_dir / "decisions.ctx"


@pytest.fixture
def live_process() -> Iterator[subprocess.Popen]:
    """A sleeping child process, killed afterwards."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    try:
        yield proc
    finally:
        proc.kill()
        proc.wait()


class TestAcquireRelease:
    """Tests for the basic lifecycle."""

    def test_acquire_creates_marker(self, lock_manager: LockManager, resource: Path) -> None:
        """The marker records pid, host, time and token."""
        handle = lock_manager.acquire(resource)
        data = json.loads(handle.marker.read_text())
        assert handle.marker == marker_path(resource)
        assert data["pid"] == os.getpid()
        assert data["host"] == socket.gethostname()
        assert data["token"] == handle.token
        assert data["acquired_at"] == pytest.approx(handle.acquired_at)
        assert data["started"] == pytest.approx(psutil.Process().create_time())
        lock_manager.release(handle)

    def test_release_removes_marker(self, lock_manager: LockManager, resource: Path) -> None:
        """Releasing deletes the marker."""
        handle = lock_manager.acquire(resource)
        lock_manager.release(handle)
        assert not handle.marker.exists()
        assert lock_manager.inspect(resource) is None

    def test_hold_context_manager(self, lock_manager: LockManager, resource: Path) -> None:
        """hold() releases on exit, even after an exception."""
        with pytest.raises(RuntimeError):
            with lock_manager.hold(resource) as handle:
                assert handle.marker.exists()
                raise RuntimeError("boom")
        assert not marker_path(resource).exists()

    def test_tokens_are_unique(self, lock_manager: LockManager, resource: Path) -> None:
        """Each acquisition gets a fresh token."""
        first = lock_manager.acquire(resource)
        lock_manager.release(first)
        second = lock_manager.acquire(resource)
        lock_manager.release(second)
        assert first.token != second.token


class TestContention:
    """Tests for waiting on a held lock."""

    def test_timeout_when_held(self, lock_manager: LockManager, resource: Path) -> None:
        """A live holder makes acquire time out."""
        handle = lock_manager.acquire(resource)
        start = time.monotonic()
        with pytest.raises(LockTimeoutError) as exc_info:
            lock_manager.acquire(resource, timeout=0.2)
        elapsed = time.monotonic() - start
        assert 0.15 <= elapsed < 2.0
        assert exc_info.value.holder is not None
        assert exc_info.value.holder["pid"] == os.getpid()
        lock_manager.release(handle)

    def test_zero_timeout_fails_fast(self, lock_manager: LockManager, resource: Path) -> None:
        """timeout=0 makes a single attempt."""
        with lock_manager.hold(resource):
            with pytest.raises(LockTimeoutError):
                lock_manager.acquire(resource, timeout=0)

    def test_waiter_gets_lock_after_release(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """A waiting acquirer succeeds once the holder releases."""
        handle = lock_manager.acquire(resource)
        acquired = threading.Event()

        def waiter() -> None:
            with lock_manager.hold(resource, timeout=3.0):
                acquired.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.1)
        assert not acquired.is_set()
        lock_manager.release(handle)
        thread.join(timeout=5.0)
        assert acquired.is_set()

    def test_independent_resources(self, lock_manager: LockManager, temp_dir: Path) -> None:
        """Locks on different files do not interfere."""
        with lock_manager.hold(temp_dir / "a.ctx"):
            with lock_manager.hold(temp_dir / "b.ctx", timeout=0):
                pass


class TestStaleness:
    """Tests for stale-lock detection and reclamation."""

    def test_fresh_marker_not_stale(self, lock_manager: LockManager, resource: Path) -> None:
        """Young markers are never stale."""
        write_marker(resource, pid=dead_pid())
        info = lock_manager.inspect(resource)
        assert info is not None
        assert not lock_manager.is_stale(info)

    def test_old_marker_of_dead_process_is_stale(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """Old markers whose owner is gone are stale."""
        write_marker(resource, pid=dead_pid(), acquired_at=time.time() - 60)
        info = lock_manager.inspect(resource)
        assert info is not None
        assert lock_manager.is_stale(info)

    def test_old_marker_of_live_process_kept(
        self,
        lock_manager: LockManager,
        resource: Path,
        live_process: subprocess.Popen,
    ) -> None:
        """A live local owner keeps its lock regardless of age."""
        write_marker(
            resource,
            pid=live_process.pid,
            started=process_start_time(live_process.pid),
            acquired_at=time.time() - 600,
        )
        info = lock_manager.inspect(resource)
        assert info is not None
        assert info.started is not None
        assert not lock_manager.is_stale(info)
        assert lock_manager.reclaim_if_stale(resource) is False

    def test_marker_without_start_time_trusts_live_pid(
        self,
        lock_manager: LockManager,
        resource: Path,
        live_process: subprocess.Popen,
    ) -> None:
        """Markers lacking a start time fall back to the pid check."""
        write_marker(resource, pid=live_process.pid, acquired_at=time.time() - 600)
        info = lock_manager.inspect(resource)
        assert info is not None
        assert info.started is None
        assert not lock_manager.is_stale(info)

    def test_reused_pid_is_stale(
        self,
        lock_manager: LockManager,
        resource: Path,
        live_process: subprocess.Popen,
    ) -> None:
        """A live pid that started after the marker was written is not the owner."""
        started = process_start_time(live_process.pid)
        assert started is not None
        write_marker(
            resource,
            pid=live_process.pid,
            started=started - 3600,
            acquired_at=time.time() - 60,
        )
        info = lock_manager.inspect(resource)
        assert info is not None
        assert lock_manager.is_stale(info)

    def test_own_pid_with_foreign_token_is_stale(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """A marker naming this process but a token it never issued is orphaned."""
        write_marker(resource, pid=os.getpid(), token="dead" * 8, acquired_at=time.time() - 3600)
        info = lock_manager.inspect(resource)
        assert info is not None
        assert lock_manager.is_stale(info)

        handle = lock_manager.acquire(resource, timeout=0.5)
        assert json.loads(handle.marker.read_text())["token"] == handle.token
        lock_manager.release(handle)

    def test_own_held_lock_not_stale(self, resource: Path) -> None:
        """Locks this process holds survive any age threshold."""
        manager = LockManager(stale_after=0.0)
        with manager.hold(resource):
            time.sleep(0.01)
            info = manager.inspect(resource)
            assert info is not None
            assert not manager.is_stale(info)
            with pytest.raises(LockTimeoutError):
                manager.acquire(resource, timeout=0.05)

    def test_old_marker_from_other_host_is_stale(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """Owners on other hosts cannot be checked; age decides."""
        write_marker(resource, host="some-other-host", acquired_at=time.time() - 60)
        info = lock_manager.inspect(resource)
        assert info is not None
        assert lock_manager.is_stale(info)

    def test_unreadable_marker_ages_by_mtime(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """Garbage markers fall back to their modification time."""
        marker = marker_path(resource)
        marker.write_text("{not json")
        info = lock_manager.inspect(resource)
        assert info is not None
        assert not info.readable
        assert not lock_manager.is_stale(info)

        old = time.time() - 120
        os.utime(marker, (old, old))
        info = lock_manager.inspect(resource)
        assert info is not None
        assert lock_manager.is_stale(info)

    def test_stale_marker_reclaimed_by_acquire(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """acquire() reclaims a dead owner's marker without waiting it out."""
        write_marker(resource, pid=dead_pid(), acquired_at=time.time() - 60)
        start = time.monotonic()
        handle = lock_manager.acquire(resource, timeout=0.5)
        assert time.monotonic() - start < 0.5
        assert json.loads(handle.marker.read_text())["token"] == handle.token
        lock_manager.release(handle)

    def test_reclaim_if_stale(self, lock_manager: LockManager, resource: Path) -> None:
        """reclaim_if_stale reports whether it removed a marker."""
        assert lock_manager.reclaim_if_stale(resource) is False
        write_marker(resource, pid=dead_pid(), acquired_at=time.time() - 60)
        assert lock_manager.reclaim_if_stale(resource) is True
        assert lock_manager.inspect(resource) is None

    def test_reclaim_waits_for_guard(self, lock_manager: LockManager, resource: Path) -> None:
        """Reclamation runs only while holding the marker's guard file."""
        write_marker(resource, pid=dead_pid(), acquired_at=time.time() - 60)
        guard = FileLock(f"{marker_path(resource)}{GUARD_SUFFIX}")
        results: list[bool] = []

        def reclaim() -> None:
            results.append(lock_manager.reclaim_if_stale(resource))

        with guard:
            thread = threading.Thread(target=reclaim)
            thread.start()
            time.sleep(0.1)
            assert results == []
            assert marker_path(resource).exists()

        thread.join(timeout=5.0)
        assert results == [True]
        assert not marker_path(resource).exists()

    def test_pid_alive(self) -> None:
        """pid_alive distinguishes live and reaped processes."""
        assert pid_alive(os.getpid())
        assert not pid_alive(dead_pid())
        assert not pid_alive(0)

    def test_process_start_time(self) -> None:
        """Start times are known for live processes only."""
        assert process_start_time(os.getpid()) == pytest.approx(psutil.Process().create_time())
        assert process_start_time(dead_pid()) is None
        assert process_start_time(0) is None


class TestOwnership:
    """Tests for release ownership checks."""

    def test_release_after_reclaim_raises(
        self,
        lock_manager: LockManager,
        resource: Path,
    ) -> None:
        """A handle whose marker was replaced cannot release it."""
        handle = lock_manager.acquire(resource)
        write_marker(resource, token="0" * 32)
        with pytest.raises(LockOwnershipError):
            lock_manager.release(handle)
        # The other holder's marker is left in place
        assert json.loads(handle.marker.read_text())["token"] == "0" * 32

    def test_double_release_raises(self, lock_manager: LockManager, resource: Path) -> None:
        """Releasing twice is an ownership error."""
        handle = lock_manager.acquire(resource)
        lock_manager.release(handle)
        with pytest.raises(LockOwnershipError):
            lock_manager.release(handle)


class TestListLocks:
    """Tests for list_locks()."""

    def test_lists_markers(self, lock_manager: LockManager, temp_dir: Path) -> None:
        """Every marker in the directory is reported."""
        with lock_manager.hold(temp_dir / "a.ctx"), lock_manager.hold(temp_dir / "b.ctx"):
            infos = lock_manager.list_locks(temp_dir)
        assert [info.marker.name for info in infos] == ["a.ctx.lock", "b.ctx.lock"]
        assert all(isinstance(info, LockInfo) for info in infos)

    def test_missing_directory(self, lock_manager: LockManager, temp_dir: Path) -> None:
        """A missing directory has no locks."""
        assert lock_manager.list_locks(temp_dir / "nope") == []

    def test_to_dict(self, lock_manager: LockManager, resource: Path) -> None:
        """LockInfo serializes without the token."""
        with lock_manager.hold(resource):
            info = lock_manager.inspect(resource)
        assert info is not None
        data = info.to_dict()
        assert data["pid"] == os.getpid()
        assert "token" not in data
        assert data["readable"] is True
