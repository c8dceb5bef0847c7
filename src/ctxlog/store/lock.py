"""
Cross-process file locking for ctxlog.

Each data file has a marker file "<file>.lock" next to it. Holding the
lock means having created that marker; the filesystem's atomic
create-if-absent (O_CREAT | O_EXCL) is the only mutual exclusion, so the
lock works across independent processes and never consults in-memory
state.

Marker content (JSON):
    {"pid": 4242, "host": "worker-1", "started": 1735680000.5,
     "acquired_at": 1735689600.0, "token": "<hex>"}

"started" is the owning process's start time, so a marker whose pid has
since been reused by an unrelated process is recognised as orphaned.

Lifecycle:
    UNLOCKED -> acquire -> LOCKED -> release -> UNLOCKED
                               \\-> reclaimed as stale -> UNLOCKED

Staleness:
    A marker older than stale_after seconds is stale when its owner is a
    dead process on this host, or when the owner cannot be checked (marker
    written on another host, or unreadable). A local pid that is alive but
    started at a different time, or this very process holding a token it
    never issued, counts as dead. A live local owner keeps its lock
    regardless of age.

Security Note:
    Release and reclamation both delete the marker. They run under a
    short-lived FileLock on "<file>.lock.guard" and check the marker's token
    before unlinking, so two reclaimers racing on the same stale marker can
    never delete a fresh lock created in between.
"""

import json
import logging
import os
import random
import socket
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil
from filelock import FileLock

from ctxlog.errors import LockOwnershipError, LockTimeoutError, StorageWriteError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
GUARD_SUFFIX = ".guard"

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_STALE_SECONDS = 30.0
DEFAULT_POLL_SECONDS = 0.01
MAX_POLL_SECONDS = 0.2

# Start times closer than this are the same process
START_TIME_TOLERANCE_SECONDS = 1.0

# Tokens of markers created by this process and not yet released
_issued_tokens: set[str] = set()


# =============================================================================
# Lock Records
# =============================================================================


@dataclass(frozen=True)
class LockHandle:
    """
    Proof of a held lock, returned by acquire().

    Attributes:
        resource: The data file the lock protects
        marker: The marker file on disk
        token: Random value identifying this acquisition
        acquired_at: Wall-clock time of acquisition (epoch seconds)
    """

    resource: Path
    marker: Path
    token: str
    acquired_at: float


@dataclass(frozen=True)
class LockInfo:
    """
    Snapshot of a marker file as found on disk.

    pid, host and token are None when the marker could not be parsed; in
    that case acquired_at falls back to the marker's mtime.
    """

    marker: Path
    acquired_at: float
    pid: int | None = None
    host: str | None = None
    token: str | None = None
    started: float | None = None

    @property
    def readable(self) -> bool:
        return self.token is not None

    @property
    def age_seconds(self) -> float:
        return max(0.0, time.time() - self.acquired_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "marker": str(self.marker),
            "pid": self.pid,
            "host": self.host,
            "started": self.started,
            "acquired_at": self.acquired_at,
            "age_seconds": round(self.age_seconds, 3),
            "readable": self.readable,
        }


def marker_path(resource: Path | str) -> Path:
    """Marker file for a data file."""
    return Path(f"{resource}{LOCK_SUFFIX}")


def pid_alive(pid: int) -> bool:
    """Check whether a local process id is still running."""
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


def process_start_time(pid: int) -> float | None:
    """Start time of a local process (epoch seconds), or None if unknown."""
    if pid <= 0:
        return None
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def owner_alive(info: LockInfo) -> bool:
    """
    Decide whether the local process named in a marker still owns it.

    A reused pid is detected by comparing start times, and this process
    only owns markers whose token it issued itself.
    """
    if info.pid is None:
        return False
    if info.pid == os.getpid():
        return info.token in _issued_tokens
    if not pid_alive(info.pid):
        return False
    if info.started is not None:
        current = process_start_time(info.pid)
        if current is not None and abs(current - info.started) > START_TIME_TOLERANCE_SECONDS:
            return False
    return True


# =============================================================================
# Lock Manager
# =============================================================================


class LockManager:
    """
    Acquires and releases per-file locks.

    Usage:
        locks = LockManager()
        with locks.hold(Path(".ctxlog/decisions.ctx"), timeout=2.0):
            ...  # exclusive access to decisions.ctx

    A LockManager holds no lock state of its own; any number of instances
    in any number of processes coordinate through the marker files.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        stale_after: float = DEFAULT_STALE_SECONDS,
        poll_interval: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        """
        Args:
            timeout: Default seconds to wait in acquire()
            stale_after: Marker age after which reclamation is considered
            poll_interval: First backoff delay; doubles up to 200 ms
        """
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.host = socket.gethostname()

    def acquire(self, resource: Path | str, timeout: float | None = None) -> LockHandle:
        """
        Acquire the lock on a data file.

        Args:
            resource: Path of the data file
            timeout: Seconds to wait (defaults to the manager's timeout)

        Returns:
            A LockHandle to pass to release()

        Raises:
            LockTimeoutError: If the lock is still held at the deadline
            StorageWriteError: If the marker cannot be created
        """
        timeout = self.timeout if timeout is None else timeout
        resource = Path(resource)
        marker = marker_path(resource)
        deadline = time.monotonic() + timeout
        delay = self.poll_interval

        while True:
            token = uuid.uuid4().hex
            handle = self._try_create(resource, marker, token)
            if handle is not None:
                logger.debug("Acquired lock %s", marker)
                return handle

            if self.reclaim_if_stale(resource):
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                holder = self.inspect(resource)
                raise LockTimeoutError(
                    resource=str(resource),
                    timeout_seconds=timeout,
                    holder=holder.to_dict() if holder else None,
                )

            time.sleep(min(random.uniform(delay / 2, delay), remaining))
            delay = min(delay * 2, MAX_POLL_SECONDS)

    def release(self, handle: LockHandle) -> None:
        """
        Release a lock, deleting its marker.

        Raises:
            LockOwnershipError: If the marker is gone or now carries another
                token (the lock was reclaimed from under this handle)
        """
        with self._guard(handle.marker):
            _issued_tokens.discard(handle.token)
            info = self._read_marker(handle.marker)
            if info is None or info.token != handle.token:
                logger.warning(
                    "Lock %s no longer owned by this handle; leaving it in place",
                    handle.marker,
                )
                raise LockOwnershipError(resource=str(handle.resource), token=handle.token)
            try:
                handle.marker.unlink()
            except FileNotFoundError:
                raise LockOwnershipError(
                    resource=str(handle.resource), token=handle.token
                ) from None
        logger.debug("Released lock %s", handle.marker)

    @contextmanager
    def hold(self, resource: Path | str, timeout: float | None = None) -> Iterator[LockHandle]:
        """Context manager around acquire() and release()."""
        handle = self.acquire(resource, timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def inspect(self, resource: Path | str) -> LockInfo | None:
        """Read the current marker for a data file, or None if unlocked."""
        return self._read_marker(marker_path(resource))

    def is_stale(self, info: LockInfo) -> bool:
        """Decide whether a marker may be reclaimed."""
        if info.age_seconds <= self.stale_after:
            return False
        if info.pid is not None and info.host == self.host:
            return not owner_alive(info)
        return True

    def reclaim_if_stale(self, resource: Path | str) -> bool:
        """
        Delete the marker of a data file if it is stale.

        Returns:
            True if a stale marker was removed
        """
        marker = marker_path(resource)
        with self._guard(marker):
            info = self._read_marker(marker)
            if info is None or not self.is_stale(info):
                return False
            try:
                marker.unlink()
            except FileNotFoundError:
                return False

        logger.warning(
            "Reclaimed stale lock %s (pid=%s host=%s age=%.1fs)",
            marker,
            info.pid,
            info.host,
            info.age_seconds,
        )
        return True

    def list_locks(self, directory: Path | str) -> list[LockInfo]:
        """Return every marker currently present in a directory."""
        directory = Path(directory)
        if not directory.is_dir():
            return []
        infos = []
        for marker in sorted(directory.glob(f"*{LOCK_SUFFIX}")):
            info = self._read_marker(marker)
            if info is not None:
                infos.append(info)
        return infos

    def _try_create(self, resource: Path, marker: Path, token: str) -> LockHandle | None:
        """Attempt the atomic create; None if the marker already exists."""
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        except OSError as e:
            raise StorageWriteError(
                operation="lock",
                path=str(marker),
                underlying_error=str(e),
            ) from e

        acquired_at = time.time()
        pid = os.getpid()
        payload = json.dumps({
            "pid": pid,
            "host": self.host,
            "started": process_start_time(pid),
            "acquired_at": acquired_at,
            "token": token,
        })
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
        except OSError as e:
            marker.unlink(missing_ok=True)
            raise StorageWriteError(
                operation="lock",
                path=str(marker),
                underlying_error=str(e),
            ) from e

        _issued_tokens.add(token)
        return LockHandle(resource=resource, marker=marker, token=token, acquired_at=acquired_at)

    def _read_marker(self, marker: Path) -> LockInfo | None:
        try:
            stat = marker.stat()
            text = marker.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Cannot read lock marker %s: %s", marker, e)
            return LockInfo(marker=marker, acquired_at=time.time())

        try:
            data = json.loads(text)
            return LockInfo(
                marker=marker,
                acquired_at=float(data["acquired_at"]),
                pid=int(data["pid"]),
                host=str(data["host"]),
                token=str(data["token"]),
                started=None if data.get("started") is None else float(data["started"]),
            )
        except (ValueError, KeyError, TypeError, AttributeError):
            # Partially written or hand-edited marker: age by mtime
            return LockInfo(marker=marker, acquired_at=stat.st_mtime)

    @contextmanager
    def _guard(self, marker: Path) -> Iterator[None]:
        """Serialize marker deletion across processes."""
        guard = FileLock(f"{marker}{GUARD_SUFFIX}")
        try:
            guard.acquire()
        except OSError as e:
            raise StorageWriteError(
                operation="lock",
                path=guard.lock_file,
                underlying_error=str(e),
            ) from e
        try:
            yield
        finally:
            guard.release()
