"""Exclusive per-spec advisory lock.

The lock is a single JSON file created with ``O_CREAT | O_EXCL`` so exactly
one process can create it. An existing lock is *stale* when it is older than
its TTL or when its owner process is gone; a stale lock is only replaced when
the caller asks for a forced override.

Liveness probing is isolated behind :class:`ProcessLiveness` so platform
differences stay in one place.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import weakref
from pathlib import Path
from typing import Protocol

from .atomic_write import write_file_atomic
from .errors import ConcurrentExecutionError, StaleLockError
from .models import LockInfo

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 3_600
_SETTLE_ATTEMPTS = 20
_SETTLE_DELAY_SECONDS = 0.01


class ProcessLiveness(Protocol):
    """Capability answering whether a local process id is still running."""

    def is_alive(self, pid: int) -> bool:
        ...


class OsProcessLiveness:
    """Signal-0 probe on POSIX.

    ``os.kill`` on Windows terminates the target instead of probing it, so
    there every pid is reported alive and staleness falls back to age only.
    """

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        if os.name == "nt":
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return True
        return True


def read_lock_info(lock_path: Path) -> LockInfo | None:
    """Return the recorded lock holder, or ``None`` when there is no readable lock.

    Never raises for a missing, vanished or corrupt file; callers that only
    inspect state must not fail because a writer is mid-flight.
    """
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError):
        return None
    except OSError as exc:
        logger.warning("Unable to read lock file %s: %s", lock_path, exc)
        return None
    try:
        payload = json.loads(raw)
        return LockInfo(
            spec_id=str(payload["spec_id"]),
            pid=int(payload["pid"]),
            hostname=str(payload.get("hostname", "")),
            created_at=float(payload["created_at"]),
        )
    except (ValueError, KeyError, TypeError):
        return None


class FileLock:
    """Handle for a held lock. Release is idempotent and also runs on garbage collection."""

    def __init__(self, lock_path: Path, info: LockInfo) -> None:
        self.lock_path = lock_path
        self.info = info
        self._finalizer = weakref.finalize(self, _release_if_owner, lock_path, info)

    @classmethod
    def acquire(
        cls,
        lock_path: Path,
        spec_id: str,
        *,
        force: bool = False,
        ttl_seconds: float | None = None,
        liveness: ProcessLiveness | None = None,
    ) -> "FileLock":
        """Acquire the lock at *lock_path* for *spec_id*.

        Args:
            lock_path: Lock file location (inside the spec root).
            spec_id: Spec identifier recorded in the lock.
            force: Replace any existing lock unconditionally.
            ttl_seconds: Age after which a lock counts as stale.
            liveness: Process liveness probe (defaults to ``OsProcessLiveness``).

        Returns:
            A FileLock owned by the current process.

        Raises:
            ConcurrentExecutionError: A live, fresh lock exists and force is False.
            StaleLockError: A stale lock exists and force is False.
        """
        ttl = float(ttl_seconds if ttl_seconds is not None else DEFAULT_LOCK_TTL_SECONDS)
        probe = liveness if liveness is not None else OsProcessLiveness()
        info = LockInfo(spec_id=spec_id, pid=os.getpid(), hostname=socket.gethostname(), created_at=time.time())
        payload = json.dumps(
            {"spec_id": info.spec_id, "pid": info.pid, "hostname": info.hostname, "created_at": info.created_at},
            sort_keys=True,
        )
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            if not force:
                cls._raise_for_existing(lock_path, spec_id, ttl, probe)
            existing = read_lock_info(lock_path)
            logger.warning(
                "Forcing lock override for spec '%s' (previous PID %s)",
                spec_id,
                existing.pid if existing else "unknown",
            )
            write_file_atomic(lock_path, payload + "\n")
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
                handle.flush()
                os.fsync(handle.fileno())

        logger.info("Acquired lock for spec '%s' (PID %d)", spec_id, info.pid)
        return cls(lock_path, info)

    @staticmethod
    def _raise_for_existing(lock_path: Path, spec_id: str, ttl: float, probe: ProcessLiveness) -> None:
        existing = read_lock_info(lock_path)
        attempts = 0
        # The winner creates the file before writing its payload; give it a moment.
        while existing is None and lock_path.exists() and attempts < _SETTLE_ATTEMPTS:
            time.sleep(_SETTLE_DELAY_SECONDS)
            existing = read_lock_info(lock_path)
            attempts += 1
        if existing is None:
            # Unparseable (or vanished between open and read): treat as abandoned.
            raise StaleLockError(spec_id=spec_id, pid=0, age_seconds=0.0)
        age = max(0.0, time.time() - existing.created_at)
        if is_stale(existing, ttl_seconds=ttl, liveness=probe):
            raise StaleLockError(spec_id=spec_id, pid=existing.pid, age_seconds=age)
        raise ConcurrentExecutionError(spec_id=spec_id, pid=existing.pid, age_seconds=age)

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def release(self) -> None:
        """Remove the lock file if this handle still owns it. Safe to call repeatedly."""
        if self._finalizer.alive:
            self._finalizer()
            logger.info("Released lock for spec '%s'", self.info.spec_id)

    def __enter__(self) -> "FileLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.release()


def is_stale(info: LockInfo, *, ttl_seconds: float, liveness: ProcessLiveness, now: float | None = None) -> bool:
    """True when the lock outlived *ttl_seconds* or its local owner process is gone.

    The pid probe is only meaningful on the host that wrote the lock; locks
    recorded by another host expire by age alone.
    """
    current = now if now is not None else time.time()
    if current - info.created_at > ttl_seconds:
        return True
    if info.hostname and info.hostname != socket.gethostname():
        return False
    return not liveness.is_alive(info.pid)


def _release_if_owner(lock_path: Path, info: LockInfo) -> None:
    current = read_lock_info(lock_path)
    if current is None or current.pid != info.pid or current.created_at != info.created_at:
        return
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove lock file %s: %s", lock_path, exc)
