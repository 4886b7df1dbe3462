"""Advisory file locks guarding the registry read-modify-write cycle."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import SermanError

GLOBAL_LOCK_NAME = "serman.lock"


class LockTimeoutError(SermanError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire ``flock`` based locks under a runtime directory.

    The lock file stays on disk after release and carries the pid of the last
    holder for diagnostics. Locks are not re-entrant: acquiring the same lock
    twice from one process blocks until the timeout expires.
    """

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def lock_path(self, name: str = GLOBAL_LOCK_NAME) -> Path:
        """Return the path of the lock file called *name*."""
        return self.runtime_dir / name

    @contextmanager
    def registry_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global registry lock for the duration of the block."""
        with self._acquire(self.lock_path(), timeout=timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, *, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise SermanError(f"Unable to open lock file {path}: {exc}") from exc
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - started >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:g}s waiting for lock {path}. "
                            "Another serman command may be running."
                        ) from exc
                    time.sleep(self.poll_interval)
            wait_ms = int((time.monotonic() - started) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockHandle", "LockManager", "LockTimeoutError", "GLOBAL_LOCK_NAME"]
