"""Advisory file locks serialising writers of the package tree.

Locks live under ``<runtime_dir>/locks`` on the controlling machine and are
keyed by ``(host, component, basename)`` for link swaps and by
``(host, component, version)`` for unpacks. Lock files are left in place
after release; they only hold diagnostics (pid, path, acquisition time).
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Details of an acquired lock."""

    path: Path
    wait_ms: int


def _safe(part: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", part) or "_"


class LockManager:
    """Acquire ``fcntl`` locks with a polling timeout."""

    poll_interval = 0.05

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.root = runtime_dir.expanduser() / "locks"
        self.default_timeout = default_timeout

    def path_for(self, *parts: str) -> Path:
        """Return the lock file path for the key *parts*."""
        return self.root / ("--".join(_safe(part) for part in parts) + ".lock")

    @contextmanager
    def acquire(self, *parts: str, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold an exclusive lock for the key *parts*."""
        path = self.path_for(*parts)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(self.poll_interval)
            wait_ms = int((time.monotonic() - start) * 1000)
            payload = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(payload).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def activation_lock(
        self,
        host: str,
        component: str,
        basename: str,
        *,
        timeout: float | None = None,
    ) -> AbstractContextManager[LockHandle]:
        """Lock the base link ``basename`` of *component* on *host*."""
        return self.acquire("link", host, component, basename, timeout=timeout)

    def install_lock(
        self,
        host: str,
        component: str,
        version: str,
        *,
        timeout: float | None = None,
    ) -> AbstractContextManager[LockHandle]:
        """Lock the version directory ``version`` of *component* on *host*."""
        return self.acquire("install", host, component, version, timeout=timeout)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
