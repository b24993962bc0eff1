"""File-based locks serialising backup store access per environment."""
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

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


def _safe_name(name: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
    return cleaned.strip(".") or "unnamed"


class LockManager:
    """Hand out exclusive ``flock`` locks beneath *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, environment: str) -> Path:
        """Return the lock file used for *environment*."""
        return self.runtime_dir / "environments" / f"{_safe_name(environment)}.lock"

    @contextmanager
    def environment_lock(
        self,
        environment: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *environment* for the duration of the block."""
        path = self.lock_path(environment)
        effective_timeout = self.default_timeout if timeout is None else timeout
        with self._acquire(path, effective_timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise LockTimeoutError(
                            f"Timed out after {timeout:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
