"""Tests for the per-environment locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from mongofleet.locking import LockManager, LockTimeoutError


def test_environment_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "environments" / "staging.lock"
    with manager.environment_lock("staging") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.environment_lock("staging", timeout=0.2):
        pass


@pytest.mark.mutation_timeout
def test_environment_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.environment_lock("staging"):
        with pytest.raises(LockTimeoutError):
            with manager.environment_lock("staging", timeout=0.1):
                pass


def test_locks_are_independent_per_environment(tmp_path: Path) -> None:
    """Different environments never contend for the same lock."""
    manager = LockManager(tmp_path / "run", default_timeout=0.2)

    with manager.environment_lock("staging"):
        with manager.environment_lock("production") as handle:
            assert handle.path.name == "production.lock"


@pytest.mark.mutation_timeout
def test_lock_serialises_threads(tmp_path: Path) -> None:
    """A waiting thread acquires the lock once the holder releases it."""
    manager = LockManager(tmp_path / "run", default_timeout=2.0)
    order: list[str] = []
    held = threading.Event()

    def worker() -> None:
        held.wait()
        with manager.environment_lock("staging") as handle:
            order.append(f"second:{handle.wait_ms > 0}")

    thread = threading.Thread(target=worker)
    thread.start()
    with manager.environment_lock("staging"):
        held.set()
        threading.Event().wait(0.1)
        order.append("first")
    thread.join(timeout=5)

    assert order == ["first", "second:True"]


def test_lock_names_are_sanitised(tmp_path: Path) -> None:
    """Path separators in environment names cannot escape the lock directory."""
    manager = LockManager(tmp_path / "run")

    path = manager.lock_path("../etc/passwd")
    assert path.parent == tmp_path / "run" / "environments"
    assert "/" not in path.name
