"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from homelabctl.locking import GLOBAL_LOCK_NAME, LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "mysql-dev.lock"
    with manager.instance_lock("mysql-dev") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("mysql-dev", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("mysql-dev"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("mysql-dev", timeout=0.1):
                pass


def test_global_lock_blocks_second_holder(tmp_path: Path) -> None:
    """The global lock is exclusive as well."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        assert (tmp_path / "run" / GLOBAL_LOCK_NAME).exists()
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["mysql-dev", "mysql-dev", "wordpress-blog"]) as bundle:
        assert bundle.wait_ms >= 0
        paths = [handle.path.name for handle in bundle.handles]
        assert paths == [GLOBAL_LOCK_NAME, "mysql-dev.lock", "wordpress-blog.lock"]


def test_lock_names_are_flattened(tmp_path: Path) -> None:
    """Slashes in a lock name cannot escape the runtime directory."""
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path("mysql/dev") == tmp_path / "run" / "mysql-dev.lock"
