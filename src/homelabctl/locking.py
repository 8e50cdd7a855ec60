"""File-based locking for mutating instance operations."""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "homelabctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    fd: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together (global first)."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across every acquired lock."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire advisory ``fcntl`` locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the runtime directory and default timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance directory."""
        handle = self._acquire(self.lock_path(name), timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide homelabctl lock."""
        handle = self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each instance lock."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    os.close(fd)
                    raise
                if time.monotonic() - start >= limit:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for lock {path}."
                    ) from exc
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - start) * 1000)
        payload = json.dumps({"pid": os.getpid(), "path": str(path)})
        os.ftruncate(fd, 0)
        os.write(fd, payload.encode("utf-8"))
        return LockHandle(path=path, wait_ms=wait_ms, fd=fd)

    @staticmethod
    def _release(handle: LockHandle) -> None:
        try:
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
        finally:
            os.close(handle.fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
