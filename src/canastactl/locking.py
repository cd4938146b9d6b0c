"""Cross-process locking for mutating canastactl commands.

Locks are plain files under the runtime directory guarded with ``fcntl.flock``.
Each lock file carries a small JSON payload (pid, path, acquisition time) so
operators can see who holds a lock; the file stays behind after release for
diagnostics but no longer blocks anyone.

Mutations always take the global ``canastactl.lock`` first and then one
``<installation>.lock`` per installation they touch, in sorted order, which
keeps concurrent commands from deadlocking each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "canastactl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock file."""

    path: Path
    wait_ms: int
    fd: int

    def release(self) -> None:
        """Release the lock and close the underlying descriptor."""
        try:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        finally:
            os.close(self.fd)


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together by :meth:`LockManager.mutate_instances`."""

    handles: list[LockHandle]
    wait_ms: int


class LockManager:
    """Acquire global and per-installation locks."""

    def __init__(self, run_dir: Path, *, default_timeout: float = 30.0) -> None:
        """Remember where lock files live and the default timeout."""
        self.run_dir = Path(run_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.run_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        handle = self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for installation *name* for the duration of the block."""
        handle = self._acquire(self.lock_path(name), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock and then every named installation lock."""
        ordered = sorted({name for name in names if name})
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in ordered:
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles, wait_ms=sum(item.wait_ms for item in handles))

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else float(timeout)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - started >= limit:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for lock {path}."
                    ) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - started) * 1000)
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))
        return LockHandle(path=path, wait_ms=wait_ms, fd=fd)


__all__ = ["GLOBAL_LOCK_NAME", "LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
