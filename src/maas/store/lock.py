"""Cross-process lock file guarding the config document.

The lock is a separate file created with O_CREAT|O_EXCL; its body records the
owner pid and acquisition time. A lock older than `stale_after` seconds whose
owner is no longer alive is reclaimed. Reclaiming happens under an flock on a
sidecar guard file, and staleness is re-checked there, so a lock another
process has just taken over is never deleted.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from maas.errors import ConfigLockError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Check if process exists
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class FileLock:
    """Exclusive lock file with bounded retries and stale-lock reclaim."""

    def __init__(
        self,
        path: Path,
        *,
        timeout_ms: int = 2000,
        retries: int = 3,
        backoff_ms: int = 100,
        stale_after: float = 300.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.path = path
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.backoff_ms = backoff_ms
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self, timeout_ms: int | None = None) -> None:
        """Acquire or raise ConfigLockError after every retry is spent."""
        timeout = self.timeout_ms if timeout_ms is None else timeout_ms
        for attempt in range(self.retries + 1):
            if self._try_acquire_within(timeout / 1000.0):
                return
            if attempt < self.retries:
                delay = self.backoff_ms * (2**attempt) / 1000.0
                logger.warning(
                    "Config lock %s busy (attempt %d/%d), retrying in %.2fs",
                    self.path,
                    attempt + 1,
                    self.retries + 1,
                    delay,
                )
                time.sleep(delay)

        owner = self._read_owner()
        raise ConfigLockError(
            f"Could not acquire config lock {self.path} after {self.retries + 1} attempts"
            + (f" (held by pid {owner.get('pid')})" if owner else "")
        )

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Config lock %s vanished before release", self.path)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    # ── Internal ─────────────────────────────────────────────

    def _try_acquire_within(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            if self._try_create():
                return True
            if self._reclaim_if_stale():
                continue
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "acquired_at": time.time()}, f)
        self._held = True
        return True

    def _read_owner(self) -> dict:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def is_stale(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age < self.stale_after:
            return False
        pid = self._read_owner().get("pid")
        return not (isinstance(pid, int) and _pid_alive(pid))

    @property
    def guard_path(self) -> Path:
        return self.path.with_name(self.path.name + ".guard")

    @contextmanager
    def _reclaim_guard(self) -> Iterator[None]:
        """Serialise stale checks and removals across processes."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.guard_path, os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            os.close(fd)  # drops the flock

    def _reclaim_if_stale(self) -> bool:
        """Remove a stale lock. True when the caller should try to create again."""
        with self._reclaim_guard():
            if not self.path.exists():
                return True
            if not self.is_stale():
                return False
            logger.warning("Reclaiming stale config lock %s", self.path)
            self.path.unlink(missing_ok=True)
            return True
