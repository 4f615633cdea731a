"""Durable, lockable, versioned config document.

Every mutation goes through `update()`: lock -> read current -> write temp ->
atomic rename -> unlock. The document is re-read on every call; nothing is
cached between calls because other processes may have written in between.

Lock waits block the calling thread, so coroutines use `aload()` and
`aupdate()`, which run the same calls on a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from maas.errors import ConfigCorruptionError, ConfigurationError
from maas.store.document import SessionConfig
from maas.store.lock import FileLock
from maas.store.migrations import migrate

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
LOCK_FILENAME = "config.lock"
BACKUP_DIRNAME = "backups"

T = TypeVar("T")


class ConfigStore:
    """Read/write access to `<config_dir>/config.json`."""

    def __init__(
        self,
        config_dir: Path,
        *,
        lock_timeout_ms: int = 2000,
        lock_retries: int = 3,
        lock_backoff_ms: int = 100,
        stale_lock_seconds: float = 300.0,
        max_backups: int = 10,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.path = self.config_dir / CONFIG_FILENAME
        self.backup_dir = self.config_dir / BACKUP_DIRNAME
        self.max_backups = max_backups
        self._lock = FileLock(
            self.config_dir / LOCK_FILENAME,
            timeout_ms=lock_timeout_ms,
            retries=lock_retries,
            backoff_ms=lock_backoff_ms,
            stale_after=stale_lock_seconds,
        )
        self._mutex = threading.Lock()
        self._local = threading.local()

    @classmethod
    def from_settings(cls, config_dir: Path, settings) -> ConfigStore:
        return cls(
            config_dir,
            lock_timeout_ms=settings.lock_timeout_ms,
            lock_retries=settings.lock_retries,
            lock_backoff_ms=settings.lock_backoff_ms,
            stale_lock_seconds=settings.stale_lock_seconds,
            max_backups=settings.max_backups,
        )

    @property
    def lock_path(self) -> Path:
        return self._lock.path

    # ── Locking ──────────────────────────────────────────────

    @contextmanager
    def locked(self, timeout_ms: int | None = None) -> Iterator[None]:
        """Hold the config lock. Re-entrant within one thread of one store instance."""
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield
            finally:
                self._local.depth = depth
            return

        with self._mutex:
            self._lock.acquire(timeout_ms)
            self._local.depth = 1
            try:
                yield
            finally:
                self._local.depth = 0
                self._lock.release()

    def with_lock(self, timeout_ms: int | None, fn: Callable[[], T]) -> T:
        with self.locked(timeout_ms):
            return fn()

    # ── Read / write ─────────────────────────────────────────

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SessionConfig:
        """Read the live document, migrating, recovering or initialising as needed."""
        try:
            doc = self._read()
        except FileNotFoundError:
            with self.locked():
                if self.path.exists():
                    return self.load()
                fresh = SessionConfig()
                self.save(fresh)
                logger.info("Initialised config document %s (device=%s)", self.path, fresh.device_id)
                return fresh
        except ConfigCorruptionError as e:
            return self._recover(e)

        doc, changed = migrate(doc)
        if changed:
            with self.locked():
                # Another process may have migrated meanwhile; redo on current content
                try:
                    current, _ = migrate(self._read())
                except (FileNotFoundError, ConfigCorruptionError):
                    current = doc
                config = SessionConfig.from_dict(current)
                self.save(config)
                return config
        return SessionConfig.from_dict(doc)

    def save(self, config: SessionConfig) -> None:
        """Atomically replace the live document. Takes the lock if not already held."""
        with self.locked():
            self._write_atomic(self._serialize(config))

    def update(self, fn: Callable[[SessionConfig], None]) -> SessionConfig:
        """Lock, read the current document, apply `fn`, write it back."""
        with self.locked():
            config = self.load()
            fn(config)
            self.save(config)
            return config

    # ── Async access ─────────────────────────────────────────

    async def aload(self) -> SessionConfig:
        """`load()` on a worker thread."""
        return await asyncio.to_thread(self.load)

    async def aupdate(self, fn: Callable[[SessionConfig], None]) -> SessionConfig:
        """`update()` on a worker thread; `fn` runs there too."""
        return await asyncio.to_thread(self.update, fn)

    # ── Backup / restore ─────────────────────────────────────

    def backup(self) -> Path:
        """Copy the live document to a timestamped file under backups/."""
        if not self.path.exists():
            self.load()
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        dest = self.backup_dir / f"config-{ts}.json"
        counter = 2
        while dest.exists():
            dest = self.backup_dir / f"config-{ts}-{counter}.json"
            counter += 1
        shutil.copy2(self.path, dest)
        logger.info("Config backed up to %s", dest)
        self._prune_backups()
        return dest

    def restore(self, path: Path) -> SessionConfig:
        """Overwrite the live document with `path` via the atomic-write path."""
        path = Path(path)
        raw = path.read_bytes()
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ConfigCorruptionError(f"Backup {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigCorruptionError(f"Backup {path} does not contain a JSON object")
        migrate(dict(data))  # reject future versions before touching the live file

        with self.locked():
            self._write_atomic(raw)
        logger.info("Config restored from %s", path)
        return self.load()

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob("config-*.json"))

    def latest_backup(self) -> Path | None:
        backups = self.list_backups()
        return backups[-1] if backups else None

    # ── Internal ─────────────────────────────────────────────

    def _read(self) -> dict:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise ConfigCorruptionError(f"Cannot read {self.path}: {e}") from e
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigCorruptionError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigCorruptionError(f"{self.path} does not contain a JSON object")
        return data

    @staticmethod
    def _serialize(config: SessionConfig) -> bytes:
        return (json.dumps(config.to_dict(), indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    def _write_atomic(self, data: bytes) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{CONFIG_FILENAME}.", suffix=".tmp", dir=self.config_dir
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def _recover(self, error: ConfigCorruptionError) -> SessionConfig:
        """Restore from the latest backup, else start over with a warning."""
        with self.locked():
            try:
                self._read()
                return self.load()  # repaired by another process meanwhile
            except FileNotFoundError:
                return self.load()
            except ConfigCorruptionError:
                pass

            ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            quarantine = self.path.with_name(f"{CONFIG_FILENAME}.corrupt-{ts}")
            os.replace(self.path, quarantine)
            logger.warning("%s; moved aside to %s", error.message, quarantine)

            for backup in reversed(self.list_backups()):
                try:
                    return self.restore(backup)
                except (ConfigCorruptionError, ConfigurationError, OSError) as e:
                    logger.warning("Backup %s unusable: %s", backup, e)

            fresh = SessionConfig()
            self.save(fresh)
            logger.warning(
                "No usable backup; reinitialised config document (new device id %s)",
                fresh.device_id,
            )
            return fresh

    def _prune_backups(self) -> None:
        backups = self.list_backups()
        for old in backups[: max(0, len(backups) - self.max_backups)]:
            old.unlink(missing_ok=True)
