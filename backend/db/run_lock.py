"""
Single-writer guard for catalog maintenance runs.

The lock file lives next to the SQLite history database unless
CATALOG_RUN_LOCK_FILE points elsewhere.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout


_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_DEFAULT_LOCK_NAME = "catalog_maintenance.run.lock"


class MaintenanceRunLocked(RuntimeError):
    """Another maintenance run already holds the lock."""


def _extract_sqlite_file_path(database_url: Optional[str]) -> Optional[Path]:
    if not database_url:
        return None
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    return None


class MaintenanceRunLock:
    """File lock held for the whole duration of one scheduler run."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        timeout_seconds: float = 0.0,
    ) -> None:
        database_file = _extract_sqlite_file_path(database_url)
        if database_file is not None:
            default_lock_file = database_file.with_name(
                database_file.name + ".run.lock"
            )
        else:
            default_lock_file = Path(tempfile.gettempdir()) / _DEFAULT_LOCK_NAME

        configured = str(
            lock_file_path or os.getenv("CATALOG_RUN_LOCK_FILE", "")
        ).strip()
        self.lock_file_path = (
            Path(configured).expanduser().resolve() if configured else default_lock_file
        )

        env_timeout = os.getenv("CATALOG_RUN_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.timeout_seconds = max(0.0, timeout_seconds)
        self._lock: Optional[FileLock] = None

    async def acquire(self) -> None:
        """Wait for the lock off the event loop; raises MaintenanceRunLocked on timeout."""
        await asyncio.to_thread(self.acquire_sync)

    async def release(self) -> None:
        await asyncio.to_thread(self.release_sync)

    def acquire_sync(self) -> None:
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        # Acquired and released from different worker threads.
        lock = FileLock(
            str(self.lock_file_path), timeout=self.timeout_seconds, thread_local=False
        )
        try:
            lock.acquire()
        except Timeout as exc:
            raise MaintenanceRunLocked(
                "Another catalog maintenance run holds the lock: "
                f"{self.lock_file_path} ({self.timeout_seconds}s)"
            ) from exc
        self._lock = lock

    def release_sync(self) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def __enter__(self) -> "MaintenanceRunLock":
        self.acquire_sync()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_sync()
