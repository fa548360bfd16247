"""Cross-process file locks for the cache directory.

A lock is a small JSON file ``{pid, timestamp, hostname}`` created with
exclusive-create semantics. A lock whose PID is no longer alive is stale and
may be reclaimed by anyone. Liveness is checked with signal 0, which only
means something on the machine that wrote the lock: two hosts sharing a
cache directory over a network filesystem are not protected.

The file is written to a private temp file and hard-linked into place, so it
never exists half written. An unreadable lock younger than a few seconds is
treated as held rather than reclaimed.

Ownership is the ``(pid, timestamp)`` pair recorded at acquisition, so a
manager never deletes a lock that was force-acquired after it, even by
another manager in the same process.
"""

from __future__ import annotations

import asyncio
import atexit
import os
import socket
import sys
import tempfile
import time
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import TYPE_CHECKING, ClassVar, TypeVar

import structlog
from pydantic import ValidationError

from stati_isg.constants import (
    BUILD_LOCK_FILENAME,
    DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEV_SERVER_LOCK_FILENAME,
    MALFORMED_LOCK_GRACE_SECONDS,
)
from stati_isg.errors import BuildLockError, DevServerLockError, ErrorCode, StatiError
from stati_isg.models.lock import LockInfo

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from pathlib import Path

log = structlog.get_logger()

T = TypeVar("T")


def get_hostname() -> str:
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        log.debug("hostname_lookup_failed", exc_info=True)
        return "unknown"


def is_process_running(pid: int) -> bool:
    """Probe ``pid`` with signal 0: "no such process" means dead, anything else alive."""
    if sys.platform == "win32":
        # Signal 0 is CTRL_C_EVENT on Windows; never send it. Assume alive.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


class _LockFileManager:
    lock_filename: ClassVar[str]
    label: ClassVar[str]

    def __init__(self, cache_dir: Path, *, hostname: str | None = None) -> None:
        self.lock_path = cache_dir / self.lock_filename
        self._hostname = hostname
        self._owned: LockInfo | None = None

    @property
    def hostname(self) -> str:
        if self._hostname is None:
            self._hostname = get_hostname()
        return self._hostname

    @property
    def is_locked(self) -> bool:
        """True while this manager instance holds the lock."""
        return self._owned is not None

    # ------------------------------------------------------------------
    # Introspection (never raises)
    # ------------------------------------------------------------------

    def info(self) -> LockInfo | None:
        """Current lock contents, or ``None`` if missing, unreadable or malformed."""
        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except OSError:
            return None
        except UnicodeDecodeError:
            log.warning("lock_file_malformed", path=str(self.lock_path))
            return None
        if not raw.strip():
            return None
        try:
            return LockInfo.model_validate_json(raw)
        except ValidationError:
            log.warning("lock_file_malformed", path=str(self.lock_path))
            return None

    def is_held(self) -> bool:
        """True if a lock file exists and its owning process is alive."""
        try:
            lock = self.info()
            return lock is not None and is_process_running(lock.pid)
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self) -> None:
        """Delete the lock file if this manager still owns it. Never raises."""
        owned = self._owned
        if owned is None:
            return
        try:
            current = self.info()
            if _same_lock(current, owned):
                self.lock_path.unlink(missing_ok=True)
                log.debug(f"{self.label}_lock_released", path=str(self.lock_path))
            else:
                log.debug(
                    f"{self.label}_lock_release_skipped",
                    path=str(self.lock_path),
                    reason="not_owner",
                )
        except OSError:
            log.warning(f"{self.label}_lock_release_failed", path=str(self.lock_path), exc_info=True)
        finally:
            self._owned = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_lock_file(self) -> LockInfo:
        """Publish a complete lock file. Raises ``FileExistsError`` on a lost race.

        The JSON goes to a private temp file first and is hard-linked into
        place, so the lock never exists in a partially written state.
        """
        lock = LockInfo(
            pid=os.getpid(),
            timestamp=datetime.now(UTC).isoformat(),
            hostname=self.hostname,
        )
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self.lock_filename}.", suffix=".tmp", dir=self.lock_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(lock.model_dump_json(indent=2))
            os.link(tmp_name, self.lock_path)
        finally:
            with suppress(OSError):
                os.unlink(tmp_name)
        return lock

    def _recently_modified(self) -> bool:
        """True if the lock file is young enough that its owner may still be writing it."""
        try:
            mtime = self.lock_path.stat().st_mtime
        except OSError:
            return False
        return time.time() - mtime < MALFORMED_LOCK_GRACE_SECONDS

    def _ensure_cache_dir(self) -> None:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StatiError(
                ErrorCode.LOCK_FAILED,
                f"Cannot create cache directory {self.lock_path.parent}: {exc}",
                "Check that the cache directory path is writable and is not a file.",
            ) from exc

    def _remove_lock_file(self) -> None:
        with suppress(OSError):
            self.lock_path.unlink(missing_ok=True)

    def _reclaim(self, stale: LockInfo | None) -> None:
        """Remove a stale or malformed lock, unless it changed since it was read."""
        if _same_lock(self.info(), stale):
            self._remove_lock_file()


def _same_lock(a: LockInfo | None, b: LockInfo | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.pid == b.pid and a.timestamp == b.timestamp


class BuildLockManager(_LockFileManager):
    """Mutual exclusion for builds writing the manifest in one cache directory."""

    lock_filename = BUILD_LOCK_FILENAME
    label = "build"

    async def acquire(
        self,
        *,
        force: bool = False,
        timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Acquire the build lock, polling for up to ``timeout`` seconds.

        A live owner, or an unreadable lock written in the last few seconds,
        is waited on (unless ``force``). A dead owner or an older unreadable
        lock is reclaimed. Raises ``BuildLockError`` on timeout.
        """
        if self._owned is not None:
            return
        self._ensure_cache_dir()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            waiting = False
            if self.lock_path.exists():
                existing = self.info()
                if force:
                    log.warning(
                        "build_lock_forced",
                        path=str(self.lock_path),
                        pid=existing.pid if existing else None,
                    )
                    self._remove_lock_file()
                elif existing is None and self._recently_modified():
                    waiting = True  # Possibly an acquirer that has not finished writing
                elif existing is None:
                    log.warning("build_lock_malformed_reclaimed", path=str(self.lock_path))
                    self._reclaim(None)
                elif is_process_running(existing.pid):
                    waiting = True
                else:
                    log.warning(
                        "build_lock_stale_reclaimed",
                        path=str(self.lock_path),
                        pid=existing.pid,
                    )
                    self._reclaim(existing)

            if not waiting:
                try:
                    self._owned = self._create_lock_file()
                except FileExistsError:
                    pass  # Another process won the race; poll again
                except OSError as exc:
                    raise BuildLockError(
                        ErrorCode.LOCK_FAILED,
                        f"Failed to acquire build lock at {self.lock_path}: {exc}",
                        "Check that the cache directory is writable.",
                    ) from exc
                else:
                    log.debug("build_lock_acquired", path=str(self.lock_path))
                    return

            remaining = deadline - loop.time()
            if remaining <= 0:
                log.error("build_lock_timeout", path=str(self.lock_path), timeout=timeout)
                raise BuildLockError(
                    ErrorCode.LOCK_TIMEOUT,
                    f"Build lock acquisition timed out after {timeout:g}s. "
                    "Another build process may be running.",
                    "Use --force to override the lock.",
                )
            await asyncio.sleep(min(poll_interval, remaining))


@asynccontextmanager
async def build_lock(
    cache_dir: Path,
    *,
    force: bool = False,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    poll_interval: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    hostname: str | None = None,
) -> AsyncIterator[BuildLockManager]:
    """Hold the build lock for the duration of the ``async with`` block."""
    manager = BuildLockManager(cache_dir, hostname=hostname)
    try:
        await manager.acquire(force=force, timeout=timeout, poll_interval=poll_interval)
        yield manager
    finally:
        manager.release()


async def with_build_lock(
    cache_dir: Path,
    build_fn: Callable[[], Awaitable[T]],
    *,
    force: bool = False,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    poll_interval: float = DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
) -> T:
    """Run ``build_fn`` while holding the build lock; the lock is always released."""
    async with build_lock(cache_dir, force=force, timeout=timeout, poll_interval=poll_interval):
        return await build_fn()


class DevServerLockManager(_LockFileManager):
    """One dev server per directory.

    Unlike the build lock this does not poll: a live owner is an immediate
    error that says where the other server runs.
    """

    lock_filename = DEV_SERVER_LOCK_FILENAME
    label = "dev_server"

    def __init__(self, cache_dir: Path, *, hostname: str | None = None) -> None:
        super().__init__(cache_dir, hostname=hostname)
        self._exit_hook_registered = False

    def acquire(self) -> None:
        if self._owned is not None:
            return
        self._ensure_cache_dir()

        if self.lock_path.exists():
            existing = self.info()
            if existing is not None and is_process_running(existing.pid):
                same_host = existing.hostname == self.hostname
                location = "this machine" if same_host else existing.hostname
                raise DevServerLockError(
                    "A dev server is already running in this directory "
                    f"(PID {existing.pid} on {location}, started {existing.timestamp}).",
                    "Stop the existing dev server before starting a new one. "
                    f"If you're sure no dev server is running, delete: {self.lock_path}",
                    same_host=same_host,
                )
            if existing is None and self._recently_modified():
                raise DevServerLockError(
                    "Another dev server is starting in this directory.",
                    f"Wait a moment and try again, or delete: {self.lock_path}",
                )
            log.warning(
                "dev_server_lock_stale_reclaimed",
                path=str(self.lock_path),
                pid=existing.pid if existing else None,
            )
            self._reclaim(existing)

        try:
            self._owned = self._create_lock_file()
        except FileExistsError as exc:
            raise DevServerLockError(
                "Another dev server is starting in this directory.",
                f"Wait a moment and try again, or delete: {self.lock_path}",
            ) from exc

        log.debug("dev_server_lock_acquired", path=str(self.lock_path))
        if not self._exit_hook_registered:
            atexit.register(self.release)
            self._exit_hook_registered = True
