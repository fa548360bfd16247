"""Unit tests for the build lock and the dev-server lock."""

from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
import time
from typing import TYPE_CHECKING

import pytest

from stati_isg.errors import BuildLockError, DevServerLockError, ErrorCode, StatiError
from stati_isg.locks import (
    BuildLockManager,
    DevServerLockManager,
    build_lock,
    is_process_running,
    with_build_lock,
)

if TYPE_CHECKING:
    from pathlib import Path

DEAD_PID = 999_999


def _write_lock(path: Path, pid: int, hostname: str = "test-host") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"pid": pid, "timestamp": "2025-06-01T12:00:00+00:00", "hostname": hostname}),
        encoding="utf-8",
    )


def _age(path: Path, *, seconds: float) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


@pytest.fixture()
def dead_pids(monkeypatch: pytest.MonkeyPatch) -> None:
    """Treat DEAD_PID as an exited process, everything else as alive."""
    monkeypatch.setattr("stati_isg.locks.is_process_running", lambda pid: pid != DEAD_PID)


class TestIsProcessRunning:
    def test_current_process(self) -> None:
        assert is_process_running(os.getpid())


class TestBuildLockManager:
    async def test_acquire_writes_lock_file(self, cache_dir: Path) -> None:
        manager = BuildLockManager(cache_dir, hostname="host-a")
        await manager.acquire()

        info = manager.info()
        assert manager.is_locked
        assert info is not None
        assert info.pid == os.getpid()
        assert info.hostname == "host-a"
        assert manager.is_held()

        manager.release()
        assert not manager.lock_path.exists()
        assert not manager.is_locked

    async def test_second_acquirer_times_out(self, cache_dir: Path) -> None:
        holder = BuildLockManager(cache_dir)
        await holder.acquire()

        waiter = BuildLockManager(cache_dir)
        with pytest.raises(BuildLockError) as exc_info:
            await waiter.acquire(timeout=0.05, poll_interval=0.01)

        assert exc_info.value.code == ErrorCode.LOCK_TIMEOUT
        assert "--force" in exc_info.value.suggestion
        holder.release()

    async def test_waiter_gets_lock_after_release(self, cache_dir: Path) -> None:
        holder = BuildLockManager(cache_dir)
        await holder.acquire()
        waiter = BuildLockManager(cache_dir)

        async def release_soon() -> None:
            await asyncio.sleep(0.05)
            holder.release()

        release_task = asyncio.create_task(release_soon())
        await waiter.acquire(timeout=2.0, poll_interval=0.01)
        await release_task

        assert waiter.is_locked
        waiter.release()

    async def test_force_takes_live_lock(self, cache_dir: Path) -> None:
        holder = BuildLockManager(cache_dir)
        await holder.acquire()

        forcer = BuildLockManager(cache_dir)
        await forcer.acquire(force=True, timeout=0)
        forced_info = forcer.info()

        # The original holder no longer owns the file and must not delete it
        holder.release()
        assert forcer.lock_path.exists()
        assert forcer.info() == forced_info

        forcer.release()
        assert not forcer.lock_path.exists()

    async def test_stale_lock_reclaimed(self, cache_dir: Path, dead_pids: None) -> None:
        manager = BuildLockManager(cache_dir)
        _write_lock(manager.lock_path, DEAD_PID)

        await manager.acquire(timeout=0)

        info = manager.info()
        assert info is not None
        assert info.pid == os.getpid()
        manager.release()

    async def test_old_malformed_lock_reclaimed(self, cache_dir: Path) -> None:
        manager = BuildLockManager(cache_dir)
        manager.lock_path.parent.mkdir(parents=True)
        manager.lock_path.write_text("{not json", encoding="utf-8")
        _age(manager.lock_path, seconds=60)

        await manager.acquire(timeout=0)

        assert manager.is_locked
        manager.release()

    async def test_fresh_empty_lock_is_treated_as_held(self, cache_dir: Path) -> None:
        # Another acquirer has created the file but not written it yet
        cache_dir.mkdir()
        lock_path = cache_dir / ".build-lock"
        os.close(os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY))
        inode = lock_path.stat().st_ino

        manager = BuildLockManager(cache_dir)
        with pytest.raises(BuildLockError):
            await manager.acquire(timeout=0)

        assert not manager.is_locked
        assert lock_path.stat().st_ino == inode
        assert lock_path.read_text(encoding="utf-8") == ""

    async def test_lock_file_is_complete_and_temp_file_removed(self, cache_dir: Path) -> None:
        manager = BuildLockManager(cache_dir)
        await manager.acquire()

        assert [p.name for p in cache_dir.iterdir()] == [".build-lock"]
        raw = json.loads(manager.lock_path.read_text(encoding="utf-8"))
        assert raw["pid"] == os.getpid()
        manager.release()

    @pytest.mark.skipif(sys.platform == "win32", reason="liveness is not probed on Windows")
    async def test_lock_of_exited_process_reclaimed(self, cache_dir: Path) -> None:
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()
        assert is_process_running(child.pid) is False

        manager = BuildLockManager(cache_dir)
        _write_lock(manager.lock_path, child.pid)

        await manager.acquire(timeout=0)

        info = manager.info()
        assert info is not None
        assert info.pid == os.getpid()
        manager.release()

    async def test_live_foreign_lock_not_reclaimed(
        self, cache_dir: Path, dead_pids: None
    ) -> None:
        manager = BuildLockManager(cache_dir)
        _write_lock(manager.lock_path, 424242)

        with pytest.raises(BuildLockError):
            await manager.acquire(timeout=0)

        info = manager.info()
        assert info is not None
        assert info.pid == 424242

    async def test_cache_dir_is_a_file(self, cache_dir: Path) -> None:
        cache_dir.write_text("not a directory", encoding="utf-8")

        with pytest.raises(StatiError) as exc_info:
            await BuildLockManager(cache_dir).acquire(timeout=0)

        assert exc_info.value.code == ErrorCode.LOCK_FAILED

    def test_info_without_lock(self, cache_dir: Path) -> None:
        manager = BuildLockManager(cache_dir)
        assert manager.info() is None
        assert not manager.is_held()

    def test_release_without_acquire_is_noop(self, cache_dir: Path) -> None:
        manager = BuildLockManager(cache_dir)
        _write_lock(manager.lock_path, os.getpid())

        manager.release()

        assert manager.lock_path.exists()


class TestBuildLockContext:
    async def test_released_on_exception(self, cache_dir: Path) -> None:
        with pytest.raises(RuntimeError, match="render failed"):
            async with build_lock(cache_dir) as manager:
                assert manager.lock_path.exists()
                raise RuntimeError("render failed")

        assert not (cache_dir / ".build-lock").exists()

    async def test_with_build_lock_returns_result(self, cache_dir: Path) -> None:
        async def build() -> int:
            assert (cache_dir / ".build-lock").exists()
            return 42

        assert await with_build_lock(cache_dir, build) == 42
        assert not (cache_dir / ".build-lock").exists()


class TestDevServerLockManager:
    @pytest.fixture(autouse=True)
    def _no_atexit(self, monkeypatch: pytest.MonkeyPatch) -> list[object]:
        registered: list[object] = []
        monkeypatch.setattr("stati_isg.locks.atexit.register", registered.append)
        return registered

    def test_acquire_and_release(self, cache_dir: Path) -> None:
        manager = DevServerLockManager(cache_dir)
        manager.acquire()

        assert (cache_dir / ".dev-server-lock").exists()
        manager.release()
        assert not (cache_dir / ".dev-server-lock").exists()

    def test_exit_hook_registered_once(self, cache_dir: Path, _no_atexit: list[object]) -> None:
        manager = DevServerLockManager(cache_dir)
        manager.acquire()
        manager.release()
        manager.acquire()
        manager.release()

        assert _no_atexit == [manager.release]

    def test_second_server_same_host(self, cache_dir: Path) -> None:
        first = DevServerLockManager(cache_dir, hostname="laptop")
        first.acquire()

        with pytest.raises(DevServerLockError) as exc_info:
            DevServerLockManager(cache_dir, hostname="laptop").acquire()

        error = exc_info.value
        assert error.code == ErrorCode.DEV_SERVER_RUNNING
        assert error.same_host is True
        assert f"PID {os.getpid()} on this machine" in error.message
        assert ".dev-server-lock" in error.suggestion
        first.release()

    def test_second_server_other_host(self, cache_dir: Path) -> None:
        _write_lock(cache_dir / ".dev-server-lock", os.getpid(), hostname="build-box")

        with pytest.raises(DevServerLockError) as exc_info:
            DevServerLockManager(cache_dir, hostname="laptop").acquire()

        assert exc_info.value.same_host is False
        assert "on build-box" in exc_info.value.message

    def test_stale_lock_reclaimed(self, cache_dir: Path, dead_pids: None) -> None:
        _write_lock(cache_dir / ".dev-server-lock", DEAD_PID)

        manager = DevServerLockManager(cache_dir)
        manager.acquire()

        info = manager.info()
        assert info is not None
        assert info.pid == os.getpid()
        manager.release()

    def test_fresh_unreadable_lock_means_server_starting(self, cache_dir: Path) -> None:
        cache_dir.mkdir()
        lock_path = cache_dir / ".dev-server-lock"
        lock_path.write_text("", encoding="utf-8")

        with pytest.raises(DevServerLockError, match="starting"):
            DevServerLockManager(cache_dir).acquire()

        assert lock_path.exists()

    def test_old_unreadable_lock_reclaimed(self, cache_dir: Path) -> None:
        cache_dir.mkdir()
        lock_path = cache_dir / ".dev-server-lock"
        lock_path.write_text("garbage", encoding="utf-8")
        _age(lock_path, seconds=60)

        manager = DevServerLockManager(cache_dir)
        manager.acquire()

        assert manager.is_locked
        manager.release()
