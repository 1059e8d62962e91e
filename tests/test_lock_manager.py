"""Tests for the lock manager facade."""

import asyncio
import os
import socket
from pathlib import Path
from unittest import mock

import pytest

from buildlock.config import LockConfig
from buildlock.core.identity import mutex_path_for, state_path_for
from buildlock.core.lock_manager import (
    LockManager,
    acquire_lock,
    build_cli_release_command,
    build_status_text,
    build_tool_release_command,
    format_duration,
    list_locks,
    release_all_locks,
    release_lock,
    validate_reason,
)
from buildlock.core.queue import write_state
from buildlock.errors import InvalidReasonError, LockQueueError, LockTimeoutError
from buildlock.models import LockSnapshot, LockState, MutexOwner

PROJECT = "/tmp/App.xcodeproj"
OTHER_PROJECT = "/tmp/Other.xcworkspace"


async def wait_for_depth(manager: LockManager, target: str, depth: int) -> None:
    """Poll until the target's queue reaches ``depth`` entries."""
    queue = manager._queue(target)
    for _ in range(200):
        state = queue.read()
        if state is not None and len(state.queue) == depth:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"queue for {target} never reached depth {depth}")


class TestValidateReason:
    """Tests for validate_reason function."""

    def test_strips_whitespace(self) -> None:
        """Surrounding whitespace is removed."""
        assert validate_reason("  Fix login bug  ", 160) == "Fix login bug"

    @pytest.mark.parametrize("reason", ["", "   ", "line one\nline two", "cr\rhere"])
    def test_rejects_empty_and_multiline(self, reason: str) -> None:
        """Empty and multi-line reasons are caller errors."""
        with pytest.raises(InvalidReasonError):
            validate_reason(reason, 160)

    def test_rejects_too_long(self) -> None:
        """Reasons over the limit are rejected."""
        assert validate_reason("x" * 10, 10) == "x" * 10
        with pytest.raises(InvalidReasonError, match="at most 10"):
            validate_reason("x" * 11, 10)


@pytest.mark.asyncio
class TestAcquire:
    """Tests for LockManager.acquire."""

    async def test_acquire_on_clean_directory(self, manager: LockManager) -> None:
        """First acquisition is granted immediately with depth 1."""
        acquisition = await manager.acquire(PROJECT, "Fix login bug", "build")
        lock = acquisition.lock
        assert lock.path == PROJECT
        assert lock.reason == "Fix login bug"
        assert lock.command == "build"
        assert lock.queue_position == 0
        assert lock.queue_depth == 1
        assert acquisition.blocked_by is None
        assert build_cli_release_command(PROJECT) in acquisition.status_text
        assert PROJECT in acquisition.status_text
        assert state_path_for(manager.lock_dir, PROJECT).exists()

    async def test_invalid_reason_touches_nothing(self, manager: LockManager) -> None:
        """Reason validation happens before any disk I/O."""
        with pytest.raises(InvalidReasonError):
            await manager.acquire(PROJECT, "two\nlines", "build")
        assert list(manager.lock_dir.iterdir()) == []

    async def test_waiter_records_blocker(self, manager: LockManager) -> None:
        """A blocked acquisition resolves after release and reports who held it."""
        await manager.acquire(PROJECT, "Fix login bug", "build")
        waiting = asyncio.create_task(manager.acquire(PROJECT, "Write tests", "test"))

        await wait_for_depth(manager, PROJECT, 2)
        await asyncio.sleep(0.05)
        assert not waiting.done()

        await manager.release(PROJECT)
        second = await asyncio.wait_for(waiting, timeout=5)

        assert second.blocked_by is not None
        assert second.blocked_by.reason == "Fix login bug"
        assert second.blocked_by.waited_ms > 0
        assert second.lock.reason == "Write tests"
        assert second.lock.queue_depth == 1
        assert "Waited" in second.status_text
        assert '"Fix login bug"' in second.status_text

    async def test_fifo_order(self, manager: LockManager) -> None:
        """Waiters are granted in the order they joined the queue."""
        await manager.acquire(PROJECT, "holder", "build")
        granted: list[str] = []

        async def worker(name: str) -> None:
            await manager.acquire(PROJECT, name, "build")
            granted.append(name)

        tasks = []
        for depth, name in enumerate(["A", "B", "C"], start=2):
            tasks.append(asyncio.create_task(worker(name)))
            await wait_for_depth(manager, PROJECT, depth)

        for expected in (["A"], ["A", "B"], ["A", "B", "C"]):
            await manager.release(PROJECT)
            for _ in range(500):
                if len(granted) == len(expected):
                    break
                await asyncio.sleep(0.01)
            assert granted == expected

        await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

    async def test_mutual_exclusion(self, manager: LockManager) -> None:
        """No two concurrent acquisitions hold the lock at once."""
        holders = 0
        peak = 0

        async def worker(n: int) -> None:
            nonlocal holders, peak
            await manager.acquire(PROJECT, f"worker {n}", "build")
            holders += 1
            peak = max(peak, holders)
            await asyncio.sleep(0.02)
            holders -= 1
            await manager.release(PROJECT)

        await asyncio.wait_for(asyncio.gather(*(worker(n) for n in range(4))), timeout=20)
        assert peak == 1
        assert manager.list_locks() == []

    async def test_queue_depth_accounting(self, manager: LockManager) -> None:
        """Depth counts every queued entry and shrinks on release."""
        await manager.acquire(PROJECT, "first", "build")
        waiters = [
            asyncio.create_task(manager.acquire(PROJECT, f"waiter {n}", "build"))
            for n in range(2)
        ]
        await wait_for_depth(manager, PROJECT, 3)
        assert manager.list_locks()[0].queue_depth == 3

        result = await manager.release(PROJECT)
        assert result.info is not None
        assert result.info.queue_depth == 3

        done, _ = await asyncio.wait(waiters, timeout=5, return_when=asyncio.FIRST_COMPLETED)
        assert len(done) == 1
        assert done.pop().result().lock.queue_depth == 2

        await manager.release(PROJECT)
        await asyncio.wait_for(asyncio.gather(*waiters), timeout=5)

    async def test_empty_command_still_excludes(self, manager: LockManager) -> None:
        """A holder with an empty command name keeps later callers queued."""
        await manager.acquire(PROJECT, "first", "")
        second = asyncio.create_task(manager.acquire(PROJECT, "second", ""))
        await wait_for_depth(manager, PROJECT, 2)
        assert not second.done()

        await manager.release(PROJECT)
        acquisition = await asyncio.wait_for(second, timeout=5)
        assert acquisition.lock.reason == "second"
        assert acquisition.blocked_by is not None
        assert acquisition.blocked_by.reason == "first"
        await manager.release(PROJECT)

    async def test_distinct_projects_do_not_block(self, manager: LockManager) -> None:
        """Locks on different projects are independent."""
        await manager.acquire(PROJECT, "first", "build")
        other = await asyncio.wait_for(manager.acquire(OTHER_PROJECT, "second", "build"), 2)
        assert other.blocked_by is None
        assert other.lock.queue_depth == 1

    async def test_max_wait_times_out_and_withdraws(self, manager: LockManager) -> None:
        """Exceeding max wait raises and removes the waiter from the queue."""
        await manager.acquire(PROJECT, "holder", "build")
        with pytest.raises(LockTimeoutError) as exc_info:
            await manager.acquire(PROJECT, "impatient", "build", max_wait=0.2)

        assert exc_info.value.blocked_by is not None
        assert exc_info.value.blocked_by.reason == "holder"
        remaining = manager._queue(PROJECT).read()
        assert remaining is not None
        assert [e.reason for e in remaining.queue] == ["holder"]

    async def test_max_wait_from_config(self, lock_dir: Path) -> None:
        """Configured max wait applies when the call does not override it."""
        manager = LockManager(
            LockConfig(lock_dir=lock_dir, poll_interval_seconds=0.2, max_wait_seconds=0.2)
        )
        await manager.acquire(PROJECT, "holder", "build")
        with pytest.raises(LockTimeoutError):
            await manager.acquire(PROJECT, "impatient", "build")

    async def test_cancelled_waiter_leaves_queue(self, manager: LockManager) -> None:
        """Cancelling a waiting acquisition withdraws its entry."""
        await manager.acquire(PROJECT, "holder", "build")
        waiting = asyncio.create_task(manager.acquire(PROJECT, "cancelled", "build"))
        await wait_for_depth(manager, PROJECT, 2)

        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        state = manager._queue(PROJECT).read()
        assert state is not None
        assert [e.reason for e in state.queue] == ["holder"]

    async def test_cancel_while_claiming_promotion(self, manager: LockManager) -> None:
        """Cancelling a promoted waiter blocked on the sentinel still withdraws it."""
        await manager.acquire(PROJECT, "holder", "build")
        waiting = asyncio.create_task(manager.acquire(PROJECT, "waiter", "build"))
        await wait_for_depth(manager, PROJECT, 2)

        queue = manager._queue(PROJECT)
        state = queue.read()
        assert state is not None
        mutex_path = mutex_path_for(queue.state_path)
        mutex_path.write_text(
            MutexOwner(pid=os.getpid(), hostname=socket.gethostname()).model_dump_json()
        )
        # Drop the holder behind the sentinel so the waiter wakes and spins on it
        write_state(queue.state_path, LockState(path=state.path, queue=state.queue[1:]))
        await asyncio.sleep(0.5)
        assert not waiting.done()

        waiting.cancel()
        await asyncio.sleep(0.05)
        mutex_path.unlink()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        assert queue.read() is None
        assert not mutex_path.exists()

    async def test_force_release_fails_waiters(self, manager: LockManager) -> None:
        """Waiters whose lock file is force-cleared fail loudly."""
        await manager.acquire(PROJECT, "holder", "build")
        waiting = asyncio.create_task(manager.acquire(PROJECT, "waiter", "build"))
        await wait_for_depth(manager, PROJECT, 2)

        manager.release_all_locks()
        with pytest.raises(LockQueueError):
            await asyncio.wait_for(waiting, timeout=5)


@pytest.mark.asyncio
class TestRelease:
    """Tests for LockManager.release."""

    async def test_release_without_holder(self, manager: LockManager) -> None:
        """Releasing an unlocked project reports nothing released."""
        result = await manager.release(PROJECT)
        assert result.released is False
        assert result.info is None

    async def test_release_removes_file(self, manager: LockManager) -> None:
        """Releasing the sole holder deletes the lock file."""
        acquisition = await manager.acquire(PROJECT, "Fix login bug", "build")
        result = await manager.release(PROJECT)
        assert result.released is True
        assert result.info is not None
        assert result.info.reason == "Fix login bug"
        assert result.info.lock_id == acquisition.lock.lock_id
        assert not state_path_for(manager.lock_dir, PROJECT).exists()

    async def test_second_release_is_noop(self, manager: LockManager) -> None:
        """Releasing twice reports nothing the second time."""
        await manager.acquire(PROJECT, "Fix login bug", "build")
        assert (await manager.release(PROJECT)).released is True
        second = await manager.release(PROJECT)
        assert second.released is False
        assert second.info is None


@pytest.mark.asyncio
class TestListAndReleaseAll:
    """Tests for list_locks and release_all_locks."""

    async def test_list_shows_current_holder(self, manager: LockManager) -> None:
        """After a hand-over, the list shows the new holder."""
        await manager.acquire(PROJECT, "Fix login bug", "build")
        waiting = asyncio.create_task(manager.acquire(PROJECT, "Write tests", "test"))
        await wait_for_depth(manager, PROJECT, 2)
        await manager.release(PROJECT)
        await asyncio.wait_for(waiting, timeout=5)

        locks = manager.list_locks()
        assert len(locks) == 1
        assert locks[0].path == PROJECT
        assert locks[0].reason == "Write tests"
        assert locks[0].command == "test"

    async def test_list_skips_corrupt_files(self, manager: LockManager) -> None:
        """Unreadable lock files are not reported."""
        await manager.acquire(PROJECT, "valid", "build")
        (manager.lock_dir / "broken-0000.yaml").write_text("garbage")
        assert [lock.reason for lock in manager.list_locks()] == ["valid"]

    def test_list_without_directory(self, tmp_path: Path) -> None:
        """A missing lock directory lists nothing."""
        manager = LockManager(LockConfig(lock_dir=tmp_path / "absent"))
        assert manager.list_locks() == []

    async def test_release_all(self, manager: LockManager) -> None:
        """Force release clears every project and its sentinel files."""
        await manager.acquire(PROJECT, "first", "build")
        await manager.acquire(OTHER_PROJECT, "second", "build")
        stray = state_path_for(manager.lock_dir, PROJECT)
        (stray.parent / f"{stray.name}.mutex").write_text("")
        (stray.parent / f"{stray.name}.abcd.tmp").write_text("")

        result = manager.release_all_locks()

        assert result.released == 2
        assert {lock.path for lock in result.details} == {PROJECT, OTHER_PROJECT}
        assert manager.list_locks() == []
        assert list(manager.lock_dir.iterdir()) == []
        assert (await manager.release(PROJECT)).released is False
        assert (await manager.release(OTHER_PROJECT)).released is False

    def test_release_all_when_empty(self, manager: LockManager) -> None:
        """Nothing to clear reports zero."""
        result = manager.release_all_locks()
        assert result.released == 0
        assert result.details == []


@pytest.mark.asyncio
class TestModuleFunctions:
    """Tests for the environment-configured module-level contract."""

    async def test_four_call_contract(self, lock_dir: Path) -> None:
        """Module functions use BUILDLOCK_LOCK_DIR from the environment."""
        acquisition = await acquire_lock(PROJECT, "Fix login bug", "build")
        assert Path(acquisition.lock.file_path).parent == lock_dir.resolve()
        assert [lock.reason for lock in list_locks()] == ["Fix login bug"]

        released = await release_lock(PROJECT)
        assert released.released is True

        await acquire_lock(OTHER_PROJECT, "other", "build")
        assert release_all_locks().released == 1


class TestFormatting:
    """Tests for status text helpers."""

    def make_lock(self, depth: int = 1) -> LockSnapshot:
        """Create a snapshot for formatting tests."""
        return LockSnapshot.model_validate(
            {
                "file_path": "/locks/app.yaml",
                "file_name": "app.yaml",
                "path": PROJECT,
                "reason": "Fix login bug",
                "command": "build",
                "locked_at": "2026-10-18T09:00:00+00:00",
                "lock_id": "lock-1",
                "version": 2,
                "queue_depth": depth,
                "queue_position": 0,
            }
        )

    @pytest.mark.parametrize(
        ("ms", "expected"),
        [
            (0, "0ms"),
            (999, "999ms"),
            (1000, "1s"),
            (59_400, "59s"),
            (61_000, "1m 1s"),
            (3_723_000, "1h 2m 3s"),
        ],
    )
    def test_format_duration(self, ms: int, expected: str) -> None:
        """Durations are rendered at a human scale."""
        assert format_duration(ms) == expected

    def test_release_commands(self) -> None:
        """Release instructions quote the project path."""
        assert build_tool_release_command(PROJECT) == (
            'release_lock({"project": "/tmp/App.xcodeproj"})'
        )
        assert build_cli_release_command(PROJECT) == (
            "buildlock release --project /tmp/App.xcodeproj"
        )
        assert build_cli_release_command("/tmp/My App.xcodeproj") == (
            "buildlock release --project '/tmp/My App.xcodeproj'"
        )

    def test_status_text_single_holder(self) -> None:
        """Status text describes the lock and how to release it."""
        text = build_status_text(PROJECT, self.make_lock(), "build")
        assert text.startswith("🔐 Exclusive Build Lock")
        assert "Queue depth: 1 (no additional workers)" in text
        assert "Lock ID: lock-1" in text
        assert build_tool_release_command(PROJECT) in text
        assert "Waited" not in text

    def test_status_text_build_and_run(self) -> None:
        """The build-and-run command gets its own title."""
        text = build_status_text(PROJECT, self.make_lock(depth=3), "build_and_run")
        assert text.startswith("🔐 Exclusive Build & Run Lock")
        assert "Queue depth: 3 (2 waiting)" in text


class TestDirectoryPermissions:
    """Tests for lock directory creation."""

    def test_creates_missing_directory(self, tmp_path: Path) -> None:
        """The lock directory is created on first use."""
        lock_dir = tmp_path / "nested" / "locks"
        manager = LockManager(LockConfig(lock_dir=lock_dir))
        manager._queue(PROJECT)
        assert lock_dir.is_dir()

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores permissions")
    @pytest.mark.asyncio
    async def test_permission_errors_propagate(self, tmp_path: Path) -> None:
        """Unexpected filesystem errors reach the caller."""
        lock_dir = tmp_path / "locks"
        lock_dir.mkdir()
        lock_dir.chmod(0o500)
        manager = LockManager(LockConfig(lock_dir=lock_dir, mutex_retry_seconds=0.01))
        try:
            with (
                mock.patch("asyncio.sleep", side_effect=AssertionError("spun")),
                pytest.raises(PermissionError),
            ):
                await manager.acquire(PROJECT, "no access", "build")
        finally:
            lock_dir.chmod(0o700)
