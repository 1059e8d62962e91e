"""Lock manager for exclusive access to the IDE build engine.

Independent processes queue for a per-project lock that lives entirely on
disk: one lock file per project holds a FIFO queue whose head is the
current holder. Absence of the file means the project is unlocked.

Typical use::

    manager = LockManager(load_config())
    acquisition = await manager.acquire(project, "Fix login bug", "build")
    ...
    await manager.release(project)
"""

import asyncio
import json
import logging
import shlex
import time
from pathlib import Path

from ..config import LockConfig, load_config
from ..constants import (
    BUILD_AND_RUN_COMMAND,
    CLI_NAME,
    MUTEX_SUFFIX,
    STATE_SUFFIX,
    TEMP_SUFFIX,
    TOOL_RELEASE_NAME,
)
from ..errors import InvalidReasonError, LockTimeoutError
from ..models import (
    BlockedLockInfo,
    LockAcquisition,
    LockSnapshot,
    LockState,
    QueueEntry,
    ReleaseAllResult,
    ReleaseResult,
)
from .identity import mutex_path_for, state_path_for
from .queue import LockQueue, read_state
from .waiter import wait_until_head

logger = logging.getLogger(__name__)


def validate_reason(reason: str, max_length: int) -> str:
    """Validate a lock reason and return it stripped.

    Raises:
        InvalidReasonError: If the reason is empty, multi-line, or too long
    """
    if not isinstance(reason, str) or not reason.strip():
        raise InvalidReasonError("Lock reason must be a non-empty string")
    if "\n" in reason or "\r" in reason:
        raise InvalidReasonError("Lock reason must be a single line")
    cleaned = reason.strip()
    if len(cleaned) > max_length:
        raise InvalidReasonError(
            f"Lock reason must be at most {max_length} characters (got {len(cleaned)})"
        )
    return cleaned


def to_snapshot(
    state_path: Path,
    entry: QueueEntry,
    queue_position: int,
    queue_depth: int,
    state: LockState,
) -> LockSnapshot:
    """Build a caller-facing snapshot of one queue entry."""
    return LockSnapshot(
        file_path=str(state_path),
        file_name=state_path.name,
        path=state.path,
        reason=entry.reason,
        command=entry.command,
        locked_at=entry.locked_at or entry.created_at,
        lock_id=entry.id,
        version=state.version,
        queue_depth=queue_depth,
        queue_position=queue_position,
    )


def head_snapshot(state_path: Path, state: LockState) -> LockSnapshot:
    """Snapshot of the holder of a non-empty state."""
    return to_snapshot(state_path, state.queue[0], 0, len(state.queue), state)


def format_duration(ms: int) -> str:
    """Format milliseconds as ``850ms``, ``42s``, ``3m 5s`` or ``1h 2m 3s``."""
    if ms < 1000:
        return f"{ms}ms"
    seconds = round(ms / 1000)
    if seconds < 60:
        return f"{seconds}s"
    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes >= 60:
        hours, remaining_minutes = divmod(minutes, 60)
        return f"{hours}h {remaining_minutes}m {remaining_seconds}s"
    return f"{minutes}m {remaining_seconds}s"


def build_tool_release_command(target: str) -> str:
    """Release instruction for programmatic (tool-call) callers."""
    return f"{TOOL_RELEASE_NAME}({json.dumps({'project': target})})"


def build_cli_release_command(target: str) -> str:
    """Release instruction for a shell."""
    return f"{CLI_NAME} release --project {shlex.quote(target)}"


def build_status_text(
    target: str,
    lock: LockSnapshot,
    command: str,
    blocked_by: BlockedLockInfo | None = None,
) -> str:
    """Compose the human-readable block describing a granted lock."""
    title = (
        "🔐 Exclusive Build & Run Lock"
        if command == BUILD_AND_RUN_COMMAND
        else "🔐 Exclusive Build Lock"
    )
    waiting = (
        "no additional workers" if lock.queue_depth == 1 else f"{lock.queue_depth - 1} waiting"
    )
    lines = [
        title,
        f"  • Project: {target}",
        f"  • Reason: {lock.reason}",
        f"  • Command: {command}",
        f"  • Queue depth: {lock.queue_depth} ({waiting})",
        f"  • Lock ID: {lock.lock_id}",
        f"  • Locked at: {lock.locked_at.isoformat()}",
        f"  • Release via tool: {build_tool_release_command(target)}",
        f"  • Release via CLI: {build_cli_release_command(target)}",
        "  • Release immediately if you are only reviewing logs or build artifacts; "
        "idle locks block other workers.",
        "Release this lock after you finish inspecting logs or simulator state "
        "so other workers can continue.",
    ]
    if blocked_by is not None and blocked_by.waited_ms > 0:
        blocker = blocked_by.reason or "unspecified work"
        lines.append(
            f"⏳ Waited {format_duration(blocked_by.waited_ms)} for lock held by "
            f'"{blocker}" (locked {blocked_by.locked_at.isoformat()}).'
        )
    return "\n".join(lines)


class LockManager:
    """Acquire, release and inspect project locks under one lock directory."""

    def __init__(self, config: LockConfig | None = None) -> None:
        self.config = config or load_config()

    @property
    def lock_dir(self) -> Path:
        return self.config.lock_dir

    def _ensure_lock_dir(self) -> Path:
        self.lock_dir.mkdir(parents=True, exist_ok=True, mode=0o755)
        return self.lock_dir

    def _queue(self, target: str) -> LockQueue:
        return LockQueue(
            state_path_for(self._ensure_lock_dir(), target),
            target,
            retry_delay=self.config.mutex_retry_seconds,
            stale_after=self.config.mutex_stale_seconds,
        )

    def _state_files(self) -> list[Path]:
        if not self.lock_dir.exists():
            return []
        return sorted(self.lock_dir.glob(f"*{STATE_SUFFIX}"))

    async def acquire(
        self,
        target: str,
        reason: str,
        command: str,
        max_wait: float | None = None,
    ) -> LockAcquisition:
        """Wait in line for the lock on ``target`` and return once it is held.

        Args:
            target: Project path to lock
            reason: Single-line description of the work
            command: Operation name requesting the lock
            max_wait: Seconds to wait before giving up (defaults to config;
                None waits indefinitely)

        Returns:
            The granted lock, plus who held it if this call had to wait

        Raises:
            InvalidReasonError: If ``reason`` is invalid (before any disk I/O)
            LockTimeoutError: If ``max_wait`` elapses first
        """
        reason = validate_reason(reason, self.config.max_reason_length)
        if max_wait is None:
            max_wait = self.config.max_wait_seconds

        queue = self._queue(target)
        entry = QueueEntry(reason=reason, command=command)
        blocked_by: BlockedLockInfo | None = None
        wait_start: float | None = None

        try:
            while True:
                position, state = await queue.upsert(entry)
                if position == 0:
                    lock = head_snapshot(queue.state_path, state)
                    if blocked_by is not None and wait_start is not None:
                        waited_ms = int((time.monotonic() - wait_start) * 1000)
                        blocked_by = blocked_by.model_copy(update={"waited_ms": waited_ms})
                    logger.debug("Acquired lock %s on %s", lock.lock_id, target)
                    return LockAcquisition(
                        lock=lock,
                        blocked_by=blocked_by,
                        status_text=build_status_text(target, lock, command, blocked_by),
                    )

                if blocked_by is None:
                    holder = head_snapshot(queue.state_path, state)
                    blocked_by = BlockedLockInfo(**holder.model_dump())
                    wait_start = time.monotonic()
                    logger.info(
                        'Queueing for lock on %s. Current owner "%s" (lock %s) has priority.',
                        target,
                        blocked_by.reason,
                        blocked_by.lock_id,
                    )

                await self._wait_for_turn(queue, entry, blocked_by, wait_start, max_wait)
        except asyncio.CancelledError:
            await asyncio.shield(queue.withdraw(entry.id))
            raise

    async def _wait_for_turn(
        self,
        queue: LockQueue,
        entry: QueueEntry,
        blocked_by: BlockedLockInfo,
        wait_start: float | None,
        max_wait: float | None,
    ) -> None:
        waiting = wait_until_head(queue.state_path, entry.id, self.config.poll_interval_seconds)
        if max_wait is None:
            timeout = None
        else:
            elapsed = time.monotonic() - wait_start if wait_start is not None else 0.0
            timeout = max(0.0, max_wait - elapsed)

        try:
            await asyncio.wait_for(waiting, timeout=timeout)
        except TimeoutError:
            await queue.withdraw(entry.id)
            raise LockTimeoutError(
                f"Timed out after {format_duration(int(max_wait * 1000))} waiting for lock "
                f'on {queue.target} held by "{blocked_by.reason}"',
                blocked_by=blocked_by,
            ) from None

    async def release(self, target: str) -> ReleaseResult:
        """Release the current holder of ``target`` and promote the next waiter."""
        state_path = state_path_for(self.lock_dir, target)
        if not state_path.exists():
            return ReleaseResult(released=False, info=None)

        popped = await self._queue(target).pop_head()
        if popped is None:
            return ReleaseResult(released=False, info=None)

        released, original_depth, state = popped
        info = to_snapshot(state_path, released, 0, original_depth, state)
        if state.queue:
            logger.info(
                "Released lock %s on %s; promoted %s", released.id, target, state.queue[0].id
            )
        else:
            logger.info("Released lock %s on %s", released.id, target)
        return ReleaseResult(released=True, info=info)

    def list_locks(self) -> list[LockSnapshot]:
        """Current holder of every active lock file."""
        details: list[LockSnapshot] = []
        for state_path in self._state_files():
            state = read_state(state_path)
            if state is None or not state.queue:
                continue
            details.append(head_snapshot(state_path, state))
        return details

    def release_all_locks(self) -> ReleaseAllResult:
        """Delete every lock file and sentinel, regardless of queue contents.

        Emergency recovery for a stuck process. Waiters still blocked on a
        cleared lock fail with ``LockQueueError``.
        """
        details: list[LockSnapshot] = []
        for state_path in self._state_files():
            state = read_state(state_path)
            if state is not None and state.queue:
                details.append(head_snapshot(state_path, state))
            state_path.unlink(missing_ok=True)
            mutex_path_for(state_path).unlink(missing_ok=True)

        if self.lock_dir.exists():
            leftovers = [
                *self.lock_dir.glob(f"*{STATE_SUFFIX}{MUTEX_SUFFIX}"),
                *self.lock_dir.glob(f"*{STATE_SUFFIX}.*{TEMP_SUFFIX}"),
            ]
            for leftover in leftovers:
                leftover.unlink(missing_ok=True)

        if details:
            logger.warning("Force released %d lock(s) via emergency command.", len(details))
        return ReleaseAllResult(released=len(details), details=details)


async def acquire_lock(target: str, reason: str, command: str) -> LockAcquisition:
    """Acquire ``target`` using the environment configuration."""
    return await LockManager().acquire(target, reason, command)


async def release_lock(target: str) -> ReleaseResult:
    """Release ``target`` using the environment configuration."""
    return await LockManager().release(target)


def list_locks() -> list[LockSnapshot]:
    """List current holders using the environment configuration."""
    return LockManager().list_locks()


def release_all_locks() -> ReleaseAllResult:
    """Force-release every lock using the environment configuration."""
    return LockManager().release_all_locks()
