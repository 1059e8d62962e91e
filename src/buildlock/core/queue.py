"""FIFO queue stored in one lock file.

Every mutation is a read-modify-write under ``exclusive_access`` followed
by an atomic replace, so readers see either the old or the new file and
never a partial one. An empty queue has no file at all.
"""

import contextlib
import logging
import os
from pathlib import Path
from uuid import uuid4

from ..constants import MUTEX_RETRY_DELAY, MUTEX_STALE_TIMEOUT, TEMP_SUFFIX
from ..models import LockState, QueueEntry, utc_now
from .codec import decode_state, encode_state
from .mutex import exclusive_access

logger = logging.getLogger(__name__)


def read_state(state_path: Path) -> LockState | None:
    """Read a lock file.

    Returns:
        Parsed state, or None if the file is absent or corrupt

    Raises:
        OSError: On any read failure other than a missing file
    """
    try:
        raw = state_path.read_bytes()
    except FileNotFoundError:
        return None
    return decode_state(raw, state_path)


def write_state(state_path: Path, state: LockState) -> None:
    """Persist a lock state atomically, or delete the file if the queue is empty."""
    if not state.queue:
        state_path.unlink(missing_ok=True)
        return

    temp_path = state_path.with_name(f"{state_path.name}.{uuid4()}{TEMP_SUFFIX}")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(encode_state(state))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, state_path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            temp_path.unlink()
        raise


def _promote_head(state: LockState) -> None:
    head = state.head
    if head is not None and head.locked_at is None:
        head.locked_at = utc_now()


class LockQueue:
    """Queue operations for the lock file guarding one target.

    Args:
        state_path: Lock file path (see ``identity.state_path_for``)
        target: Lock target the file belongs to
        retry_delay: Mutex spin delay in seconds
        stale_after: Mutex stale timeout in seconds
    """

    def __init__(
        self,
        state_path: Path,
        target: str,
        *,
        retry_delay: float = MUTEX_RETRY_DELAY,
        stale_after: float = MUTEX_STALE_TIMEOUT,
    ) -> None:
        self.state_path = state_path
        self.target = target
        self._retry_delay = retry_delay
        self._stale_after = stale_after

    def _exclusive(self) -> contextlib.AbstractAsyncContextManager[None]:
        return exclusive_access(
            self.state_path, retry_delay=self._retry_delay, stale_after=self._stale_after
        )

    async def upsert(self, entry: QueueEntry) -> tuple[int, LockState]:
        """Insert or update ``entry`` and return its position and the queue.

        A known entry id keeps its place and timestamps; only its reason and
        command are refreshed. The head is stamped as locked if it is not yet.
        """
        async with self._exclusive():
            state = read_state(self.state_path)
            if state is None:
                state = LockState(path=self.target)
            elif state.path != self.target:
                logger.warning(
                    "Lock file %s path mismatch (%s vs %s)",
                    self.state_path,
                    state.path,
                    self.target,
                )
                state.path = self.target

            index = state.index_of(entry.id)
            if index is None:
                state.queue.append(entry.model_copy())
                index = len(state.queue) - 1
            else:
                existing = state.queue[index]
                existing.reason = entry.reason
                existing.command = entry.command

            _promote_head(state)
            write_state(self.state_path, state)
            return index, state

    async def pop_head(self) -> tuple[QueueEntry, int, LockState] | None:
        """Remove the current holder and promote the next entry.

        Returns:
            (released entry, queue depth before the pop, remaining state),
            or None if nothing was queued
        """
        async with self._exclusive():
            state = read_state(self.state_path)
            if state is None or not state.queue:
                if self.state_path.exists():
                    logger.warning("Removing unreadable or empty lock file %s", self.state_path)
                    self.state_path.unlink(missing_ok=True)
                return None

            original_depth = len(state.queue)
            released = state.queue.pop(0)
            _promote_head(state)
            write_state(self.state_path, state)
            return released, original_depth, state

    async def withdraw(self, entry_id: str) -> bool:
        """Remove one entry wherever it sits in the queue.

        Used when a waiter gives up. If the entry was head, the next entry
        is promoted.

        Returns:
            True if the entry was found and removed
        """
        async with self._exclusive():
            state = read_state(self.state_path)
            if state is None:
                return False
            index = state.index_of(entry_id)
            if index is None:
                return False
            del state.queue[index]
            _promote_head(state)
            write_state(self.state_path, state)
            return True

    def read(self) -> LockState | None:
        """Lock-free read of the current state (may be momentarily stale)."""
        return read_state(self.state_path)

    def snapshot_head(self) -> QueueEntry | None:
        """Lock-free read of the current holder."""
        state = self.read()
        return state.head if state else None
