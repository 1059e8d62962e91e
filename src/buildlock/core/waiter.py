"""Wait for a queue entry to reach the head of its lock file.

Change notifications from ``watchfiles`` wake the waiter as soon as the
lock file or its mutex sentinel changes. A fixed-interval poll re-checks
regardless, so a platform without working notifications still makes
progress, only more slowly.
"""

import asyncio
import contextlib
import logging
from pathlib import Path

from watchfiles import Change, awatch

from ..constants import DEFAULT_POLL_INTERVAL
from ..errors import LockQueueError
from .identity import mutex_path_for
from .queue import read_state

logger = logging.getLogger(__name__)

# watchfiles batching, in milliseconds
WATCH_DEBOUNCE_MS = 200
WATCH_STEP_MS = 20


def queue_position(state_path: Path, entry_id: str) -> int:
    """Current position of an entry.

    Raises:
        LockQueueError: If the lock file or the entry has disappeared
    """
    state = read_state(state_path)
    if state is None:
        raise LockQueueError(f"Lock file {state_path} disappeared while waiting")
    position = state.index_of(entry_id)
    if position is None:
        raise LockQueueError(f"Lock entry {entry_id} missing from queue")
    return position


async def _watch_directory(
    directory: Path,
    names: set[str],
    wake: asyncio.Event,
    stop: asyncio.Event,
) -> None:
    """Set ``wake`` whenever a file named in ``names`` changes."""

    def relevant(_change: Change, path: str) -> bool:
        return Path(path).name in names

    try:
        async for _changes in awatch(
            directory,
            watch_filter=relevant,
            stop_event=stop,
            debounce=WATCH_DEBOUNCE_MS,
            step=WATCH_STEP_MS,
            recursive=False,
        ):
            wake.set()
    except OSError as e:
        logger.debug("Change notifications unavailable for %s (%s); polling only", directory, e)


async def wait_until_head(
    state_path: Path,
    entry_id: str,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Block until ``entry_id`` is at position 0 of ``state_path``.

    Args:
        state_path: Lock file holding the queue
        entry_id: Entry to wait for
        poll_interval: Seconds between unconditional re-checks

    Raises:
        LockQueueError: If the entry leaves the queue without being promoted
    """
    wake = asyncio.Event()
    stop = asyncio.Event()
    names = {state_path.name, mutex_path_for(state_path).name}
    watcher = asyncio.create_task(_watch_directory(state_path.parent, names, wake, stop))

    try:
        while True:
            wake.clear()
            if queue_position(state_path, entry_id) == 0:
                return
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(wake.wait(), timeout=poll_interval)
    finally:
        stop.set()
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
