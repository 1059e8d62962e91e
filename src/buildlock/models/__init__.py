"""Pydantic data models for buildlock.

This package defines the data structures used throughout buildlock for:
- Persisted lock files and their queues (LockState, QueueEntry)
- Mutex sentinel ownership stamps (MutexOwner)
- Results handed back to callers (LockSnapshot, LockAcquisition, ...)

Example:
    >>> from buildlock.models import LockState, QueueEntry
    >>> state = LockState(path="/tmp/App.xcodeproj")
    >>> state.queue.append(QueueEntry(reason="Fix login bug", command="build"))
"""

from .lock import LockState, MutexOwner, QueueEntry, utc_now
from .snapshot import (
    BlockedLockInfo,
    LockAcquisition,
    LockSnapshot,
    ReleaseAllResult,
    ReleaseResult,
)

__all__ = [
    "BlockedLockInfo",
    "LockAcquisition",
    "LockSnapshot",
    "LockState",
    "MutexOwner",
    "QueueEntry",
    "ReleaseAllResult",
    "ReleaseResult",
    "utc_now",
]
