"""Persisted lock models.

A lock file holds one ``LockState``: the project path it guards and the
FIFO queue of ``QueueEntry`` records. Index 0 is the current holder.
``MutexOwner`` is the stamp written into the short-lived ``.mutex``
sentinel that serializes read-modify-write cycles on a lock file.
"""

from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from ..constants import LOCK_VERSION


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class QueueEntry(BaseModel):
    """One waiter or holder in a lock queue.

    Attributes:
        id: Unique token for one acquisition attempt.
        reason: Single-line description of the work being done.
        command: Name of the operation requesting the lock.
        created_at: When the entry first entered the queue.
        locked_at: When the entry became head, None while waiting.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    reason: str
    command: str
    created_at: datetime = Field(default_factory=utc_now)
    locked_at: datetime | None = None


class LockState(BaseModel):
    """Contents of one lock file."""

    version: int = LOCK_VERSION
    path: str
    queue: list[QueueEntry] = Field(default_factory=list)

    @property
    def head(self) -> QueueEntry | None:
        """Current lock holder, if any."""
        return self.queue[0] if self.queue else None

    def index_of(self, entry_id: str) -> int | None:
        """Return the queue position of an entry, or None if absent."""
        for index, entry in enumerate(self.queue):
            if entry.id == entry_id:
                return index
        return None


class MutexOwner(BaseModel):
    """Stamp written into a ``.mutex`` sentinel (for stale detection).

    Attributes:
        pid: Process ID holding the sentinel.
        hostname: Host the process runs on.
        token: Unique token for this hold.
        created_at: When the sentinel was created.
    """

    pid: int = Field(description="Process ID holding the sentinel")
    hostname: str = Field(description="Host of the holding process")
    token: str = Field(default_factory=lambda: str(uuid4()))
    created_at: datetime = Field(default_factory=utc_now)
