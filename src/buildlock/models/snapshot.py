"""Result models returned by the lock manager."""

from datetime import datetime

from pydantic import BaseModel


class LockSnapshot(BaseModel):
    """Point-in-time view of one queue entry in a lock file."""

    file_path: str
    file_name: str
    path: str
    reason: str
    command: str
    locked_at: datetime
    lock_id: str
    version: int
    queue_depth: int
    queue_position: int


class BlockedLockInfo(LockSnapshot):
    """Snapshot of the holder an acquisition had to wait behind."""

    waited_ms: int = 0


class LockAcquisition(BaseModel):
    """Result of a granted acquisition."""

    lock: LockSnapshot
    blocked_by: BlockedLockInfo | None = None
    status_text: str


class ReleaseResult(BaseModel):
    """Result of releasing one lock."""

    released: bool
    info: LockSnapshot | None = None


class ReleaseAllResult(BaseModel):
    """Result of force-releasing every lock."""

    released: int
    details: list[LockSnapshot]
