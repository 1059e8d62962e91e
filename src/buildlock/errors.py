"""buildlock errors."""

from .models import BlockedLockInfo


class LockError(Exception):
    """Base exception for lock management errors."""


class InvalidReasonError(LockError):
    """Raised when a lock reason is empty, multi-line, or too long."""


class LockQueueError(LockError):
    """Raised when a waiting entry vanishes from its queue."""


class LockTimeoutError(LockError):
    """Raised when an acquisition exceeds its maximum wait."""

    def __init__(self, message: str, blocked_by: BlockedLockInfo | None = None) -> None:
        super().__init__(message)
        self.blocked_by = blocked_by


class ConfigError(LockError):
    """Raised when configuration cannot be loaded or validated."""
