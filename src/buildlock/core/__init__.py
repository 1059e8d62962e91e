"""Core lock machinery for buildlock.

- identity: Deterministic lock file names for a project path
- codec: Text format of lock files
- mutex: Sentinel-file mutex around read-modify-write cycles
- queue: FIFO queue operations and atomic persistence
- waiter: Wake-up on queue promotion (change notification + poll)
- lock_manager: Public acquire/release/list/release-all operations
"""

from .codec import decode_state, encode_state
from .identity import resolve_identity, state_path_for
from .lock_manager import (
    LockManager,
    acquire_lock,
    list_locks,
    release_all_locks,
    release_lock,
)
from .mutex import exclusive_access
from .queue import LockQueue, read_state, write_state
from .waiter import wait_until_head

__all__ = [
    "LockManager",
    "LockQueue",
    "acquire_lock",
    "decode_state",
    "encode_state",
    "exclusive_access",
    "list_locks",
    "read_state",
    "release_all_locks",
    "release_lock",
    "resolve_identity",
    "state_path_for",
    "wait_until_head",
    "write_state",
]
