"""Sentinel-file mutex for lock file read-modify-write cycles.

Uses atomic file creation (O_CREAT | O_EXCL) so that, across every
process sharing the filesystem, at most one holder exists per lock file.
Waiters spin with a short sleep; hold times are a single small file
rewrite, so a queued mutex is not needed.

Each sentinel is stamped with its owner's PID and host. A sentinel left
behind by a crashed process is cleared once it is older than the stale
timeout and its owner is gone.
"""

import asyncio
import contextlib
import logging
import os
import socket
from collections.abc import AsyncIterator
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError

from ..constants import MUTEX_RETRY_DELAY, MUTEX_STALE_TIMEOUT
from ..models import MutexOwner, utc_now
from .identity import mutex_path_for

logger = logging.getLogger(__name__)


def _is_pid_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists, owned by another user
    except OSError:
        return False
    return True


def _try_atomic_create(mutex_path: Path, owner: MutexOwner) -> bool:
    """Attempt atomic sentinel creation.

    Returns:
        True if the sentinel was created, False if it already exists
    """
    try:
        fd = os.open(str(mutex_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    try:
        os.write(fd, owner.model_dump_json().encode())
    except BaseException:
        os.close(fd)
        mutex_path.unlink(missing_ok=True)
        raise
    os.close(fd)
    return True


def read_owner(mutex_path: Path) -> MutexOwner | None:
    """Read a sentinel's owner stamp, None if missing or unreadable."""
    try:
        return MutexOwner.model_validate_json(mutex_path.read_text())
    except (FileNotFoundError, ValidationError, UnicodeDecodeError):
        return None


def is_stale_sentinel(
    mutex_path: Path,
    owner: MutexOwner | None,
    stale_after: float = MUTEX_STALE_TIMEOUT,
) -> bool:
    """Check if a sentinel may be cleared.

    A sentinel is stale when it is older than ``stale_after`` seconds and
    either its owner stamp is unreadable or it was written on this host by
    a process that is no longer running. Sentinels from other hosts are
    never considered stale.
    """
    if owner is None:
        try:
            age = utc_now().timestamp() - mutex_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > stale_after

    if utc_now() - owner.created_at <= timedelta(seconds=stale_after):
        return False
    if owner.hostname != socket.gethostname():
        return False
    return not _is_pid_running(owner.pid)


def _clear_if_stale(mutex_path: Path, stale_after: float) -> bool:
    owner = read_owner(mutex_path)
    if not is_stale_sentinel(mutex_path, owner, stale_after):
        return False
    # Re-read so a sentinel re-created since the check is left alone
    current = read_owner(mutex_path)
    if owner is not None and (current is None or current.token != owner.token):
        return False
    logger.warning(
        "Clearing stale mutex %s (pid %s)",
        mutex_path.name,
        owner.pid if owner else "unknown",
    )
    with contextlib.suppress(FileNotFoundError):
        mutex_path.unlink()
    return True


@contextlib.asynccontextmanager
async def exclusive_access(
    state_path: Path,
    *,
    retry_delay: float = MUTEX_RETRY_DELAY,
    stale_after: float = MUTEX_STALE_TIMEOUT,
) -> AsyncIterator[None]:
    """Hold the sentinel for ``state_path`` for the duration of the block.

    Args:
        state_path: Lock file being guarded
        retry_delay: Seconds to sleep between creation attempts
        stale_after: Age in seconds before an orphaned sentinel is cleared
    """
    mutex_path = mutex_path_for(state_path)
    hostname = socket.gethostname()

    while not _try_atomic_create(mutex_path, MutexOwner(pid=os.getpid(), hostname=hostname)):
        if _clear_if_stale(mutex_path, stale_after):
            continue
        await asyncio.sleep(retry_delay)

    try:
        yield
    finally:
        mutex_path.unlink(missing_ok=True)
