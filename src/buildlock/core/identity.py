"""Deterministic lock file identities.

A lock target (a project path) maps to ``<slug>-<uuid>``: the slug keeps
the name scannable in a directory listing, the UUID keeps distinct targets
apart. The UUID is SHA-1 of the exact target string with the version and
variant bits forced, so every process on every host derives the same name.
"""

import hashlib
import re
import uuid
from pathlib import Path, PurePosixPath

from ..constants import FALLBACK_SLUG, MUTEX_SUFFIX, PROJECT_SUFFIXES, STATE_SUFFIX

_SUFFIX_RE = re.compile(
    "(" + "|".join(re.escape(suffix) for suffix in PROJECT_SUFFIXES) + ")$",
    re.IGNORECASE,
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(target: str) -> str:
    """Derive a filesystem-safe slug from the target's basename."""
    base = _SUFFIX_RE.sub("", PurePosixPath(target).name).strip()
    slug = _NON_ALNUM_RE.sub("-", base.lower()).strip("-")
    return slug or FALLBACK_SLUG


def deterministic_uuid(target: str) -> str:
    """Hash the target into a version-5-shaped UUID string."""
    digest = hashlib.sha1(target.encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest[:16], version=5))


def resolve_identity(target: str) -> str:
    """Return the lock file identity for a target."""
    return f"{slugify(target)}-{deterministic_uuid(target)}"


def state_path_for(lock_dir: Path, target: str) -> Path:
    """Path of the lock file guarding ``target``."""
    return lock_dir / f"{resolve_identity(target)}{STATE_SUFFIX}"


def mutex_path_for(state_path: Path) -> Path:
    """Path of the sentinel serializing writes to ``state_path``."""
    return state_path.with_name(state_path.name + MUTEX_SUFFIX)
