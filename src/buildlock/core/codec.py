"""Text codec for lock files.

Lock files are small, line-oriented and YAML-shaped so a person can read
them with ``cat``::

    lock-version: 2
    path: "/Users/me/App/App.xcodeproj"
    queue:
      - id: "0d6c..."
        command: "build"
        reason: "Fix login bug"
        created-at: "2026-10-18T09:00:00.123456+00:00"
        locked-at: null

Every free-text scalar is JSON-quoted, so newlines, quotes and colons in a
reason or path cannot break the next decode. Decoding is lenient: unknown
keys are ignored and incomplete entries dropped, but a file without a
``path`` is rejected.
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..constants import LOCK_VERSION
from ..models import LockState, QueueEntry

logger = logging.getLogger(__name__)

_ENTRY_PREFIX = "  - "
_FIELD_PREFIX = "    "
_REQUIRED_ENTRY_KEYS = ("id", "reason", "command", "created_at")
_KEY_ALIASES = {"created-at": "created_at", "locked-at": "locked_at"}


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def encode_state(state: LockState) -> str:
    """Serialize a lock state to its on-disk text."""
    lines = [
        f"lock-version: {state.version}",
        f"path: {_quote(state.path)}",
        "queue:",
    ]
    for entry in state.queue:
        locked_at = _quote(entry.locked_at.isoformat()) if entry.locked_at else "null"
        lines.append(f"{_ENTRY_PREFIX}id: {_quote(entry.id)}")
        lines.append(f"{_FIELD_PREFIX}command: {_quote(entry.command)}")
        lines.append(f"{_FIELD_PREFIX}reason: {_quote(entry.reason)}")
        lines.append(f"{_FIELD_PREFIX}created-at: {_quote(entry.created_at.isoformat())}")
        lines.append(f"{_FIELD_PREFIX}locked-at: {locked_at}")
    return "\n".join(lines) + "\n"


def parse_scalar(raw: str) -> Any:
    """Parse one scalar value as written by ``encode_state``.

    Also accepts single-quoted and bare strings, which hand-edited files
    tend to contain.
    """
    if raw == "null":
        return None
    if raw == "true":
        return True
    if raw == "false":
        return False
    if not raw:
        return ""
    if raw.startswith('"'):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw[1:-1]
    if raw.startswith("'"):
        return raw[1:-1]
    return raw


def _split_field(text: str) -> tuple[str, Any]:
    key, _, value = text.partition(":")
    key = key.strip()
    return _KEY_ALIASES.get(key, key), parse_scalar(value.strip())


def _build_entry(fields: dict[str, Any], source: str) -> QueueEntry | None:
    if any(fields.get(key) is None for key in _REQUIRED_ENTRY_KEYS):
        logger.warning("Dropping incomplete queue entry in %s", source)
        return None
    try:
        return QueueEntry.model_validate(
            {key: fields.get(key) for key in (*_REQUIRED_ENTRY_KEYS, "locked_at")}
        )
    except ValidationError as e:
        logger.warning("Dropping invalid queue entry in %s: %s", source, e.errors()[0]["msg"])
        return None


def decode_state(raw: str | bytes, source: str | Path = "<memory>") -> LockState | None:
    """Parse lock file text.

    Args:
        raw: File contents
        source: Where the contents came from, for log messages

    Returns:
        Parsed state, or None if the payload is unreadable or has no path
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Lock file %s is not valid UTF-8", source)
            return None

    version = LOCK_VERSION
    path: str | None = None
    entries: list[QueueEntry] = []
    current: dict[str, Any] | None = None
    in_queue = False

    def flush() -> None:
        nonlocal current
        if current is not None:
            entry = _build_entry(current, str(source))
            if entry is not None:
                entries.append(entry)
        current = None

    # Split on "\n" only: JSON leaves U+2028 and friends unescaped in strings.
    for line in raw.split("\n"):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        if line.startswith("lock-version"):
            _, value = _split_field(line)
            try:
                version = int(value)
            except (TypeError, ValueError):
                version = LOCK_VERSION
            continue
        if line.startswith("path:"):
            _, value = _split_field(line)
            path = value if isinstance(value, str) else None
            continue
        if line.startswith("queue:"):
            in_queue = True
            continue
        if not in_queue:
            continue
        if line.startswith(_ENTRY_PREFIX):
            flush()
            key, value = _split_field(line[len(_ENTRY_PREFIX) :])
            current = {key: value} if key else None
            continue
        if current is not None and line.startswith(_FIELD_PREFIX):
            key, value = _split_field(line)
            if key:
                current[key] = value
    flush()

    if not path:
        logger.warning("Lock file %s missing path metadata", source)
        return None

    return LockState(version=version, path=path, queue=entries)
