"""Configuration management for buildlock.

Settings come from an optional TOML file (``[lock]`` table) and are then
overridden by environment variables, so tests and multi-tenant hosts can
isolate their lock directory without touching the file.
"""

import os
import sys
import tomllib
from collections.abc import Mapping
from pathlib import Path

import tomli_w
from pydantic import BaseModel, Field, ValidationError

from .constants import (
    DEFAULT_MAX_REASON_LENGTH,
    DEFAULT_POLL_INTERVAL,
    ENV_CONFIG_PATH,
    ENV_LOCK_DIR,
    ENV_MAX_REASON_LENGTH,
    ENV_MAX_WAIT,
    ENV_POLL_INTERVAL,
    MUTEX_RETRY_DELAY,
    MUTEX_STALE_TIMEOUT,
)
from .errors import ConfigError

# Environment variable -> LockConfig field
ENV_OVERRIDES = {
    ENV_LOCK_DIR: "lock_dir",
    ENV_MAX_REASON_LENGTH: "max_reason_length",
    ENV_POLL_INTERVAL: "poll_interval_seconds",
    ENV_MAX_WAIT: "max_wait_seconds",
}


def default_lock_dir() -> Path:
    """Platform default lock directory."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "BuildLock" / "locks"
    return home / ".buildlock" / "locks"


def default_config_path(environ: Mapping[str, str] | None = None) -> Path:
    """Location of config.toml: $BUILDLOCK_CONFIG, else ~/.buildlock/config.toml."""
    env = os.environ if environ is None else environ
    override = env.get(ENV_CONFIG_PATH, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".buildlock" / "config.toml"


class LockConfig(BaseModel):
    """Lock manager settings."""

    lock_dir: Path = Field(default_factory=default_lock_dir)
    max_reason_length: int = Field(default=DEFAULT_MAX_REASON_LENGTH, gt=0)
    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    mutex_retry_seconds: float = Field(default=MUTEX_RETRY_DELAY, gt=0)
    mutex_stale_seconds: float = Field(default=MUTEX_STALE_TIMEOUT, gt=0)
    max_wait_seconds: float | None = Field(
        default=None, gt=0, description="Give up waiting after this long (None = wait forever)"
    )


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> LockConfig:
    """Load config from TOML and the environment.

    Args:
        config_path: TOML file to read (defaults to $BUILDLOCK_CONFIG, then
            ~/.buildlock/config.toml); a missing file means defaults
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = default_config_path(env)

    data: dict[str, object] = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data.update(tomllib.load(f).get("lock", {}))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    for var, field in ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if value:
            data[field] = value

    try:
        config = LockConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid lock configuration: {e}") from e

    config.lock_dir = config.lock_dir.expanduser().resolve()
    return config


def write_config_template(config_path: Path) -> Path:
    """Write default config.toml template.

    Args:
        config_path: Destination file

    Returns:
        Path to the written config file
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)
    template = {
        "lock": {
            "lock_dir": str(default_lock_dir()),
            "max_reason_length": DEFAULT_MAX_REASON_LENGTH,
            "poll_interval_seconds": DEFAULT_POLL_INTERVAL,
            "mutex_retry_seconds": MUTEX_RETRY_DELAY,
            "mutex_stale_seconds": MUTEX_STALE_TIMEOUT,
            # Omit max_wait_seconds to wait indefinitely
        },
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(template, f)
    return config_path
