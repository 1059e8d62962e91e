"""Shared test fixtures for buildlock tests."""

from collections.abc import Generator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from buildlock.config import LockConfig
from buildlock.core.lock_manager import LockManager


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    """Isolated lock directory."""
    d = tmp_path / "locks"
    d.mkdir()
    return d


@pytest.fixture(autouse=True)
def isolated_env(
    lock_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Point every environment-driven lookup at the temporary directory."""
    monkeypatch.setenv("BUILDLOCK_LOCK_DIR", str(lock_dir))
    monkeypatch.setenv("BUILDLOCK_CONFIG", str(tmp_path / "config.toml"))
    monkeypatch.setenv("BUILDLOCK_POLL_INTERVAL", "0.2")
    monkeypatch.delenv("BUILDLOCK_MAX_REASON_LENGTH", raising=False)
    monkeypatch.delenv("BUILDLOCK_MAX_WAIT", raising=False)
    yield


@pytest.fixture
def config(lock_dir: Path) -> LockConfig:
    """Config with short poll and mutex intervals."""
    return LockConfig(
        lock_dir=lock_dir,
        poll_interval_seconds=0.2,
        mutex_retry_seconds=0.01,
    )


@pytest.fixture
def manager(config: LockConfig) -> LockManager:
    """Lock manager bound to the isolated lock directory."""
    return LockManager(config)
