"""
Pytest configuration and fixtures for ctxlog tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from ctxlog.encoder import LineEncoder
from ctxlog.schema import StoreConfig
from ctxlog.store.lock import LockManager
from ctxlog.store.reader import Reader
from ctxlog.store.writer import Writer


@pytest.fixture(autouse=True)
def no_env_encoder_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's CTXLOG_ENCODER_KEY out of the tests."""
    monkeypatch.delenv("CTXLOG_ENCODER_KEY", raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def config() -> StoreConfig:
    """Store configuration tuned for fast tests."""
    return StoreConfig(fsync=False, lock_timeout_seconds=5.0)


@pytest.fixture
def writer(temp_dir: Path, config: StoreConfig) -> Writer:
    """Writer rooted at temp_dir."""
    return Writer(temp_dir, config)


@pytest.fixture
def reader(temp_dir: Path, config: StoreConfig) -> Reader:
    """Reader rooted at temp_dir."""
    return Reader(temp_dir, config)


@pytest.fixture
def lock_manager() -> LockManager:
    """Lock manager with short timeouts."""
    return LockManager(timeout=1.0, stale_after=30.0, poll_interval=0.005)


@pytest.fixture
def encoder() -> LineEncoder:
    """Line encoder with a fixed key."""
    return LineEncoder(bytes(range(32)))


@pytest.fixture
def decision_fields() -> dict[str, str]:
    """Valid DECISIONS fields."""
    return {
        "decision": "Use PostgreSQL",
        "rationale": "Need JSONB support",
        "timestamp": "2025-01-02T10:00:00+00:00",
        "impact": "HIGH",
    }


@pytest.fixture
def insight_fields() -> dict[str, str]:
    """Valid INSIGHTS fields."""
    return {
        "text": "Users prefer short answers",
        "category": "ux",
        "priority": "MEDIUM",
        "timestamp": "2025-01-02T10:00:00+00:00",
    }


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a store configuration YAML for testing."""
    return """
data_dir: .memory
lock_timeout_seconds: 2.5
stale_lock_seconds: 10
redact_pii: true
read_mode: streaming
"""
