"""Pytest configuration and fixtures for e2eports tests.

Every test gets its own registry directory under tmp_path, so tests never
touch the shared ledger in ~/.e2eports and can run in parallel.
"""

from pathlib import Path

import pytest

from e2eports.config import RegistryConfig
from e2eports.file_lock import ExclusiveFileLock
from e2eports.port_registry import PortRegistry

pytest_plugins = ["e2eports.pytest_plugin"]


@pytest.fixture
def registry_dir(tmp_path: Path) -> Path:
    """Directory holding ports.json and the lock marker for one test."""
    directory = tmp_path / "registry"
    directory.mkdir()
    return directory


@pytest.fixture
def registry_config(registry_dir: Path) -> RegistryConfig:
    """Registry config isolated to this test, with a safety-net lock timeout."""
    return RegistryConfig.in_directory(registry_dir, lock_timeout=10.0)


@pytest.fixture
def port_registry(registry_config: RegistryConfig) -> PortRegistry:
    """Isolated PortRegistry (overrides the plugin's environment-based one)."""
    return PortRegistry(registry_config)


@pytest.fixture
def file_lock(registry_config: RegistryConfig) -> ExclusiveFileLock:
    """ExclusiveFileLock on the isolated registry's marker path."""
    return ExclusiveFileLock(registry_config.lock_path, timeout=10.0)
