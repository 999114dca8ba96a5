"""pytest fixtures for test suites that start servers on shared machines.

Enable in a conftest.py with:

    pytest_plugins = ["e2eports.pytest_plugin"]

The registry is configured from the environment (see e2eports.config), so
every pytest process of a run, including xdist workers, draws from the same
ledger.
"""

import pytest

from e2eports.config import RegistryConfig
from e2eports.port_registry import PortRegistry


@pytest.fixture(scope="session")
def port_registry() -> PortRegistry:
    """Session-wide PortRegistry configured from the environment."""
    return PortRegistry(RegistryConfig.from_env())


@pytest.fixture
def free_port(port_registry: PortRegistry) -> int:
    """A port no other concurrently running test process has been given."""
    return port_registry.next_port()
