"""
Shared fixtures for concurrent safety tests.

This module provides pytest fixtures for spawning independent Python
processes that allocate ports or hold the ledger lock, so cross-process
behaviour is tested with real processes rather than threads only.
"""

import os
import subprocess
import sys
import textwrap
from pathlib import Path
from typing import Any, Generator

import pytest

SRC_DIR = Path(__file__).parent.parent.parent / "src"

ALLOCATE_SCRIPT = textwrap.dedent(
    """
    import sys
    from e2eports import PortRegistry, RegistryConfig

    registry = PortRegistry(RegistryConfig.in_directory(sys.argv[1], capacity=int(sys.argv[3]), lock_timeout=30.0))
    for _ in range(int(sys.argv[2])):
        print(registry.next_port(), flush=True)
    """
)

HOLD_SCRIPT = textwrap.dedent(
    """
    import sys
    import time
    from e2eports import ExclusiveFileLock

    lock = ExclusiveFileLock(sys.argv[1], timeout=30.0)
    handle = lock.acquire()
    print("held", flush=True)
    time.sleep(float(sys.argv[2]))
    lock.release(handle)
    print("released", flush=True)
    """
)


def pytest_collection_modifyitems(items: list[Any]) -> None:
    """Mark all tests in the concurrent_safety directory as concurrent."""
    for item in items:
        if "concurrent_safety" in str(item.fspath):
            item.add_marker(pytest.mark.concurrent)


def _child_env() -> dict[str, str]:
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC_DIR), env.get("PYTHONPATH", "")) if p)
    return env


class PortProcessSpawner:
    """Helper for spawning e2eports worker processes in tests.

    All spawned processes are killed on teardown if they are still running.
    """

    def __init__(self) -> None:
        self._processes: list[subprocess.Popen[str]] = []

    def _spawn(self, script: str, *args: str) -> subprocess.Popen[str]:
        proc = subprocess.Popen(
            [sys.executable, "-c", script, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            env=_child_env(),
        )
        self._processes.append(proc)
        return proc

    def spawn_allocator(self, registry_dir: Path, count: int, capacity: int = 100) -> subprocess.Popen[str]:
        """Spawn a process that allocates `count` ports and prints them."""
        return self._spawn(ALLOCATE_SCRIPT, str(registry_dir), str(count), str(capacity))

    def spawn_holder(self, lock_path: Path, hold_seconds: float) -> subprocess.Popen[str]:
        """Spawn a process that holds the lock for `hold_seconds`.

        The process prints "held" once it owns the lock.
        """
        return self._spawn(HOLD_SCRIPT, str(lock_path), str(hold_seconds))

    def collect_ports(self, proc: subprocess.Popen[str], timeout: float = 60.0) -> list[int]:
        """Wait for an allocator process and return the ports it printed."""
        stdout, stderr = proc.communicate(timeout=timeout)
        assert proc.returncode == 0, f"allocator failed:\n{stderr}"
        return [int(line) for line in stdout.split()]

    def cleanup(self) -> None:
        for proc in self._processes:
            if proc.poll() is None:
                proc.kill()
            if proc.stdout is not None and not proc.stdout.closed:
                proc.communicate()
        self._processes.clear()


@pytest.fixture
def spawner() -> Generator[PortProcessSpawner, None, None]:
    """Process spawner that cleans up after the test."""
    helper = PortProcessSpawner()
    yield helper
    helper.cleanup()
