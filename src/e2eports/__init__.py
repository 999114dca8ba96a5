"""
e2eports - Collision-free listening ports for concurrent test processes.

This package provides a cross-process file lock built on atomic directory
creation and a port registry that uses it to hand out unique ports from a
shared JSON ledger.
"""

from e2eports.config import ConfigurationError, RegistryConfig
from e2eports.file_lock import (
    ExclusiveFileLock,
    FileLockError,
    LockContendedError,
    LockHandle,
    LockIOError,
    LockOwner,
    LockReleaseError,
    LockTimeoutError,
)
from e2eports.port_registry import (
    LedgerWriteError,
    PortLedger,
    PortRegistry,
    PortRegistryError,
    next_port,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ExclusiveFileLock",
    "FileLockError",
    "LedgerWriteError",
    "LockContendedError",
    "LockHandle",
    "LockIOError",
    "LockOwner",
    "LockReleaseError",
    "LockTimeoutError",
    "PortLedger",
    "PortRegistry",
    "PortRegistryError",
    "RegistryConfig",
    "next_port",
]
