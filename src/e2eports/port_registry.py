"""
Port Registry - Hand out collision-free listening ports to test processes.

Concurrently running test processes each need their own server port. The
registry keeps the history of handed-out ports in a JSON ledger
(ports.json) and serializes every read-modify-write of it with an
ExclusiveFileLock, so no two callers ever compute the same next port.

Policy:
- The next port is max(history) + 1
- A missing, empty or unreadable ledger counts as [baseline]
- Once the history grows past `capacity` entries it is reset to [baseline]
  (the port just handed out is not kept; by then the early ports are assumed
  free again)

Example:
    >>> from e2eports.port_registry import PortRegistry
    >>> from e2eports.config import RegistryConfig
    >>>
    >>> registry = PortRegistry(RegistryConfig.in_directory("/tmp/e2e"))
    >>> registry.next_port()
    3011
    >>> registry.next_port()
    3012
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from e2eports.config import DEFAULT_BASELINE, DEFAULT_CAPACITY, MAX_PORT, RegistryConfig
from e2eports.file_lock import ExclusiveFileLock

logger = logging.getLogger(__name__)


class PortRegistryError(Exception):
    """Raised when port registry operations fail."""

    pass


class LedgerWriteError(PortRegistryError):
    """Persisting the ledger failed; the computed port is not reserved."""

    pass


def _coerce_ports(data: Any) -> list[int] | None:
    """Validate decoded ledger content.

    Returns:
        List of ports, or None if the content is not a non-empty list of
        valid port numbers
    """
    if not isinstance(data, list) or not data:
        return None
    for item in data:
        if isinstance(item, bool) or not isinstance(item, int):
            return None
        if not 0 <= item <= MAX_PORT:
            return None
    return list(data)


@dataclass
class PortLedger:
    """In-memory view of the persisted port history.

    Attributes:
        used_ports: Ordered history of handed-out ports (never empty)
        baseline: Floor value used to seed and reset the history
        capacity: Maximum history length before a reset
    """

    used_ports: list[int] = field(default_factory=list)
    baseline: int = DEFAULT_BASELINE
    capacity: int = DEFAULT_CAPACITY

    def __post_init__(self) -> None:
        if not self.used_ports:
            self.used_ports = [self.baseline]

    @classmethod
    def load(cls, path: Path, baseline: int = DEFAULT_BASELINE, capacity: int = DEFAULT_CAPACITY) -> "PortLedger":
        """Read the ledger file, falling back to [baseline].

        Anything other than a JSON array of port numbers (missing file, empty
        file, invalid JSON, null, wrong types) yields a fresh ledger. Never
        raises for bad content.

        Args:
            path: Ledger file path
            baseline: Floor value for a fresh ledger
            capacity: Maximum history length

        Returns:
            PortLedger instance
        """
        if not path.exists():
            logger.debug(f"Port ledger not found, starting from baseline {baseline}: {path}")
            return cls(baseline=baseline, capacity=capacity)

        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read port ledger {path}, starting from baseline {baseline}: {e}")
            return cls(baseline=baseline, capacity=capacity)

        if not raw.strip():
            return cls(baseline=baseline, capacity=capacity)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Port ledger {path} is not valid JSON, starting from baseline {baseline}: {e}")
            return cls(baseline=baseline, capacity=capacity)

        if data is None:
            return cls(baseline=baseline, capacity=capacity)

        ports = _coerce_ports(data)
        if ports is None:
            logger.warning(f"Port ledger {path} does not hold a list of ports, starting from baseline {baseline}")
            return cls(baseline=baseline, capacity=capacity)

        return cls(used_ports=ports, baseline=baseline, capacity=capacity)

    def allocate(self) -> int:
        """Compute the next port and record it in the history.

        Returns:
            The newly allocated port
        """
        port = max(self.used_ports) + 1
        if port > MAX_PORT:
            logger.info(f"Port range exhausted at {MAX_PORT}; restarting history from {self.baseline}")
            self.used_ports = [self.baseline]
            port = self.baseline + 1

        self.used_ports.append(port)
        if len(self.used_ports) > self.capacity:
            logger.info(f"Port ledger exceeded {self.capacity} entries; resetting to [{self.baseline}]")
            self.used_ports = [self.baseline]
        return port

    def reset(self) -> None:
        """Discard the history, keeping only the baseline."""
        self.used_ports = [self.baseline]

    def save(self, path: Path) -> None:
        """Write the ledger atomically (temp file + rename).

        Args:
            path: Ledger file path

        Raises:
            LedgerWriteError: If the file could not be written
        """
        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self.used_ports, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove temporary ledger file {temp_path}: {cleanup_error}")
            logger.error(f"Failed to write port ledger {path}: {e}")
            raise LedgerWriteError(f"Failed to write port ledger {path}: {e}") from e


class PortRegistry:
    """Cross-process allocator of listening ports backed by a locked ledger.

    Every operation runs entirely under the registry's ExclusiveFileLock, so
    allocations are totally ordered by lock acquisition. Registries created
    with different paths are fully independent.

    Example:
        >>> registry = PortRegistry(RegistryConfig.in_directory(tmp_path))
        >>> port = registry.next_port()
        >>> registry.used_ports()
        [3010, 3011]
    """

    def __init__(self, config: RegistryConfig | None = None):
        """Initialize the registry.

        Args:
            config: Registry configuration. Defaults to RegistryConfig.from_env()
        """
        self._config = config if config is not None else RegistryConfig.from_env()
        self._lock = ExclusiveFileLock(
            self._config.lock_path,
            timeout=self._config.lock_timeout,
            poll_interval=self._config.poll_interval,
            max_poll_interval=self._config.max_poll_interval,
            stale_after=self._config.stale_after,
            reclaim_dead_owners=self._config.reclaim_dead_owners,
        )

    @property
    def config(self) -> RegistryConfig:
        """Get the registry configuration."""
        return self._config

    @property
    def ledger_path(self) -> Path:
        """Get the path to the ledger file."""
        return self._config.ledger_path

    @property
    def lock(self) -> ExclusiveFileLock:
        """Get the lock guarding the ledger."""
        return self._lock

    def _load(self) -> PortLedger:
        return PortLedger.load(self.ledger_path, baseline=self._config.baseline, capacity=self._config.capacity)

    def next_port(self) -> int:
        """Allocate the next free port.

        Returns:
            A port no other caller of this ledger has received since the last reset

        Raises:
            LockTimeoutError: If the ledger lock could not be acquired in time
            LockIOError: If the lock marker could not be created or removed
            LedgerWriteError: If the updated ledger could not be persisted
        """
        with self._lock.hold():
            ledger = self._load()
            port = ledger.allocate()
            ledger.save(self.ledger_path)
        logger.debug(f"Allocated port {port} from {self.ledger_path}")
        return port

    def used_ports(self) -> list[int]:
        """Get the current port history (read under the lock).

        Returns:
            Copy of the history; [baseline] if the ledger is missing or unreadable
        """
        with self._lock.hold():
            return list(self._load().used_ports)

    def reset(self) -> None:
        """Rewrite the ledger to [baseline].

        Raises:
            LedgerWriteError: If the ledger could not be persisted
        """
        with self._lock.hold():
            ledger = PortLedger(baseline=self._config.baseline, capacity=self._config.capacity)
            ledger.save(self.ledger_path)
        logger.info(f"Reset port ledger {self.ledger_path} to [{self._config.baseline}]")


def next_port(config: RegistryConfig | None = None) -> int:
    """Allocate one port from the shared registry.

    Args:
        config: Registry configuration. Defaults to RegistryConfig.from_env()

    Returns:
        The allocated port
    """
    return PortRegistry(config).next_port()
