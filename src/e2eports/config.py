"""
Registry configuration.

RegistryConfig bundles everything a PortRegistry needs: where the ledger and
lock marker live, the port policy (baseline and capacity) and the lock timing
policy. Values come either from explicit arguments or from environment
variables, so that independent registries can coexist in one process while
test runs still share a single ledger by default.

Environment variables:
- E2EPORTS_DIR / E2EPORTS_DEV_MODE: see e2eports.paths
- E2EPORTS_BASELINE: floor port used to seed and reset the ledger (default 3010)
- E2EPORTS_CAPACITY: maximum ledger length before reset (default 100)
- E2EPORTS_LOCK_TIMEOUT: seconds to wait for the lock (default: wait forever)
- E2EPORTS_STALE_AFTER: seconds after which a lock marker is abandoned (default: never)
- E2EPORTS_RECLAIM_DEAD_OWNERS: "1" to break markers whose owner process is gone
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from e2eports import paths

DEFAULT_BASELINE = 3010
DEFAULT_CAPACITY = 100
DEFAULT_POLL_INTERVAL = 0.001
DEFAULT_MAX_POLL_INTERVAL = 0.05

MAX_PORT = 65535

BASELINE_ENV_VAR = "E2EPORTS_BASELINE"
CAPACITY_ENV_VAR = "E2EPORTS_CAPACITY"
LOCK_TIMEOUT_ENV_VAR = "E2EPORTS_LOCK_TIMEOUT"
STALE_AFTER_ENV_VAR = "E2EPORTS_STALE_AFTER"
RECLAIM_DEAD_OWNERS_ENV_VAR = "E2EPORTS_RECLAIM_DEAD_OWNERS"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigurationError(ValueError):
    """Raised when registry configuration values are invalid."""

    pass


@dataclass
class RegistryConfig:
    """Configuration for a PortRegistry.

    Attributes:
        ledger_path: JSON file holding the allocated port history
        lock_path: Marker directory whose existence means the ledger is locked
        baseline: Floor value used as the initial ledger content and reset value
        capacity: Maximum ledger length before it is reset to [baseline]
        lock_timeout: Seconds to wait for the lock, or None to wait forever
        stale_after: Seconds after which a held marker is considered abandoned,
                     or None to never break markers by age
        reclaim_dead_owners: Break markers whose owning process no longer exists
        poll_interval: Initial back-off between lock attempts, in seconds
        max_poll_interval: Cap for the exponential back-off, in seconds
    """

    ledger_path: Path
    lock_path: Path
    baseline: int = DEFAULT_BASELINE
    capacity: int = DEFAULT_CAPACITY
    lock_timeout: float | None = None
    stale_after: float | None = None
    reclaim_dead_owners: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL

    def __post_init__(self) -> None:
        self.ledger_path = Path(self.ledger_path)
        self.lock_path = Path(self.lock_path)
        self.validate()

    def validate(self) -> None:
        """Check all values, raising ConfigurationError on the first problem."""
        if self.ledger_path == self.lock_path:
            raise ConfigurationError(f"Lock path must differ from ledger path: {self.lock_path}")
        if isinstance(self.baseline, bool) or not isinstance(self.baseline, int):
            raise ConfigurationError(f"baseline must be an integer, got {self.baseline!r}")
        if not 0 <= self.baseline < MAX_PORT:
            raise ConfigurationError(f"baseline must be in [0, {MAX_PORT}), got {self.baseline}")
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity < 1:
            raise ConfigurationError(f"capacity must be a positive integer, got {self.capacity!r}")
        for name in ("lock_timeout", "stale_after"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive or None, got {value}")
        if self.poll_interval <= 0:
            raise ConfigurationError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.max_poll_interval < self.poll_interval:
            raise ConfigurationError(f"max_poll_interval ({self.max_poll_interval}) must be >= poll_interval ({self.poll_interval})")

    @classmethod
    def in_directory(cls, directory: Path | str, **overrides: Any) -> "RegistryConfig":
        """Create a config whose ledger and lock marker live in `directory`.

        Args:
            directory: Shared directory for ports.json and the lock marker
            **overrides: Any other RegistryConfig field

        Returns:
            RegistryConfig instance
        """
        directory = Path(directory)
        return cls(
            ledger_path=directory / paths.LEDGER_FILENAME,
            lock_path=directory / paths.LOCK_DIRNAME,
            **overrides,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RegistryConfig":
        """Create a config from environment variables.

        Args:
            environ: Optional environment mapping (defaults to os.environ)

        Returns:
            RegistryConfig instance

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        env = paths._env(environ)
        return cls(
            ledger_path=paths.get_ledger_path(env),
            lock_path=paths.get_lock_path(env),
            baseline=_env_int(env, BASELINE_ENV_VAR, DEFAULT_BASELINE),
            capacity=_env_int(env, CAPACITY_ENV_VAR, DEFAULT_CAPACITY),
            lock_timeout=_env_float(env, LOCK_TIMEOUT_ENV_VAR),
            stale_after=_env_float(env, STALE_AFTER_ENV_VAR),
            reclaim_dead_owners=_env_bool(env, RECLAIM_DEAD_OWNERS_ENV_VAR),
        )

    def with_overrides(self, **overrides: Any) -> "RegistryConfig":
        """Return a copy with some fields replaced (validated again)."""
        return replace(self, **overrides)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(env: Mapping[str, str], name: str) -> float | None:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number of seconds, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str) -> bool:
    raw = env.get(name, "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean flag, got {raw!r}")
