"""
Registry paths configuration.

Centralized path definitions for the port ledger and its lock marker. Every
cooperating test process must resolve the same directory, otherwise they do
not share a ledger and can hand out the same port twice.

Modes:
- Explicit (E2EPORTS_DIR=/some/dir): that directory
- Development (E2EPORTS_DEV_MODE=1): ./.e2eports/ (isolated per checkout)
- Default: ~/.e2eports/
"""

import os
from pathlib import Path
from typing import Mapping

# Ledger and lock marker names
LEDGER_FILENAME = "ports.json"
LOCK_DIRNAME = "__ports_json_lock__"
OWNER_FILENAME = "owner.json"

# Environment variables
DIR_ENV_VAR = "E2EPORTS_DIR"
DEV_MODE_ENV_VAR = "E2EPORTS_DEV_MODE"


def _env(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def is_dev_mode(environ: Mapping[str, str] | None = None) -> bool:
    """Check if development mode is enabled."""
    return _env(environ).get(DEV_MODE_ENV_VAR) == "1"


def get_registry_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Get the directory shared by the ledger and the lock marker.

    Args:
        environ: Optional environment mapping (defaults to os.environ)

    Returns:
        Directory path, respecting E2EPORTS_DIR and E2EPORTS_DEV_MODE
    """
    env = _env(environ)
    explicit = env.get(DIR_ENV_VAR)
    if explicit:
        return Path(explicit).expanduser()
    if is_dev_mode(env):
        # Use project-local directory for development
        return Path.cwd() / ".e2eports"
    # Use home directory for normal runs
    return Path.home() / ".e2eports"


def get_ledger_path(environ: Mapping[str, str] | None = None) -> Path:
    """Get the path to the port ledger file."""
    return get_registry_dir(environ) / LEDGER_FILENAME


def get_lock_path(environ: Mapping[str, str] | None = None) -> Path:
    """Get the path to the lock marker directory."""
    return get_registry_dir(environ) / LOCK_DIRNAME
