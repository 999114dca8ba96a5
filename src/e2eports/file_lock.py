"""
Exclusive File Lock - Cross-process mutual exclusion on a marker directory.

The lock is a directory whose atomic creation (os.mkdir) claims the critical
section and whose removal releases it. This works across processes and
threads on every platform and filesystem that implements mkdir atomically,
without sharing memory or holding open file descriptors.

Features:
- Blocking acquire with exponential back-off and optional timeout
- Distinct errors for contention, I/O failure and timeout
- Owner record (pid, hostname, token) stored inside the marker
- Optional stale-marker recovery by age or by dead owner process
- Scoped acquisition via hold(), releasing on every exit path

Example:
    >>> from e2eports.file_lock import ExclusiveFileLock
    >>>
    >>> lock = ExclusiveFileLock(Path("/tmp/e2e/__ports_json_lock__"), timeout=10)
    >>> with lock.hold():
    ...     update_shared_file()
"""

import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator

import psutil

from e2eports.config import DEFAULT_MAX_POLL_INTERVAL, DEFAULT_POLL_INTERVAL
from e2eports.paths import OWNER_FILENAME

logger = logging.getLogger(__name__)

# Per-call timeout meaning "use the timeout given at construction"
USE_DEFAULT_TIMEOUT: Any = object()


class FileLockError(Exception):
    """Base class for lock marker errors."""

    pass


class LockContendedError(FileLockError):
    """The marker already exists (held by someone else). Transient."""

    pass


class LockIOError(FileLockError):
    """Creating or removing the marker failed for a reason other than contention."""

    pass


class LockTimeoutError(FileLockError):
    """The lock could not be acquired within the timeout."""

    pass


class LockReleaseError(FileLockError, RuntimeError):
    """Release was requested for a handle that does not hold the lock."""

    pass


@dataclass
class LockOwner:
    """Owner record written into the marker directory.

    Attributes:
        pid: Process ID of the holder
        hostname: Host the holder runs on (PIDs are only meaningful locally)
        token: Random token identifying this particular acquisition
        acquired_at: Unix timestamp of the acquisition
    """

    pid: int
    hostname: str
    token: str
    acquired_at: float

    @classmethod
    def current(cls) -> "LockOwner":
        """Create an owner record for the calling process."""
        return cls(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            token=uuid.uuid4().hex,
            acquired_at=time.time(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockOwner":
        """Create an owner record from a dictionary."""
        return cls(
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            token=str(data["token"]),
            acquired_at=float(data["acquired_at"]),
        )


@dataclass
class LockHandle:
    """Exclusive ownership of a lock marker.

    A handle is only created after the marker directory was created
    successfully, and stops being held once it has been released.

    Attributes:
        lock_path: Marker directory acting as the lock token
        token: Owner token written into the marker
        acquired_at: Unix timestamp of the acquisition
        held: Whether this handle still owns the marker
    """

    lock_path: Path
    token: str
    acquired_at: float = field(default_factory=time.time)
    held: bool = True

    def held_for(self) -> float:
        """Seconds since the lock was acquired."""
        return time.time() - self.acquired_at


def _read_owner_at(marker: Path) -> LockOwner | None:
    """Read the owner record of a marker directory.

    Returns:
        LockOwner, or None if the record is missing, partially written or invalid
    """
    try:
        with open(marker / OWNER_FILENAME, encoding="utf-8") as f:
            data = json.load(f)
        return LockOwner.from_dict(data)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


def _remove_marker_dir(marker: Path) -> None:
    """Remove a marker directory and its owner record.

    Raises:
        FileNotFoundError: If the marker does not exist
        OSError: If removal fails
    """
    (marker / OWNER_FILENAME).unlink(missing_ok=True)
    os.rmdir(marker)


class ExclusiveFileLock:
    """Blocking mutual exclusion on a marker directory.

    Any process (or thread) constructing an ExclusiveFileLock for the same
    lock_path competes for the same critical section. There is no fairness:
    whichever waiter retries first after a release wins.

    Example:
        >>> lock = ExclusiveFileLock(tmp_dir / "__ports_json_lock__")
        >>> handle = lock.acquire()
        >>> try:
        ...     do_work()
        ... finally:
        ...     lock.release(handle)
    """

    def __init__(
        self,
        lock_path: Path,
        timeout: float | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL,
        stale_after: float | None = None,
        reclaim_dead_owners: bool = False,
    ):
        """Initialize the lock.

        Args:
            lock_path: Marker directory to create/remove
            timeout: Default acquisition timeout in seconds (None waits forever)
            poll_interval: Initial back-off between attempts, in seconds
            max_poll_interval: Cap for the exponential back-off, in seconds
            stale_after: Age in seconds after which a marker is considered
                         abandoned and may be broken (None disables)
            reclaim_dead_owners: Break markers whose owner PID no longer exists
                                 on this host
        """
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.stale_after = stale_after
        self.reclaim_dead_owners = reclaim_dead_owners

    def __repr__(self) -> str:
        return f"ExclusiveFileLock({str(self.lock_path)!r})"

    def acquire(self, timeout: float | None = USE_DEFAULT_TIMEOUT) -> LockHandle:
        """Block until the marker is created by this caller.

        Args:
            timeout: Per-call timeout in seconds. None waits forever even if
                     the lock has a default timeout; omitted uses the default
                     given at construction

        Returns:
            LockHandle in the held state

        Raises:
            LockTimeoutError: If the lock was not acquired in time
            LockIOError: If the marker could not be created for a reason
                         other than contention
        """
        effective_timeout = self.timeout if timeout is USE_DEFAULT_TIMEOUT else timeout
        started = time.monotonic()
        deadline = None if effective_timeout is None else started + effective_timeout
        delay = self.poll_interval
        attempts = 0

        while True:
            attempts += 1
            try:
                handle = self._create_marker()
            except LockContendedError:
                pass
            else:
                logger.debug(f"Acquired {self.lock_path} after {attempts} attempt(s) in {time.monotonic() - started:.3f}s")
                return handle

            if self._clear_if_abandoned():
                # Marker was broken; retry immediately
                continue

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                owner = self.read_owner()
                holder = f" (held by pid {owner.pid} on {owner.hostname})" if owner else ""
                raise LockTimeoutError(f"Timed out after {effective_timeout}s waiting for lock {self.lock_path}{holder}")

            sleep_for = delay if deadline is None else min(delay, deadline - now)
            time.sleep(sleep_for)
            delay = min(delay * 2, self.max_poll_interval)

    def try_acquire(self) -> LockHandle | None:
        """Make a single attempt to acquire the lock.

        Returns:
            LockHandle if acquired, None if the marker is held by someone else

        Raises:
            LockIOError: If the marker could not be created for a reason
                         other than contention
        """
        try:
            return self._create_marker()
        except LockContendedError:
            return None

    def release(self, handle: LockHandle) -> None:
        """Remove the marker, letting the next waiter in.

        Args:
            handle: Handle returned by acquire()/try_acquire()

        Raises:
            LockReleaseError: If the handle is not held or belongs to another lock
            LockIOError: If the marker exists but could not be removed
        """
        if not handle.held:
            raise LockReleaseError(f"Lock {handle.lock_path} is not held by this handle (already released?)")
        if Path(handle.lock_path) != self.lock_path:
            raise LockReleaseError(f"Handle for {handle.lock_path} cannot release {self.lock_path}")

        owner = self.read_owner()
        if owner is not None and owner.token != handle.token:
            # Our marker was broken as stale and someone else holds it now
            handle.held = False
            logger.warning(f"Lock {self.lock_path} was taken over by pid {owner.pid} while held; leaving it in place")
            return
        if owner is None and self.lock_path.is_dir():
            # Our own record is written before a handle exists, so an ownerless
            # marker belongs to a new holder that has not written its record yet
            handle.held = False
            logger.warning(f"Lock {self.lock_path} was replaced by a new holder while held; leaving it in place")
            return

        try:
            _remove_marker_dir(self.lock_path)
        except FileNotFoundError:
            logger.warning(f"Lock marker {self.lock_path} disappeared while held")
        except OSError as e:
            raise LockIOError(f"Failed to remove lock marker {self.lock_path}: {e}") from e

        handle.held = False
        logger.debug(f"Released {self.lock_path} after {handle.held_for():.3f}s")

    @contextmanager
    def hold(self, timeout: float | None = USE_DEFAULT_TIMEOUT) -> Iterator[LockHandle]:
        """Hold the lock for the duration of a with-block.

        The lock is released on every exit path of the block.

        Args:
            timeout: Per-call timeout in seconds (see acquire())

        Yields:
            LockHandle in the held state
        """
        handle = self.acquire(timeout=timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def is_locked(self) -> bool:
        """Check whether the marker currently exists."""
        return self.lock_path.is_dir()

    def read_owner(self) -> LockOwner | None:
        """Read the owner record of the current marker, if any."""
        return _read_owner_at(self.lock_path)

    def break_lock(self) -> bool:
        """Forcibly remove the marker, whoever holds it.

        Only safe when no process can be inside the critical section, e.g.
        after a crashed test run.

        Returns:
            True if a marker was removed, False if there was none

        Raises:
            LockIOError: If the marker could not be removed
        """
        try:
            _remove_marker_dir(self.lock_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise LockIOError(f"Failed to break lock marker {self.lock_path}: {e}") from e
        logger.info(f"Broke lock marker {self.lock_path}")
        return True

    def _create_marker(self) -> LockHandle:
        """Atomically create the marker and write the owner record.

        Raises:
            LockContendedError: If the marker already exists
            LockIOError: On any other failure (no marker is left behind)
        """
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockIOError(f"Failed to create lock directory {self.lock_path.parent}: {e}") from e

        try:
            os.mkdir(self.lock_path)
        except FileExistsError as e:
            raise LockContendedError(f"Lock {self.lock_path} is held") from e
        except OSError as e:
            raise LockIOError(f"Failed to create lock marker {self.lock_path}: {e}") from e

        try:
            owner = LockOwner.current()
            with open(self.lock_path / OWNER_FILENAME, "w", encoding="utf-8") as f:
                json.dump(owner.to_dict(), f)
        except BaseException as e:
            # The marker must not outlive a failed or interrupted acquisition
            try:
                _remove_marker_dir(self.lock_path)
            except OSError as cleanup_error:
                logger.error(f"Failed to remove lock marker {self.lock_path} after owner write failure: {cleanup_error}")
            if isinstance(e, OSError):
                raise LockIOError(f"Failed to write lock owner record in {self.lock_path}: {e}") from e
            raise

        return LockHandle(lock_path=self.lock_path, token=owner.token, acquired_at=owner.acquired_at)

    def _abandoned_reason(self, owner: LockOwner | None) -> str | None:
        """Decide whether the current marker is abandoned.

        Returns:
            Human-readable reason, or None if the marker must be respected
        """
        if self.reclaim_dead_owners and owner is not None and owner.hostname == socket.gethostname():
            if not psutil.pid_exists(owner.pid):
                return f"owner pid {owner.pid} no longer exists"

        if self.stale_after is not None:
            if owner is not None:
                acquired_at = owner.acquired_at
            else:
                # Holder may not have written its record yet; use the marker's mtime
                try:
                    acquired_at = self.lock_path.stat().st_mtime
                except OSError:
                    return None
            age = time.time() - acquired_at
            if age > self.stale_after:
                return f"marker is {age:.1f}s old (stale after {self.stale_after}s)"

        return None

    def _clear_if_abandoned(self) -> bool:
        """Break the current marker if the stale policy says it is abandoned.

        The marker is renamed to a unique tombstone first, so only one waiter
        can break it. If the tombstone turns out to carry a different owner
        token than the one judged stale, a fresh holder got in between and the
        rename is undone.

        Returns:
            True if the caller should retry immediately
        """
        if self.stale_after is None and not self.reclaim_dead_owners:
            return False

        owner = self.read_owner()
        reason = self._abandoned_reason(owner)
        if reason is None:
            return False

        expected_token = owner.token if owner is not None else None
        tombstone = self.lock_path.with_name(f"{self.lock_path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, tombstone)
        except FileNotFoundError:
            # Released or broken by someone else meanwhile
            return True
        except OSError as e:
            raise LockIOError(f"Failed to break stale lock marker {self.lock_path}: {e}") from e

        moved = _read_owner_at(tombstone)
        moved_token = moved.token if moved is not None else None
        if moved_token != expected_token:
            try:
                os.rename(tombstone, self.lock_path)
            except OSError as e:
                logger.warning(f"Broke a live lock {self.lock_path} and could not restore it: {e}")
            else:
                logger.warning(f"Lock {self.lock_path} changed hands while being judged stale; restored it")
                return False
        else:
            logger.info(f"Breaking abandoned lock {self.lock_path}: {reason}")

        try:
            _remove_marker_dir(tombstone)
        except OSError as e:
            logger.warning(f"Failed to remove stale lock tombstone {tombstone}: {e}")
        return True
