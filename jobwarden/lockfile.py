"""PID lock that keeps a data directory to a single active scheduler process.

Two live schedulers over the same store would double-fire every job.
"""

import contextlib
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def lock_holder(*, lock_file: Path) -> int | None:
    """Return the PID of the live process holding the lock, or None.

    A lock whose PID is unreadable or no longer running counts as free.
    """
    try:
        pid = int(lock_file.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        # Alive, but owned by another user.
        return pid
    return pid


def acquire_lock(*, lock_file: Path) -> bool:
    """Acquire the scheduler lock. Returns True if lock acquired."""
    holder = lock_holder(lock_file=lock_file)
    if holder is not None:
        logger.error(f"Another scheduler is running (PID {holder})")
        return False
    if holder is None and lock_file.exists():
        logger.warning(f"Removing stale scheduler lock {lock_file}")

    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_file.write_text(str(os.getpid()))
    return True


def release_lock(*, lock_file: Path) -> None:
    """Delete the lock file, ignoring errors."""
    with contextlib.suppress(OSError):
        lock_file.unlink()
