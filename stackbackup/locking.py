"""
Run lock.

A run holds an exclusive, non-blocking ``flock`` on a lock file for its whole
duration. The lock file records the PID of the holder and is removed when the
run ends, whichever way it ends.
"""
import fcntl
import os
from contextlib import contextmanager
from pathlib import Path

from stackbackup.errors import LockError
from stackbackup.utils import get_logger

logger = get_logger(__name__)


def read_lock_pid(lock_path):
    """Return the PID recorded in a lock file, or None."""
    try:
        text = Path(lock_path).read_text().strip()
        return int(text) if text else None
    except (OSError, ValueError):
        return None


def _same_file(fd, lock_path):
    """True if `fd` still refers to the file currently at `lock_path`."""
    try:
        on_disk = os.stat(str(lock_path))
    except FileNotFoundError:
        return False
    held = os.fstat(fd)
    return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)


@contextmanager
def run_lock(lock_path):
    """Hold the run lock at `lock_path` for the duration of the block.

    A holder removes the lock file on release, so a lock taken on a file that
    has meanwhile been unlinked (or replaced) is dropped and taken again on the
    current file.

    Raises:
        LockError: if another process (or another open of the same file) holds it
    """
    lock_path = Path(lock_path)
    while True:
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {lock_path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            holder = read_lock_pid(lock_path)
            detail = f" (pid {holder})" if holder else ''
            raise LockError(f"Another backup is already running{detail}; lock file: {lock_path}") from None
        except OSError as e:
            os.close(fd)
            raise LockError(f"Cannot lock {lock_path}: {e}") from e

        try:
            same = _same_file(fd, lock_path)
        except OSError as e:
            os.close(fd)
            raise LockError(f"Cannot lock {lock_path}: {e}") from e
        if same:
            break
        logger.debug("Lock file %s was replaced while locking, retrying", lock_path)
        os.close(fd)

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug("Acquired lock %s", lock_path)
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove lock file %s: %s", lock_path, e)
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Released lock %s", lock_path)
