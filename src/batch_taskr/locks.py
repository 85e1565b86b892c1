"""Lock-file based mutual exclusion.

A lock for resource ``R`` is the file ``R.lock`` holding an exclusive,
non-blocking ``flock``. The existence check before locking is only a fast
path; the OS lock is what guarantees exclusion. Releasing unlinks the file
while still holding the lock, and a fresh acquirer checks that the path it
locked still names the same inode, so a process that opened the file just
before it was unlinked cannot end up holding a lock nobody else can see.
"""

from __future__ import annotations

import dataclasses
import fcntl
import os
import pathlib
import time

from .helpers import get_logger, hostname

logger = get_logger(__name__)

LOCK_SUFFIX = ".lock"


@dataclasses.dataclass(frozen=True)
class LockOwner:
    """Who holds a lock, as recorded in the lock file."""

    host: str
    pid: int
    deadline: float = 0.0

    def expired(self, now=None, grace: float = 0.0) -> bool:
        if not self.deadline:
            return False
        return (now if now is not None else time.time()) > self.deadline + grace

    @classmethod
    def parse(cls, text: str) -> "LockOwner | None":
        parts = text.split()
        if len(parts) < 2:
            return None
        try:
            deadline = float(parts[2]) if len(parts) > 2 else 0.0
            return cls(parts[0], int(parts[1]), deadline)
        except ValueError:
            return None


def lock_path(resource) -> pathlib.Path:
    resource = pathlib.Path(resource)
    return resource.with_name(resource.name + LOCK_SUFFIX)


class FileLock:
    """A held lock on ``<resource>.lock``. Obtain one with `try_acquire`."""

    def __init__(self, path: pathlib.Path, fd: int):
        self.path = path
        self._fd: int | None = fd
        self._ino = os.fstat(fd).st_ino

    @classmethod
    def try_acquire(cls, resource, force: bool = False, deadline: float = 0.0) -> "FileLock | None":
        """Try once to lock `resource`; never blocks.

        Returns None when the lock file already exists (unless `force`),
        or when another process holds the OS lock.
        """
        path = lock_path(resource)
        if not force and path.exists():
            return None
        try:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o666)
        except FileNotFoundError:
            # work dir removed under us (job cleaned up)
            return None
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            os.close(fd)
            return None
        except OSError:
            os.close(fd)
            raise

        try:
            same = os.stat(path).st_ino == os.fstat(fd).st_ino
        except FileNotFoundError:
            same = False
        if not same:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return None

        lock = cls(path, fd)
        lock.set_deadline(deadline)
        return lock

    @classmethod
    def force_acquire(cls, resource) -> bool:
        """Grab and immediately release a possibly stale lock.

        Returns True if the lock file is gone afterwards, i.e. its owner was
        dead (or had just finished) and the way is clear.
        """
        lock = cls.try_acquire(resource, force=True)
        if lock is None:
            return not lock_path(resource).exists()
        lock.release()
        logger.debug(f"Cleared stale lock for {resource}")
        return True

    @staticmethod
    def read_owner(resource) -> LockOwner | None:
        try:
            return LockOwner.parse(lock_path(resource).read_text())
        except (FileNotFoundError, UnicodeDecodeError):
            return None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def set_deadline(self, deadline: float) -> None:
        """Record owner and deadline in the lock file for stall detection."""
        if self._fd is None:
            return
        line = f"{hostname()} {os.getpid()} {deadline:.3f}\n".encode("ascii")
        os.ftruncate(self._fd, 0)
        os.pwrite(self._fd, line, 0)

    def release(self) -> None:
        """Unlink the lock file, drop the OS lock and close. Idempotent."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            if os.stat(self.path).st_ino == self._ino:
                os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete lock file {self.path}: {e}")
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def __del__(self):
        # last resort; the OS drops the flock with the descriptor anyway
        if getattr(self, "_fd", None) is not None:
            self.release()

    def __repr__(self):
        state = "held" if self.held else "released"
        return f"{self.__class__.__name__}({str(self.path)!r}, {state})"


__all__ = ["FileLock", "LockOwner", "lock_path", "LOCK_SUFFIX"]
