"""Networked coordination state: which chunks are done, and who holds which.

A chunk is done when its result file exists; a chunk is being computed
while its lock is held. `FileChunkStore` keeps both in the job's work
directory on the shared filesystem. `MemoryChunkStore` has the same
contract inside one process and is used to exercise worker logic without
touching disk.
"""

from __future__ import annotations

import os
import pathlib
import pickle
import re
import threading
from abc import ABC, abstractmethod

from .helpers import get_logger, hostname
from .locks import FileLock, LockOwner, lock_path
from .utils import atomic_write_bytes

logger = get_logger(__name__)

_CHUNK_RE = re.compile(r"^chunk_(\d+)\.pkl$")


class ChunkStore(ABC):
    """Hand out each chunk to exactly one taker and remember finished ones."""

    @abstractmethod
    def exists(self, index: int) -> bool:
        """True if the result for chunk `index` has been recorded."""

    @abstractmethod
    def is_locked(self, index: int) -> bool:
        """True if a lock for chunk `index` appears to be held."""

    @abstractmethod
    def try_lock(self, index: int, deadline: float = 0.0):
        """Non-blocking claim; returns a token or None."""

    @abstractmethod
    def write(self, index: int, outputs: list) -> None:
        """Record the outputs of chunk `index`. Caller must hold its lock."""

    @abstractmethod
    def read(self, index: int) -> list | None:
        """Outputs of chunk `index`, or None if not recorded."""

    @abstractmethod
    def release(self, token) -> None:
        """Release a token from `try_lock`. Idempotent."""

    @abstractmethod
    def clear_stale(self, index: int) -> bool:
        """Force-take and drop the lock of chunk `index`."""

    @abstractmethod
    def lock_owner(self, index: int) -> LockOwner | None:
        """Owner recorded for a held lock of chunk `index`."""

    @abstractmethod
    def completed(self) -> set[int]:
        """Indices of all recorded chunks."""

    @abstractmethod
    def locked(self) -> set[int]:
        """Indices of all chunks with a lock file present."""

    def set_deadline(self, token, deadline: float) -> None:
        """Update the deadline recorded for a held claim."""


class FileChunkStore(ChunkStore):
    def __init__(self, work_dir):
        self.work_dir = pathlib.Path(work_dir)

    def chunk_path(self, index: int) -> pathlib.Path:
        return self.work_dir / f"chunk_{index:06d}.pkl"

    def exists(self, index):
        return self.chunk_path(index).exists()

    def is_locked(self, index):
        return lock_path(self.chunk_path(index)).exists()

    def try_lock(self, index, deadline=0.0):
        return FileLock.try_acquire(self.chunk_path(index), deadline=deadline)

    def write(self, index, outputs):
        path = self.chunk_path(index)
        if path.exists():
            # claim-before-compute makes this unreachable for correct callers
            raise FileExistsError(f"Result for chunk {index} already recorded")
        atomic_write_bytes(path, pickle.dumps(list(outputs), protocol=pickle.HIGHEST_PROTOCOL))

    def read(self, index):
        try:
            with open(self.chunk_path(index), "rb") as fh:
                return pickle.load(fh)
        except FileNotFoundError:
            return None

    def release(self, token):
        if token is not None:
            token.release()

    def set_deadline(self, token, deadline):
        token.set_deadline(deadline)

    def clear_stale(self, index):
        return FileLock.force_acquire(self.chunk_path(index))

    def lock_owner(self, index):
        return FileLock.read_owner(self.chunk_path(index))

    def _scan(self):
        try:
            return os.listdir(self.work_dir)
        except FileNotFoundError:
            return []

    def completed(self):
        found = set()
        for name in self._scan():
            match = _CHUNK_RE.match(name)
            if match:
                found.add(int(match.group(1)))
        return found

    def locked(self):
        found = set()
        for name in self._scan():
            if name.endswith(".lock"):
                match = _CHUNK_RE.match(name[: -len(".lock")])
                if match:
                    found.add(int(match.group(1)))
        return found

    def __repr__(self):
        return f"{self.__class__.__name__}({str(self.work_dir)!r})"


class _MemoryToken:
    __slots__ = ("index", "owner", "released", "alive")

    def __init__(self, index, owner, alive=True):
        self.index = index
        self.owner = owner
        self.released = False
        self.alive = alive


class MemoryChunkStore(ChunkStore):
    """Thread-safe in-process fake of `FileChunkStore`."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: dict[int, list] = {}
        self._holders: dict[int, _MemoryToken] = {}
        self.writes: dict[int, int] = {}

    def exists(self, index):
        with self._lock:
            return index in self._results

    def is_locked(self, index):
        with self._lock:
            return index in self._holders

    def try_lock(self, index, deadline=0.0):
        with self._lock:
            if index in self._holders:
                return None
            token = _MemoryToken(index, LockOwner(hostname(), os.getpid(), deadline))
            self._holders[index] = token
            return token

    def write(self, index, outputs):
        with self._lock:
            if index in self._results:
                raise FileExistsError(f"Result for chunk {index} already recorded")
            self._results[index] = list(outputs)
            self.writes[index] = self.writes.get(index, 0) + 1

    def read(self, index):
        with self._lock:
            result = self._results.get(index)
            return None if result is None else list(result)

    def release(self, token):
        if token is None:
            return
        with self._lock:
            if token.released:
                return
            token.released = True
            if self._holders.get(token.index) is token:
                del self._holders[token.index]

    def set_deadline(self, token, deadline):
        with self._lock:
            token.owner = LockOwner(token.owner.host, token.owner.pid, deadline)

    def clear_stale(self, index):
        with self._lock:
            token = self._holders.get(index)
            if token is None:
                return True
            if token.alive:
                return False
            del self._holders[index]
            token.released = True
        return True

    def lock_owner(self, index):
        with self._lock:
            token = self._holders.get(index)
            return None if token is None else token.owner

    def completed(self):
        with self._lock:
            return set(self._results)

    def locked(self):
        with self._lock:
            return set(self._holders)

    def force_owner(self, index, owner: LockOwner):
        """Plant a lock as if held by another process (for stall scenarios)."""
        with self._lock:
            self._holders[index] = _MemoryToken(index, owner, alive=False)


__all__ = ["ChunkStore", "FileChunkStore", "MemoryChunkStore"]
