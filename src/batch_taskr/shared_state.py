"""Co-located coordination state: a memory-mapped region shared by the
worker processes of one machine.

Region file layout (all little-endian)::

    header   next_index, cancelled, n_slots, n_chunks, chunk_size, n
    slots    n_slots x (finished, pid, deadline, current, launches)
    states   n_chunks x uint8 chunk state
    rows     n x uint8 row state

Claiming is a fetch-and-add on ``next_index`` performed while holding an
exclusive ``flock`` on the region file, which makes it atomic across
processes. Slot records are written only by the worker occupying the slot,
except when the controller takes a stalled slot back.

An output that does not fit the preallocated buffer (another shape, a
dtype the buffer cannot hold exactly, or a recorded error) is pickled to a
spill file next to the region instead, and its row is marked SPILLED.
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import fcntl
import os
import pathlib
import pickle
import time
from typing import Callable

import numpy as np

from .helpers import get_logger
from .utils import atomic_write_bytes

logger = get_logger(__name__)

HEADER_DTYPE = np.dtype(
    [
        ("next_index", "<i8"),
        ("cancelled", "<i8"),
        ("n_slots", "<i8"),
        ("n_chunks", "<i8"),
        ("chunk_size", "<i8"),
        ("n", "<i8"),
    ]
)
SLOT_DTYPE = np.dtype(
    [
        ("finished", "<i8"),
        ("pid", "<i8"),
        ("deadline", "<f8"),
        ("current", "<i8"),
        ("launches", "<i8"),
    ]
)


class ChunkState(enum.IntEnum):
    PENDING = 0
    CLAIMED = 1
    DONE = 2
    SKIPPED = 3
    REQUEUED = 4


class RowState(enum.IntEnum):
    EMPTY = 0
    STORED = 1
    SPILLED = 2


@dataclasses.dataclass(frozen=True)
class WorkerRecord:
    slot: int
    finished: bool
    pid: int
    deadline: float
    current: int
    launches: int

    @property
    def busy(self) -> bool:
        return self.current >= 0

    def expired(self, now=None) -> bool:
        if not self.busy or not self.deadline:
            return False
        return (now if now is not None else time.time()) > self.deadline


def fill_value(dtype):
    """Placeholder for rows nobody computed: NaN where the dtype has one."""
    dtype = np.dtype(dtype)
    if dtype.kind in "fc":
        return np.nan
    return 0


class SharedRegion:
    def __init__(self, path, fh, header, slots, states, rows):
        self.path = pathlib.Path(path)
        self._fh = fh
        self._header = header
        self._slots = slots
        self._states = states
        self._rows = rows

    @classmethod
    def _map(cls, path, fh, mode, n_slots, n_chunks, n):
        header = np.memmap(fh, dtype=HEADER_DTYPE, mode=mode, offset=0, shape=(1,))
        slots_off = HEADER_DTYPE.itemsize
        slots = np.memmap(fh, dtype=SLOT_DTYPE, mode=mode, offset=slots_off, shape=(max(n_slots, 1),))
        states_off = slots_off + SLOT_DTYPE.itemsize * max(n_slots, 1)
        states = np.memmap(fh, dtype=np.uint8, mode=mode, offset=states_off, shape=(max(n_chunks, 1),))
        rows_off = states_off + max(n_chunks, 1)
        rows = np.memmap(fh, dtype=np.uint8, mode=mode, offset=rows_off, shape=(max(n, 1),))
        return cls(path, fh, header, slots, states, rows)

    @staticmethod
    def size_for(n_slots: int, n_chunks: int, n: int) -> int:
        return (
            HEADER_DTYPE.itemsize
            + SLOT_DTYPE.itemsize * max(n_slots, 1)
            + max(n_chunks, 1)
            + max(n, 1)
        )

    @classmethod
    def create(cls, path, n: int, chunk_size: int, n_slots: int, first_index: int = 0) -> "SharedRegion":
        """Allocate a zeroed region; the counter starts at `first_index`."""
        n_chunks = -(-n // chunk_size)
        if first_index % chunk_size:
            raise ValueError("first_index must fall on a chunk boundary")
        with open(path, "wb") as fh:
            fh.truncate(cls.size_for(n_slots, n_chunks, n))
        fh = open(path, "r+b")
        region = cls._map(path, fh, "r+", n_slots, n_chunks, n)
        hdr = region._header[0]
        hdr["next_index"] = first_index
        hdr["n_slots"] = n_slots
        hdr["n_chunks"] = n_chunks
        hdr["chunk_size"] = chunk_size
        hdr["n"] = n
        region._slots["current"] = -1
        region._states[: first_index // chunk_size] = ChunkState.CLAIMED
        region.flush()
        return region

    @classmethod
    def open(cls, path) -> "SharedRegion":
        header = np.fromfile(path, dtype=HEADER_DTYPE, count=1)[0]
        fh = open(path, "r+b")
        return cls._map(
            path, fh, "r+", int(header["n_slots"]), int(header["n_chunks"]), int(header["n"])
        )

    # --- header ----------------------------------------------------------
    @property
    def n(self) -> int:
        return int(self._header[0]["n"])

    @property
    def chunk_size(self) -> int:
        return int(self._header[0]["chunk_size"])

    @property
    def n_slots(self) -> int:
        return int(self._header[0]["n_slots"])

    @property
    def n_chunks(self) -> int:
        return int(self._header[0]["n_chunks"])

    @property
    def next_index(self) -> int:
        return int(self._header[0]["next_index"])

    @property
    def cancelled(self) -> bool:
        return bool(self._header[0]["cancelled"])

    def cancel(self) -> None:
        self._header[0]["cancelled"] = 1

    @contextlib.contextmanager
    def locked(self):
        """Hold the region lock; every read-modify-write goes through here."""
        fcntl.flock(self._fh.fileno(), fcntl.LOCK_EX)
        try:
            yield self
        finally:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)

    def _fetch_add(self, stride: int) -> int:
        base = int(self._header[0]["next_index"])
        self._header[0]["next_index"] = base + stride
        return base

    def fetch_add(self, stride: int) -> int:
        """Atomically advance the counter; returns the value before the add."""
        with self.locked():
            return self._fetch_add(stride)

    # --- claiming ----------------------------------------------------------
    def claim(self, slot: int, timeout: float = 0.0) -> int | None:
        """Claim the next chunk for `slot`; returns its base iteration or None.

        Fresh chunks come from the counter. Once it has run past the end,
        chunks the controller put back after a stall are handed out.
        """
        cs = self.chunk_size
        with self.locked():
            if self._header[0]["next_index"] < self.n:
                base = self._fetch_add(cs)
            else:
                requeued = np.flatnonzero(self._states == ChunkState.REQUEUED)
                if requeued.size == 0:
                    return None
                base = int(requeued[0]) * cs
            self._states[base // cs] = ChunkState.CLAIMED
            rec = self._slots[slot]
            rec["current"] = base
            rec["deadline"] = time.time() + abs(timeout) if timeout else 0.0
            return base

    def complete(self, slot: int, base: int) -> bool:
        """Mark the chunk at `base` done. False if it was taken back meanwhile."""
        cs = self.chunk_size
        with self.locked():
            rec = self._slots[slot]
            if rec["current"] != base or self._states[base // cs] != ChunkState.CLAIMED:
                return False
            self._states[base // cs] = ChunkState.DONE
            rec["current"] = -1
            rec["deadline"] = 0.0
            return True

    def take_back(
        self,
        slot: int,
        state: ChunkState,
        stalled: Callable[[WorkerRecord], bool],
        kill: Callable[[int], object] | None = None,
    ) -> WorkerRecord | None:
        """Retire the worker in `slot` if `stalled` still holds for it.

        Runs under the region lock, so the worker cannot complete its chunk
        between the check and the kill. The chunk it held goes to `state`
        and the slot is marked finished. Returns the retired record, or None
        if the worker recovered meanwhile.
        """
        with self.locked():
            rec = self.record(slot)
            if not stalled(rec):
                return None
            if kill is not None and rec.pid > 0:
                kill(rec.pid)
            if rec.current >= 0:
                chunk = rec.current // self.chunk_size
                if self._states[chunk] == ChunkState.CLAIMED:
                    self._states[chunk] = state
            raw = self._slots[slot]
            raw["current"] = -1
            raw["deadline"] = 0.0
            raw["finished"] = 1
            return rec

    def set_chunk_state(self, index: int, state: ChunkState) -> None:
        """Set the state of 1-based chunk `index`."""
        with self.locked():
            self._states[index - 1] = state

    def chunk_states(self) -> np.ndarray:
        return np.array(self._states[: self.n_chunks])

    def pending_work(self) -> bool:
        """True while chunks remain that nobody has claimed."""
        with self.locked():
            if self._header[0]["next_index"] < self.n:
                return True
            states = self._states[: self.n_chunks]
            return bool(np.any(states == ChunkState.REQUEUED))

    # --- rows --------------------------------------------------------------
    def set_row_state(self, index: int, state: RowState) -> None:
        """Set the state of 0-based iteration `index`; only its chunk's holder writes it."""
        self._rows[index] = state

    def row_states(self) -> np.ndarray:
        return np.array(self._rows[: self.n])

    # --- slots -------------------------------------------------------------
    def begin(self, slot: int, pid: int | None = None) -> None:
        with self.locked():
            rec = self._slots[slot]
            rec["pid"] = os.getpid() if pid is None else pid
            rec["finished"] = 0

    def finish(self, slot: int) -> None:
        with self.locked():
            rec = self._slots[slot]
            rec["finished"] = 1
            rec["current"] = -1
            rec["deadline"] = 0.0

    def reset_slot(self, slot: int) -> int:
        """Ready a slot for a replacement worker; returns its launch count."""
        with self.locked():
            rec = self._slots[slot]
            rec["finished"] = 0
            rec["pid"] = 0
            rec["current"] = -1
            rec["deadline"] = 0.0
            rec["launches"] += 1
            return int(rec["launches"])

    def record(self, slot: int) -> WorkerRecord:
        rec = self._slots[slot]
        return WorkerRecord(
            slot=slot,
            finished=bool(rec["finished"]),
            pid=int(rec["pid"]),
            deadline=float(rec["deadline"]),
            current=int(rec["current"]),
            launches=int(rec["launches"]),
        )

    def records(self) -> list[WorkerRecord]:
        return [self.record(slot) for slot in range(self.n_slots)]

    def all_finished(self) -> bool:
        return bool(np.all(self._slots["finished"][: self.n_slots] == 1))

    def flush(self) -> None:
        for arr in (self._header, self._slots, self._states, self._rows):
            arr.flush()

    def close(self) -> None:
        if self._fh is None:
            return
        self.flush()
        self._header = self._slots = self._states = self._rows = None
        self._fh.close()
        self._fh = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def create_output(path, n: int, shape: tuple, dtype) -> np.memmap:
    """Preallocate the shared output buffer of shape ``(n, *shape)``."""
    out = np.memmap(path, dtype=np.dtype(dtype), mode="w+", shape=(max(n, 1), *shape))
    out[:] = fill_value(dtype)
    return out


def open_output(path, n: int, shape: tuple, dtype, writable: bool = True) -> np.memmap:
    return np.memmap(
        path, dtype=np.dtype(dtype), mode="r+" if writable else "r", shape=(max(n, 1), *shape)
    )


def spill_path(directory, index: int) -> pathlib.Path:
    return pathlib.Path(directory) / f"row_{index:08d}.pkl"


def write_spill(directory, index: int, value) -> None:
    data = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    atomic_write_bytes(spill_path(directory, index), data)


def read_spill(directory, index: int):
    with open(spill_path(directory, index), "rb") as fh:
        return pickle.load(fh)


__all__ = [
    "ChunkState",
    "RowState",
    "SharedRegion",
    "WorkerRecord",
    "create_output",
    "fill_value",
    "open_output",
    "read_spill",
    "spill_path",
    "write_spill",
]
