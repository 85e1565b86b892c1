"""Worker-side components: claim chunks, compute them, record the results.

A worker process is started with the path of a job descriptor and keeps
claiming chunks until none are left. Run it as::

    python -m batch_taskr DESCRIPTOR [--slot N] [--log-level LEVEL]
"""

import argparse
import enum
import os
import pathlib
import random
import sys
import threading
import time
import traceback
import typing

from . import binary_store, descriptor as descriptor_mod
from .aggregate import IterationError, row_fits
from .chunk_store import ChunkStore, FileChunkStore
from .descriptor import JobDescriptor, Mode, TimeoutPolicy
from .helpers import get_logger, set_log_level
from .launcher import WorkerLauncher
from .partition import chunk_bounds, chunk_count
from .protocols import WorkerProtocol
from .shared_state import RowState, SharedRegion, open_output, write_spill

logger = get_logger(__name__)

# exit status of a worker that gave up a chunk on timeout
TIMEOUT_EXIT_CODE = 3


def past(deadline: float | None) -> bool:
    return deadline is not None and time.time() > deadline


class WorkerState(enum.Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    COMPUTING = "computing"
    RECORDING = "recording"
    DONE = "done"
    KILLED = "killed"


class ChunkComputer:
    """Evaluate the user function for a run of iterations."""

    def __init__(self, func: typing.Callable, inputs, context=None):
        self.func = func
        self.inputs = inputs
        self.context = context

    def compute_one(self, index: int):
        try:
            if self.context is None:
                return self.func(self.inputs[index])
            return self.func(self.inputs[index], self.context)
        except Exception as e:
            logger.warning(f"Iteration {index} failed: {e!r}")
            return IterationError(index, type(e).__name__, traceback.format_exc())

    def __call__(self, indices: typing.Iterable[int]) -> list:
        return [self.compute_one(i) for i in indices]

    @classmethod
    def from_descriptor(cls, desc: JobDescriptor) -> "ChunkComputer":
        func = descriptor_mod.resolve_function(desc.func)
        context = descriptor_mod.resolve_context(desc.context)
        inputs = binary_store.read(desc.input_path, mmap=True)
        return cls(func, inputs, context)


class ChunkWatchdog:
    """Per-chunk timer armed by the worker that holds the chunk.

    Exactly one of `disarm` (chunk finished in time) and the expiry
    callback wins for each arming.
    """

    def __init__(self, timeout: float, on_expire: typing.Callable[[int, typing.Any], None]):
        self.timeout = abs(timeout)
        self.on_expire = on_expire
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._resolved = True
        self._chunk = None
        self._token = None

    def arm(self, chunk: int, token) -> None:
        with self._lock:
            self._chunk, self._token = chunk, token
            self._resolved = False
            self._timer = threading.Timer(self.timeout, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def disarm(self) -> bool:
        """Stop the timer. False if it already fired for this chunk."""
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            if self._timer is not None:
                self._timer.cancel()
            return True

    def _fire(self):
        with self._lock:
            if self._resolved:
                return
            self._resolved = True
            chunk, token = self._chunk, self._token
        self.on_expire(chunk, token)


class CancellationWatcher(threading.Thread):
    """Hard-exits the process once the job descriptor is gone."""

    def __init__(self, path, period: float = 2.0, exit_fn=os._exit):
        super().__init__(name="CancellationWatcher", daemon=True)
        self.path = pathlib.Path(path)
        self.period = period
        self.exit_fn = exit_fn
        self._stop_evt = threading.Event()

    def run(self):
        while not self._stop_evt.wait(self.period):
            if not self.path.exists():
                logger.info(f"Job descriptor {self.path.name} removed, exiting")
                self.exit_fn(0)
                return

    def stop(self):
        self._stop_evt.set()


class ChunkWorker(WorkerProtocol):
    """Networked worker: claims chunks through lock files in the work dir.

    Chunks are visited in an order shifted by a random offset so that
    workers starting together do not all contend for the same lock.
    """

    def __init__(
        self,
        desc: JobDescriptor,
        store: ChunkStore | None = None,
        computer: ChunkComputer | None = None,
        offset: int | None = None,
        cancelled: typing.Callable[[], bool] | None = None,
        exit_fn=os._exit,
        respawn: typing.Callable[[], typing.Any] | None = None,
    ):
        self.desc = desc
        self.store = store
        self.computer = computer
        self.n_chunks = chunk_count(desc.n, desc.chunk_size) if desc.n else 0
        if offset is None:
            offset = random.randrange(self.n_chunks) if self.n_chunks else 0
        self.offset = offset
        self._cancelled = cancelled or (lambda: not descriptor_mod.is_live(desc))
        self.exit_fn = exit_fn
        self.respawn = respawn or self._respawn_local
        self.state = WorkerState.IDLE
        self.killed = False
        self.computed: list[int] = []
        self.watchdog = (
            ChunkWatchdog(desc.timeout, self._on_timeout) if desc.timeout else None
        )
        self.logger = get_logger(self.__class__.__name__)

    def setup(self, **kwargs):
        if self.store is None:
            self.store = FileChunkStore(self.desc.work_dir)
        if self.computer is None:
            self.computer = ChunkComputer.from_descriptor(self.desc)

    def order(self) -> list[int]:
        return [(self.offset + k) % self.n_chunks + 1 for k in range(self.n_chunks)]

    def process(
        self, max_chunks: int | None = None, deadline: float | None = None, **kwargs
    ) -> int:
        """Claim and compute chunks until every chunk is done or taken.

        No new chunk is claimed once the wall-clock `deadline` has passed.
        """
        for index in self.order():
            if self.killed:
                break
            if self._cancelled():
                self.logger.info("Job cancelled, stopping")
                break
            if max_chunks is not None and len(self.computed) >= max_chunks:
                break
            if past(deadline):
                break
            if self.store.exists(index):
                continue
            self.state = WorkerState.CLAIMING
            deadline = time.time() + abs(self.desc.timeout) if self.desc.timeout else 0.0
            token = self.store.try_lock(index, deadline)
            if token is None:
                self.logger.debug(f"Chunk {index} is taken")
                self.state = WorkerState.IDLE
                continue
            self.compute_chunk(index, token)
        if not self.killed:
            self.state = WorkerState.DONE
        return len(self.computed)

    def compute_chunk(self, index: int, token, head: list | None = None) -> bool:
        """Compute chunk `index` whose lock is held as `token`, and record it.

        `head` holds outputs already computed for the first iterations of
        the chunk. The lock is always released, by this call or by the
        watchdog. Returns True if the result was written.
        """
        try:
            # someone may have finished it between our check and our lock
            if self.store.exists(index):
                return False
            chunk = chunk_bounds(index, self.desc.n, self.desc.chunk_size)
            head = list(head or [])
            if self.watchdog:
                self.watchdog.arm(index, token)
            self.state = WorkerState.COMPUTING
            outputs = head + self.computer(range(chunk.start + len(head), chunk.end))
            if self.watchdog and not self.watchdog.disarm():
                # the watchdog gave the chunk up and owns the lock now
                self.killed = True
                self.state = WorkerState.KILLED
                token = None
                return False
            if self._cancelled():
                return False
            self.state = WorkerState.RECORDING
            self.store.write(index, outputs)
            self.computed.append(index)
            self.logger.debug(f"Recorded chunk {index}")
            return True
        finally:
            if token is not None:
                self.store.release(token)
            if not self.killed:
                self.state = WorkerState.IDLE

    def _on_timeout(self, index: int, token) -> None:
        self.logger.warning(
            f"Chunk {index} exceeded its {abs(self.desc.timeout):g}s timeout"
        )
        self.state = WorkerState.KILLED
        self.killed = True
        try:
            if self.desc.policy is TimeoutPolicy.SKIP and not self.store.exists(index):
                chunk = chunk_bounds(index, self.desc.n, self.desc.chunk_size)
                self.store.write(index, [None] * len(chunk))
            self.store.release(token)
            if not self._cancelled():
                self.respawn()
        except Exception as e:
            self.logger.error(f"Error giving up chunk {index}: {e}", exc_info=True)
        finally:
            self.exit_fn(TIMEOUT_EXIT_CODE)

    def _respawn_local(self):
        return WorkerLauncher(self.desc).launch()

    def cleanup(self):
        if self.watchdog:
            self.watchdog.disarm()


class SharedWorker(WorkerProtocol):
    """Co-located worker: claims chunks from the shared counter."""

    def __init__(
        self,
        desc: JobDescriptor,
        slot: int,
        computer: ChunkComputer | None = None,
        region: SharedRegion | None = None,
        output=None,
        cancelled: typing.Callable[[], bool] | None = None,
    ):
        self.desc = desc
        self.slot = slot
        self.computer = computer
        self.region = region
        self.output = output
        self._owns_region = region is None
        self._cancelled = cancelled
        self.state = WorkerState.IDLE
        self.computed: list[int] = []
        self.logger = get_logger(self.__class__.__name__)

    def cancelled(self) -> bool:
        if self.region.cancelled:
            return True
        if self._cancelled is not None:
            return self._cancelled()
        return not descriptor_mod.is_live(self.desc)

    def setup(self, **kwargs):
        if self.region is None:
            self.region = SharedRegion.open(self.desc.region_path)
        self.region.begin(self.slot)
        if self.output is None:
            self.output = open_output(
                self.desc.output_path, self.desc.n, self.desc.output_shape, self.desc.output_dtype
            )
        if self.computer is None:
            self.computer = ChunkComputer.from_descriptor(self.desc)

    def process(self, deadline: float | None = None, **kwargs) -> int:
        cs = self.desc.chunk_size
        while True:
            if self.cancelled():
                self.logger.info("Job cancelled, stopping")
                break
            if past(deadline):
                break
            self.state = WorkerState.CLAIMING
            base = self.region.claim(self.slot, self.desc.timeout)
            if base is None:
                break
            end = min(base + cs, self.desc.n)
            self.state = WorkerState.COMPUTING
            outputs = self.computer(range(base, end))
            if self.cancelled():
                break
            self.state = WorkerState.RECORDING
            for i, value in zip(range(base, end), outputs):
                self.store_row(i, value)
            if self.region.complete(self.slot, base):
                self.computed.append(base // cs + 1)
            self.state = WorkerState.IDLE
        self.state = WorkerState.DONE
        return len(self.computed)

    def store_row(self, index: int, value) -> None:
        """Write one output row in place, or spill it to the work dir.

        Recorded errors and outputs the buffer cannot hold exactly are
        pickled instead; the controller folds them back in when collecting.
        """
        if row_fits(value, self.output.shape[1:], self.output.dtype):
            self.output[index] = value
            self.region.set_row_state(index, RowState.STORED)
            return
        if not isinstance(value, IterationError):
            self.logger.debug(f"Output of iteration {index} does not fit the buffer, spilling it")
        write_spill(self.desc.work_dir, index, value)
        self.region.set_row_state(index, RowState.SPILLED)

    def cleanup(self):
        if self.region is None:
            return
        if self.output is not None and hasattr(self.output, "flush"):
            self.output.flush()
        self.region.finish(self.slot)
        if self._owns_region:
            self.region.close()


def append_error_log(path, message: str) -> pathlib.Path:
    """Append a failure report to ``<path>.<host>.err``."""
    log_path = descriptor_mod.error_log_path(path)
    stamp = time.strftime("%Y-%m-%d %H:%M:%S")
    try:
        with open(log_path, "a") as fh:
            fh.write(f"[{stamp} pid {os.getpid()}]\n{message.rstrip()}\n\n")
    except OSError as e:
        logger.error(f"Could not write error log {log_path}: {e}")
    return log_path


def _mark_slot_finished(desc: JobDescriptor, slot: int) -> None:
    try:
        with SharedRegion.open(desc.region_path) as region:
            region.finish(slot)
    except OSError as e:
        logger.error(f"Could not release slot {slot}: {e}")


def run_worker(path, slot: int | None = None) -> int:
    """Join the job described at `path` and work until it is done."""
    try:
        desc = descriptor_mod.load(path)
    except FileNotFoundError:
        logger.info(f"Job descriptor {path} is gone, nothing to do")
        return 0
    except Exception:
        append_error_log(path, traceback.format_exc())
        logger.error(f"Could not load job descriptor {path}", exc_info=True)
        return 1

    if desc.mode is Mode.SHARED:
        if slot is None:
            append_error_log(path, "co-located worker started without --slot")
            return 1
        worker = SharedWorker(desc, slot)
    else:
        worker = ChunkWorker(desc)

    watcher = CancellationWatcher(desc.path, desc.config.cancel_check_period)
    watcher.start()
    status = 0
    try:
        worker.setup()
        count = worker.process()
        logger.info(f"Computed {count} chunk(s) of {desc.name}")
    except Exception:
        append_error_log(path, traceback.format_exc())
        logger.error(f"Worker failed on {desc.name}", exc_info=True)
        status = 1
    finally:
        watcher.stop()
        if isinstance(worker, SharedWorker) and worker.region is None:
            _mark_slot_finished(desc, slot)
        else:
            worker.cleanup()
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m batch_taskr",
        description="Join a batch job and compute its chunks.",
    )
    parser.add_argument("descriptor", help="path of the job descriptor file")
    parser.add_argument("--slot", type=int, default=None, help="co-located worker slot")
    parser.add_argument("--log-level", default="INFO", help="logging level name")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    set_log_level(args.log_level)
    return run_worker(args.descriptor, args.slot)


if __name__ == "__main__":
    sys.exit(main())
