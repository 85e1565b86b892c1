"""The job controller: sizes a job, publishes it, launches workers and
collects the output.

    >>> out = parallel_for(math.sqrt, np.arange(100.0), workers=4)  # doctest: +SKIP

The controller normally takes part in the computation: the timing probe
doubles as the start of chunk 1, and while collecting it computes whatever
no worker has picked up. With a timeout it only coordinates, because a
chunk that runs over its deadline would take the controller down with it.
"""

from __future__ import annotations

import atexit
import multiprocessing
import os
import pathlib
import pickle
import shutil
import tempfile
import threading
import time
import weakref
from typing import Any, Callable

import numpy as np

from . import binary_store, descriptor as descriptor_mod
from .aggregate import MISSING, IterationError, assemble, collapse, output_spec
from .chunk_store import FileChunkStore
from .config import EngineConfig
from .descriptor import JobDescriptor, Mode, TimeoutPolicy
from .errors import JobCancelledError, NoWorkersError
from .helpers import get_logger, is_local_host, pid_alive
from .launcher import LaunchedWorker, WorkerLauncher
from .partition import chunk_bounds, chunk_count, clamp_workers, run_probe
from .protocols import JobEvents
from .shared_state import ChunkState, RowState, SharedRegion, create_output, read_spill
from .utils import humanize_bytes, quiet_delete, reify, timestr
from .worker import ChunkComputer, ChunkWorker, SharedWorker, past

logger = get_logger(__name__)

_LIVE_JOBS: "weakref.WeakSet[JobController]" = weakref.WeakSet()


def parse_workers(workers) -> list[str]:
    """Expand a workers argument into one host name per worker ("" = local).

    Accepts None (one local worker per CPU), an int, or a list whose items
    are host names or ``(host, count)`` pairs.
    """
    if workers is None:
        return [""] * (os.cpu_count() or 1)
    if isinstance(workers, bool):
        raise ValueError(f"Invalid workers argument: {workers!r}")
    if isinstance(workers, int):
        if workers < 0:
            raise ValueError("workers must be non-negative")
        return [""] * workers
    if isinstance(workers, (list, tuple)):
        hosts = []
        for item in workers:
            if isinstance(item, str) or item is None:
                host, count = item, 1
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                host, count = item
            else:
                raise ValueError(f"Invalid workers entry: {item!r}")
            if not isinstance(count, int) or count < 0:
                raise ValueError(f"Invalid worker count for {host!r}: {count!r}")
            hosts.extend(["" if is_local_host(host) else host] * count)
        return hosts
    raise ValueError(f"Invalid workers argument: {workers!r}")


def probe_iteration(func, item, context):
    """Run one iteration in a throwaway process (see `JobController`)."""
    func = descriptor_mod.resolve_function(func)
    context = descriptor_mod.resolve_context(context)
    return func(item) if context is None else func(item, context)


class JobHandle:
    """Handle on a submitted job; call it (or `result`) to get the output."""

    def __init__(self, controller: "JobController"):
        self._controller = controller

    @property
    def name(self) -> str:
        return self._controller.name

    @property
    def events(self) -> JobEvents:
        return self._controller.events

    def result(self, timeout: float | None = None, raise_on_cancel: bool = False):
        """Block until the job is done and return its output.

        Raises `TimeoutError` if `timeout` seconds pass first; the job keeps
        running and `result` can be called again.
        """
        return self._controller.result(timeout, raise_on_cancel)

    __call__ = result

    def cancel(self) -> bool:
        return self._controller.cancel()

    def done(self) -> bool:
        return self._controller.finished

    def __repr__(self):
        state = "done" if self.done() else "running"
        return f"<{self.__class__.__name__} {self.name} {state}>"


class JobController:
    """Runs one parallel for-loop: ``[func(x) for x in inputs]``.

    Args:
        func: Function applied to every item. It must be importable by the
            worker processes (a module-level function, or a
            ``"module:name"`` string).
        inputs: Numeric array iterated over its leading axis.
        context: Extra argument passed to every call. A callable is
            treated as a loader and called once per process.
        workers: Number of local workers, or a list of hosts / ``(host,
            count)`` pairs.
        mode: `Mode.AUTO`, `Mode.SHARED` or `Mode.NETWORKED`.
        timeout: Seconds a chunk may take; positive skips a chunk that runs
            over, negative retries it.
        async_: Return from `submit` without joining the computation.
        keep: Keep the work directory after collecting.
        progress: Log progress while collecting.
        chunk_size: Fixed chunk size instead of the probe's choice.
        job_dir: Directory for the job descriptor and work directory. Must
            be on a filesystem every worker host shares.
        cwd: Directory workers run from.
        config: Engine tunables.
        launcher: Factory ``(descriptor, events) -> WorkerLauncher``.
        events: Emitter to report progress on; a new one by default.
    """

    def __init__(
        self,
        func: Callable | str,
        inputs,
        context: Any = None,
        workers=None,
        mode: Mode | str = Mode.AUTO,
        timeout: float = 0.0,
        async_: bool = False,
        keep: bool = False,
        progress: bool = False,
        chunk_size: int | None = None,
        job_dir=None,
        cwd=None,
        config: EngineConfig | None = None,
        launcher: Callable[[JobDescriptor, JobEvents], WorkerLauncher] | None = None,
        events: JobEvents | None = None,
    ):
        self.func = func
        self.inputs = inputs
        self.context = context
        self.hosts = parse_workers(workers)
        self.mode = Mode(mode)
        self.timeout = float(timeout or 0.0)
        self.async_ = async_
        self.keep = keep
        self.progress = progress
        self.chunk_size = chunk_size
        self.job_dir = job_dir
        self.cwd = pathlib.Path(cwd or os.getcwd()).resolve()
        self.config = config or EngineConfig.from_env()
        self.events = events or JobEvents()
        self._launcher_factory = launcher or WorkerLauncher
        self.name = descriptor_mod.new_job_name()

        self.descriptor: JobDescriptor | None = None
        self.work_dir: pathlib.Path | None = None
        self.launcher: WorkerLauncher | None = None
        self.workers: list[LaunchedWorker] = []
        self.region: SharedRegion | None = None
        self.output = None
        self.restarts = 0
        self.finished = False
        self.cancelled = False
        self._computer: ChunkComputer | None = None
        self._result = None
        self._seen: set[int] = set()
        self._launched_at: dict[int, float] = {}
        self._idle_since: float | None = None
        self._started = 0.0
        self._last_report = 0.0
        self._lock = threading.RLock()

    # --- properties --------------------------------------------------------
    @property
    def policy(self) -> TimeoutPolicy:
        return TimeoutPolicy.from_timeout(self.timeout)

    @property
    def computes(self) -> bool:
        """True if this process helps compute while collecting."""
        return self.timeout == 0

    @reify
    def store(self) -> FileChunkStore:
        return FileChunkStore(self.descriptor.work_dir)

    # --- submission ----------------------------------------------------------
    def _check_inputs(self) -> np.ndarray:
        inputs = np.asarray(self.inputs)
        if inputs.dtype.kind not in "biufc":
            raise TypeError(f"inputs must be numeric, got dtype {inputs.dtype}")
        if inputs.ndim == 0:
            raise ValueError("inputs must have at least one dimension")
        return inputs

    def _resolve_mode(self) -> Mode:
        remote = any(self.hosts)
        if self.mode is Mode.AUTO:
            return Mode.NETWORKED if remote else Mode.SHARED
        if self.mode is Mode.SHARED and remote:
            raise ValueError("co-located mode cannot use remote workers")
        return self.mode

    def _isolated_probe(self, inputs):
        """Run iteration 0 in a child process, bounded by the timeout.

        Returns the output, or None when the iteration fails, hangs or
        cannot be shipped to the child.
        """
        ctx = multiprocessing.get_context("spawn")
        with ctx.Pool(1) as pool:
            pending = pool.apply_async(probe_iteration, (self.func, inputs[0], self.context))
            try:
                return pending.get(abs(self.timeout))
            except multiprocessing.TimeoutError:
                logger.warning(f"Probe iteration exceeded the {abs(self.timeout):g}s timeout")
            except Exception as e:
                logger.warning(f"Probe iteration failed: {e!r}")
        return None

    def _probe(self, inputs, n: int, mode: Mode):
        """Returns ``(head outputs, chunk size, mode, output spec)``."""
        head: list = []
        spec = None
        if self.timeout == 0:
            if self.chunk_size:
                head = self._computer([0])
                chunk_size = min(int(self.chunk_size), n)
            else:
                probe = run_probe(self._computer, n, self.config)
                head = probe.outputs
                chunk_size = max(probe.chunk_size, probe.count)
        else:
            chunk_size = min(int(self.chunk_size or 1), n)

        if mode is Mode.SHARED:
            # failed iterations say nothing about the output layout
            usable = [v for v in head if not isinstance(v, IterationError)]
            if usable:
                spec = output_spec(usable)
            elif not head:
                value = self._isolated_probe(inputs)
                spec = output_spec([value]) if value is not None else None
            if spec is None:
                if self.mode is Mode.SHARED and usable:
                    raise TypeError(
                        "co-located mode needs numeric outputs of one shape; "
                        f"got {type(head[0]).__name__}"
                    )
                logger.info("Outputs cannot be laid out in shared memory, using networked mode")
                mode = Mode.NETWORKED
        return head, max(chunk_size, 1), mode, spec

    def _prepare_dirs(self) -> tuple[pathlib.Path, pathlib.Path]:
        if self.job_dir is not None:
            job_dir = pathlib.Path(self.job_dir)
        elif any(self.hosts):
            job_dir = self.cwd
        else:
            job_dir = pathlib.Path(tempfile.gettempdir())
        job_dir = job_dir.resolve()
        work_dir = job_dir / self.name
        work_dir.mkdir(parents=True, exist_ok=False)
        self.work_dir = work_dir
        return job_dir, work_dir

    def _plan_launches(self, n: int, chunk_size: int) -> list[str]:
        hosts = self.hosts[: clamp_workers(len(self.hosts), n, chunk_size)]
        if self.computes and not self.async_ and "" in hosts:
            # this process is one of the local workers
            hosts.remove("")
        return hosts

    def submit(self) -> JobHandle:
        """Probe, publish and launch. Returns a handle on the running job."""
        inputs = self._check_inputs()
        mode = self._resolve_mode()
        n = int(inputs.shape[0])
        self._started = time.time()

        if n == 0:
            logger.info(f"Job {self.name} has no iterations")
            self._result = np.empty((0,))
            self.finished = True
            self.events.emit_job_finished(self.name, False)
            return JobHandle(self)

        func = descriptor_mod.resolve_function(self.func)
        self._computer = ChunkComputer(func, inputs, descriptor_mod.resolve_context(self.context))
        head, chunk_size, mode, spec = self._probe(inputs, n, mode)
        n_chunks = chunk_count(n, chunk_size)
        hosts = self._plan_launches(n, chunk_size)

        job_dir, work_dir = self._prepare_dirs()
        token = None
        try:
            binary_store.write(inputs, work_dir / "input.bin")
            logger.info(
                f"Job {self.name}: {n} iterations in {n_chunks} chunk(s) of {chunk_size}, "
                f"{len(hosts)} worker(s), {mode.value} mode, "
                f"input {humanize_bytes(binary_store.num_bytes(inputs))}"
            )
            n_slots = len(hosts) + (1 if self.computes else 0)
            desc = JobDescriptor(
                name=self.name,
                func=self.func,
                item_shape=tuple(inputs.shape[1:]),
                n=n,
                chunk_size=chunk_size,
                job_dir=job_dir,
                work_dir=work_dir,
                cwd=self.cwd,
                timeout=self.timeout,
                context=self.context,
                mode=mode,
                n_slots=n_slots if mode is Mode.SHARED else 0,
                output_dtype=spec[0].str if spec else None,
                output_shape=tuple(spec[1]) if spec else (),
                first_index=chunk_size if head else 0,
                config=self.config,
            )
            self.descriptor = desc

            if mode is Mode.SHARED:
                self.region = SharedRegion.create(
                    desc.region_path, n, chunk_size, n_slots, desc.first_index
                )
                self.output = create_output(desc.output_path, n, desc.output_shape, desc.output_dtype)
            elif head:
                token = self.store.try_lock(1)

            try:
                descriptor_mod.publish(desc)
            except (pickle.PicklingError, AttributeError, TypeError) as e:
                raise TypeError(
                    f"Job cannot be shipped to workers ({e}); use a module-level "
                    "function and a picklable context"
                ) from e
            _LIVE_JOBS.add(self)

            self.launcher = self._launcher_factory(desc, self.events)
            self._launch_all(hosts)

            if head:
                self._finish_first_chunk(head, token)
        except BaseException:
            if token is not None:
                self.store.release(token)
            self._cleanup(interrupted=True)
            raise
        return JobHandle(self)

    def _launch_all(self, hosts: list[str]) -> None:
        for slot, host in enumerate(hosts):
            worker = self.launcher.launch(host or None, slot if self.region is not None else None)
            self._launched_at[slot] = time.time()
            if worker is None:
                if self.region is not None:
                    self.region.finish(slot)
                continue
            self.workers.append(worker)
        if not self.workers:
            if not self.computes:
                raise NoWorkersError(f"No worker could be started for job {self.name}")
            if hosts:
                logger.error("No worker could be started; computing everything locally")

        if self.region is not None and self.computes:
            # the controller's own slot, registered as finished until it runs
            self.region.finish(self.region.n_slots - 1)

    def _finish_first_chunk(self, head: list, token) -> None:
        desc = self.descriptor
        chunk = chunk_bounds(1, desc.n, desc.chunk_size)
        if self.region is not None:
            worker = SharedWorker(desc, desc.n_slots - 1, self._computer, self.region, self.output)
            for i, value in enumerate(head):
                worker.store_row(i, value)
            for i in range(chunk.start + len(head), chunk.end):
                worker.store_row(i, self._computer.compute_one(i))
            self.region.set_chunk_state(1, ChunkState.DONE)
        elif token is not None:
            self._local_worker().compute_chunk(1, token, head)
        self._note_chunk(1)

    def _local_worker(self) -> ChunkWorker:
        return ChunkWorker(
            self.descriptor, self.store, self._computer, offset=0, cancelled=self._is_cancelled
        )

    # --- cancellation --------------------------------------------------------
    def _is_cancelled(self) -> bool:
        if self.cancelled:
            return True
        if self.descriptor is not None and not descriptor_mod.is_live(self.descriptor):
            self.cancelled = True
        return self.cancelled

    def cancel(self) -> bool:
        """Stop the job: workers stop at their next chunk boundary."""
        if self.finished:
            return False
        self.cancelled = True
        if self.region is not None:
            self.region.cancel()
        if self.descriptor is not None:
            descriptor_mod.cancel(self.descriptor)
        return True

    # --- collection ----------------------------------------------------------
    def result(self, timeout: float | None = None, raise_on_cancel: bool = False):
        with self._lock:
            if not self.finished:
                self._collect(None if timeout is None else time.time() + timeout)
        if raise_on_cancel and self.cancelled:
            raise JobCancelledError(f"Job {self.name} was cancelled")
        return self._result

    def _collect(self, deadline: float | None) -> None:
        interrupted = True
        try:
            if self.region is not None:
                self._collect_shared(deadline)
                self._result = self._shared_output()
            else:
                self._collect_networked(deadline)
                desc = self.descriptor
                self._result = collapse(assemble(desc.n, desc.chunk_size, self.store.read))
            interrupted = self.cancelled
        except TimeoutError:
            raise
        except BaseException:
            self.cancelled = True
            self._cleanup(interrupted=True)
            raise
        self._cleanup(interrupted=interrupted)

    def _wait(self, deadline: float | None) -> None:
        if past(deadline):
            raise TimeoutError(f"Job {self.name} still running")
        interval = self.config.progress_interval if self.progress else self.config.poll_interval
        time.sleep(interval)

    def _note_chunk(self, index: int) -> None:
        if index not in self._seen:
            self._seen.add(index)
            self.events.emit_chunk_done(index)

    def _report(self, done: int, total: int) -> None:
        now = time.time()
        elapsed = now - self._started
        self.events.emit_progress(done, total, elapsed)
        if not self.progress or now - self._last_report < self.config.progress_interval:
            return
        self._last_report = now
        if done:
            remaining = elapsed / done * (total - done)
            logger.info(
                f"Job {self.name}: {done}/{total} chunks, {timestr(elapsed)} elapsed, "
                f"~{timestr(remaining)} remaining"
            )
        else:
            logger.info(f"Job {self.name}: 0/{total} chunks, {timestr(elapsed)} elapsed")

    def _relaunch(self, host: str = "", slot: int | None = None) -> bool:
        if self.restarts >= self.config.max_restarts:
            logger.warning(f"Job {self.name}: restart limit reached, not relaunching")
            return False
        self.restarts += 1
        if slot is not None:
            self.region.reset_slot(slot)
        worker = self.launcher.launch(host or None, slot)
        if worker is None:
            if slot is not None:
                self.region.finish(slot)
            return False
        if slot is not None:
            self._launched_at[slot] = time.time()
        self.workers.append(worker)
        return True

    def _collect_networked(self, deadline: float | None) -> None:
        desc = self.descriptor
        store = self.store
        n_chunks = desc.n_chunks
        unfinished = set(range(1, n_chunks + 1)) - self._seen
        if self.computes and not self._is_cancelled():
            self._local_worker().process(deadline=deadline)

        while unfinished:
            if self._is_cancelled():
                break
            for index in sorted(unfinished):
                has_result = store.exists(index)
                has_lock = store.is_locked(index)
                if has_result and not has_lock:
                    unfinished.discard(index)
                    self._note_chunk(index)
                elif has_lock:
                    if self.timeout:
                        self._check_stalled_lock(index)
                    # clears the lock only if its owner is gone
                    store.clear_stale(index)
                elif self.computes and not past(deadline):
                    token = store.try_lock(index)
                    if token is not None:
                        self._local_worker().compute_chunk(index, token)
                    if self._is_cancelled():
                        break
            if self.timeout and unfinished:
                self._check_idle(unfinished)
            self._report(n_chunks - len(unfinished), n_chunks)
            if unfinished:
                self._wait(deadline)

    def _check_stalled_lock(self, index: int) -> None:
        """Kill the owner of a lock held long past its deadline."""
        owner = self.store.lock_owner(index)
        if owner is None or not owner.expired(grace=self.config.stall_grace):
            return
        logger.warning(
            f"Chunk {index} stalled on {owner.host} (pid {owner.pid}), replacing the worker"
        )
        self.events.emit_worker_stalled(owner.host, owner.pid, index)
        self.launcher.kill(owner.host, owner.pid)
        if not self.store.clear_stale(index):
            return
        if self.policy is TimeoutPolicy.SKIP and not self.store.exists(index):
            token = self.store.try_lock(index)
            if token is not None:
                try:
                    if not self.store.exists(index):
                        chunk = chunk_bounds(index, self.descriptor.n, self.descriptor.chunk_size)
                        self.store.write(index, [None] * len(chunk))
                finally:
                    self.store.release(token)
        self._relaunch("" if is_local_host(owner.host) else owner.host)

    def _check_idle(self, unfinished: set[int]) -> None:
        """Relaunch a worker when unfinished chunks sit unclaimed for too long."""
        if self.store.locked():
            self._idle_since = None
            return
        now = time.time()
        if self._idle_since is None:
            self._idle_since = now
        elif now - self._idle_since > self.config.startup_grace:
            logger.warning(f"Job {self.name}: {len(unfinished)} chunk(s) unclaimed, relaunching")
            self._idle_since = now
            self._relaunch()

    def _controller_pass(self, deadline: float | None) -> None:
        slot = self.region.n_slots - 1
        self.region.reset_slot(slot)
        worker = SharedWorker(
            self.descriptor, slot, self._computer, self.region, self.output,
            cancelled=self._is_cancelled,
        )
        worker.setup()
        try:
            worker.process(deadline=deadline)
        finally:
            worker.cleanup()

    def _collect_shared(self, deadline: float | None) -> None:
        region = self.region
        n_chunks = region.n_chunks
        if self.computes and not self._is_cancelled():
            self._controller_pass(deadline)

        while True:
            if self._is_cancelled():
                break
            self._monitor_slots()
            states = region.chunk_states()
            for index in np.flatnonzero(states == ChunkState.DONE) + 1:
                self._note_chunk(int(index))
            settled = int(np.count_nonzero((states == ChunkState.DONE) | (states == ChunkState.SKIPPED)))
            self._report(settled, n_chunks)
            if region.all_finished():
                if not region.pending_work():
                    break
                if self.computes:
                    if not past(deadline):
                        self._controller_pass(deadline)
                        continue
                else:
                    idle = [r.slot for r in region.records() if r.finished]
                    if not idle or not self._relaunch(slot=idle[0]):
                        logger.error(f"Job {self.name}: work left but no worker to do it")
                        break
            self._wait(deadline)

    def _monitor_slots(self) -> None:
        region = self.region
        now = time.time()
        own_slot = region.n_slots - 1 if self.computes else None
        for rec in region.records():
            if rec.finished or rec.slot == own_slot:
                continue
            if rec.pid <= 0:
                started = self._launched_at.get(rec.slot, now)
                if now - started > self.config.startup_grace:
                    logger.warning(f"Worker in slot {rec.slot} never started")
                    region.finish(rec.slot)
                continue
            expired = rec.expired(now)
            if not expired and pid_alive(rec.pid):
                continue

            def stalled(current, _pid=rec.pid):
                return (
                    not current.finished
                    and current.pid == _pid
                    and (current.expired() or not pid_alive(current.pid))
                )

            timed_out = expired and pid_alive(rec.pid)
            state = (
                ChunkState.SKIPPED
                if timed_out and self.policy is TimeoutPolicy.SKIP
                else ChunkState.REQUEUED
            )
            taken = region.take_back(
                rec.slot,
                state,
                stalled,
                kill=lambda pid: self.launcher.kill("", pid) if timed_out else None,
            )
            if taken is None:
                continue
            chunk = taken.current // region.chunk_size + 1 if taken.busy else 0
            reason = "timed out" if timed_out else "died"
            logger.warning(f"Worker {taken.pid} in slot {taken.slot} {reason} on chunk {chunk or '-'}")
            self.events.emit_worker_stalled("", taken.pid, chunk)
            if region.pending_work():
                self._relaunch(slot=taken.slot)

    def _shared_output(self):
        """Copy the output buffer and fold in rows that are not in it.

        Rows of chunks that never finished are missing. Spilled rows hold
        errors or outputs the buffer could not take. Either way the result
        is what `collapse` makes of the rows, as for a networked job.
        """
        desc = self.descriptor
        out = np.array(self.output[: desc.n])
        rows = self.region.row_states()
        done = np.repeat(self.region.chunk_states() == ChunkState.DONE, desc.chunk_size)[: desc.n]
        missing = ~done | (rows == RowState.EMPTY)
        spilled = done & (rows == RowState.SPILLED)

        if spilled.any():
            outputs = []
            for i in range(desc.n):
                if missing[i]:
                    outputs.append(MISSING)
                elif spilled[i]:
                    outputs.append(read_spill(desc.work_dir, i))
                else:
                    outputs.append(out[i])
            return collapse(outputs)
        if missing.any():
            if out.dtype.kind in "biu":
                out = out.astype(np.result_type(out.dtype, np.float64))
            out[missing] = np.nan
        return out

    # --- cleanup -------------------------------------------------------------
    def _cleanup(self, interrupted: bool) -> None:
        desc = self.descriptor
        self.finished = True
        _LIVE_JOBS.discard(self)
        if desc is None:
            if self.work_dir is not None:
                shutil.rmtree(self.work_dir, ignore_errors=True)
            return
        quiet_delete(desc.path)
        keep = self.keep
        if interrupted:
            keep = False
            if self.region is not None:
                self.region.cancel()
            else:
                end = time.time() + self.config.lock_clear_wait
                while self.store.locked() and time.time() < end:
                    time.sleep(self.config.poll_interval)
        if self.region is not None:
            self.region.close()
        if self.output is not None:
            self.output.flush()
            self.output = None
        if not keep:
            shutil.rmtree(desc.work_dir, ignore_errors=True)
        self.events.emit_job_finished(self.name, self.cancelled)


def parallel_for(func, inputs, *, async_: bool = False, **kwargs):
    """Parallel ``[func(x) for x in inputs]``; see `JobController` for options."""
    handle = JobController(func, inputs, async_=async_, **kwargs).submit()
    if async_:
        return handle
    return handle.result()


@atexit.register
def _cleanup_live_jobs():
    for job in list(_LIVE_JOBS):
        logger.info(f"Cancelling uncollected job {job.name}")
        try:
            job.cancel()
            job._cleanup(interrupted=True)
        except Exception as e:
            logger.error(f"Could not clean up job {job.name}: {e}")


__all__ = ["JobController", "JobHandle", "parallel_for", "parse_workers"]
