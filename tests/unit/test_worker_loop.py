"""
Unit tests for the worker side: chunk computation, the claim loops of both
modes, per-chunk timeouts and the worker entry point.
"""

import threading
import time
from unittest.mock import Mock

import numpy as np
import pytest

from batch_taskr import descriptor as descriptor_mod
from batch_taskr.aggregate import IterationError
from batch_taskr.chunk_store import FileChunkStore, MemoryChunkStore
from batch_taskr.descriptor import Mode
from batch_taskr.helpers import hostname
from batch_taskr.shared_state import (
    ChunkState,
    RowState,
    SharedRegion,
    create_output,
    open_output,
    read_spill,
)
from batch_taskr.worker import (
    TIMEOUT_EXIT_CODE,
    CancellationWatcher,
    ChunkComputer,
    ChunkWatchdog,
    ChunkWorker,
    SharedWorker,
    WorkerState,
    main,
    run_worker,
)
from tests import jobfuncs

SLOW_INDEX = 3


def slow_on_three(x):
    if int(x) == SLOW_INDEX:
        time.sleep(0.6)
    return float(x)


class CountingSquare:
    """Square that counts its evaluations across threads."""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls = {}

    def __call__(self, x):
        with self.lock:
            self.calls[int(x)] = self.calls.get(int(x), 0) + 1
        time.sleep(0.001)
        return int(x) ** 2


class TestChunkComputer:
    def test_applies_function(self):
        computer = ChunkComputer(jobfuncs.square, np.arange(5))
        assert computer(range(1, 4)) == [1, 4, 9]

    def test_passes_context(self):
        computer = ChunkComputer(jobfuncs.add_context, np.arange(3), context=10)
        assert computer([0, 2]) == [10, 12]

    def test_failure_becomes_placeholder(self):
        computer = ChunkComputer(jobfuncs.raise_on_odd, np.arange(4))
        out = computer(range(4))
        assert out[0] == 0.0 and out[2] == 2.0
        assert isinstance(out[1], IterationError)
        assert out[1].index == 1
        assert out[1].exc_type == "ValueError"
        assert "odd input 1" in out[1].traceback

    def test_from_descriptor(self, make_descriptor):
        desc = make_descriptor(np.arange(4.0), func="tests.jobfuncs:add_context",
                               context=jobfuncs.load_offset)
        computer = ChunkComputer.from_descriptor(desc)
        assert computer.context == 100
        assert computer([3]) == [103.0]


class TestChunkWatchdog:
    def test_disarm_in_time(self):
        fired = Mock()
        dog = ChunkWatchdog(5.0, fired)
        dog.arm(1, "token")
        assert dog.disarm() is True
        assert dog.disarm() is False
        fired.assert_not_called()

    def test_expiry_wins(self):
        fired = threading.Event()
        seen = []

        def on_expire(chunk, token):
            seen.append((chunk, token))
            fired.set()

        dog = ChunkWatchdog(-0.05, on_expire)
        dog.arm(7, "token")
        assert fired.wait(2.0)
        assert seen == [(7, "token")]
        assert dog.disarm() is False


class TestChunkWorker:
    def make_worker(self, desc, store=None, func=jobfuncs.square, **kwargs):
        kwargs.setdefault("cancelled", lambda: False)
        return ChunkWorker(
            desc,
            store=store or MemoryChunkStore(),
            computer=ChunkComputer(func, np.arange(desc.n)),
            **kwargs,
        )

    def test_computes_every_chunk(self, make_descriptor):
        desc = make_descriptor(np.arange(10), chunk_size=3)
        worker = self.make_worker(desc, offset=2)
        worker.setup()

        assert worker.order() == [3, 4, 1, 2]
        assert worker.process() == 4
        assert worker.state is WorkerState.DONE
        assert worker.store.read(1) == [0, 1, 4]
        assert worker.store.read(4) == [81]
        assert worker.store.locked() == set()

    def test_random_offset_in_range(self, make_descriptor):
        desc = make_descriptor(np.arange(10), chunk_size=3)
        for _ in range(20):
            worker = ChunkWorker(desc, store=MemoryChunkStore())
            assert 0 <= worker.offset < 4
            assert sorted(worker.order()) == [1, 2, 3, 4]

    def test_skips_taken_and_done_chunks(self, make_descriptor):
        desc = make_descriptor(np.arange(6), chunk_size=2)
        store = MemoryChunkStore()
        store.write(1, ["done elsewhere", None])
        held = store.try_lock(2)
        worker = self.make_worker(desc, store, offset=0)

        assert worker.process() == 1
        assert worker.computed == [3]
        assert store.read(1) == ["done elsewhere", None]
        assert not store.exists(2)
        store.release(held)

    def test_max_chunks(self, make_descriptor):
        desc = make_descriptor(np.arange(6), chunk_size=1)
        worker = self.make_worker(desc, offset=0)
        assert worker.process(max_chunks=2) == 2

    def test_stops_claiming_after_deadline(self, make_descriptor):
        desc = make_descriptor(np.arange(20), chunk_size=1)
        worker = self.make_worker(desc, func=jobfuncs.slow_square, offset=0)
        start = time.time()
        count = worker.process(deadline=start + 0.05)
        assert 1 <= count < 20
        assert time.time() - start < 0.3
        assert worker.process(deadline=time.time() - 1) == count

    def test_compute_chunk_with_head(self, make_descriptor):
        desc = make_descriptor(np.arange(5), chunk_size=4)
        store = MemoryChunkStore()
        func = Mock(side_effect=lambda x: int(x) * 10)
        worker = self.make_worker(desc, store, func=func, offset=0)

        token = store.try_lock(1)
        assert worker.compute_chunk(1, token, head=["probe"]) is True
        assert store.read(1) == ["probe", 10, 20, 30]
        assert func.call_count == 3
        assert not store.is_locked(1)

    def test_concurrent_workers_compute_each_iteration_once(self, make_descriptor):
        desc = make_descriptor(np.arange(50), chunk_size=3)
        store = MemoryChunkStore()
        func = CountingSquare()
        workers = [self.make_worker(desc, store, func=func, offset=k * 4) for k in range(4)]
        threads = [threading.Thread(target=w.process) for w in workers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert store.completed() == set(range(1, 18))
        assert set(store.writes.values()) == {1}
        assert func.calls == {i: 1 for i in range(50)}
        assert sum(len(w.computed) for w in workers) == 17
        flat = [v for i in range(1, 18) for v in store.read(i)]
        assert flat == [i * i for i in range(50)]

    def test_cancelled_before_claim(self, make_descriptor):
        desc = make_descriptor(np.arange(4))
        worker = self.make_worker(desc, cancelled=lambda: True)
        assert worker.process() == 0
        assert worker.store.locked() == set()

    def test_cancelled_before_record(self, make_descriptor):
        desc = make_descriptor(np.arange(4))
        ran = []

        def func(x):
            ran.append(x)
            return x

        worker = self.make_worker(desc, func=func, offset=0, cancelled=lambda: bool(ran))
        assert worker.process() == 0
        assert ran == [0]
        assert worker.store.completed() == set()
        assert worker.store.locked() == set()

    def test_default_cancellation_follows_descriptor(self, make_descriptor):
        desc = make_descriptor(np.arange(4), publish=True)
        worker = ChunkWorker(desc, store=MemoryChunkStore(),
                             computer=ChunkComputer(jobfuncs.square, np.arange(4)))
        descriptor_mod.cancel(desc)
        assert worker.process() == 0

    @pytest.mark.parametrize("timeout", [0.2, -0.2])
    def test_timeout_gives_chunk_up(self, make_descriptor, timeout):
        desc = make_descriptor(np.arange(6), chunk_size=1, timeout=timeout)
        exits = []
        respawn = Mock()
        worker = self.make_worker(
            desc, func=slow_on_three, offset=0, exit_fn=exits.append, respawn=respawn
        )
        worker.process()

        store = worker.store
        assert worker.computed == [1, 2, 3]
        assert worker.killed
        assert worker.state is WorkerState.KILLED
        assert exits == [TIMEOUT_EXIT_CODE]
        respawn.assert_called_once_with()
        assert not store.is_locked(4)
        if timeout > 0:
            assert store.read(4) == [None]
        else:
            assert not store.exists(4)
        # the worker stopped after giving up
        assert not store.exists(5) and not store.exists(6)

    def test_chunk_finished_in_time(self, make_descriptor):
        desc = make_descriptor(np.arange(3), chunk_size=1, timeout=5.0)
        exits = []
        worker = self.make_worker(desc, offset=0, exit_fn=exits.append)
        assert worker.process() == 3
        assert exits == []
        worker.cleanup()

    def test_lock_records_deadline(self, make_descriptor):
        desc = make_descriptor(np.arange(2), chunk_size=1, timeout=30.0)
        store = MemoryChunkStore()
        seen = []

        def func(x):
            seen.append(store.lock_owner(int(x) + 1).deadline)
            return x

        self.make_worker(desc, store, func=func, offset=0).process()
        assert all(d > time.time() + 25 for d in seen)


class TestSharedWorker:
    def make_region(self, tmp_path, n, chunk_size, first_index=0):
        return SharedRegion.create(tmp_path / "coord.dat", n, chunk_size, 1, first_index)

    def test_fills_output(self, tmp_path, make_descriptor):
        desc = make_descriptor(np.arange(10), chunk_size=3, mode=Mode.SHARED, n_slots=1)
        region = self.make_region(tmp_path, 10, 3)
        output = np.full(10, np.nan)
        worker = SharedWorker(
            desc, 0, ChunkComputer(jobfuncs.square, np.arange(10)), region, output,
            cancelled=lambda: False,
        )
        worker.setup()
        assert worker.process() == 4
        worker.cleanup()

        np.testing.assert_array_equal(output, np.arange(10) ** 2)
        assert worker.computed == [1, 2, 3, 4]
        assert (region.chunk_states() == ChunkState.DONE).all()
        assert region.all_finished()
        region.close()

    def test_starts_after_reserved_chunk(self, tmp_path, make_descriptor):
        desc = make_descriptor(np.arange(6), chunk_size=2, mode=Mode.SHARED, n_slots=1)
        region = self.make_region(tmp_path, 6, 2, first_index=2)
        output = np.full(6, -1.0)
        worker = SharedWorker(desc, 0, ChunkComputer(jobfuncs.square, np.arange(6)), region,
                              output, cancelled=lambda: False)
        worker.setup()
        worker.process()
        np.testing.assert_array_equal(output, [-1, -1, 4, 9, 16, 25])
        region.close()

    def run_shared(self, tmp_path, desc, func, inputs, output, chunk_size):
        region = self.make_region(tmp_path, len(inputs), chunk_size)
        worker = SharedWorker(desc, 0, ChunkComputer(func, inputs), region, output,
                              cancelled=lambda: False)
        worker.setup()
        worker.process()
        return region

    def test_failed_iterations_are_spilled(self, tmp_path, make_descriptor):
        desc = make_descriptor(np.arange(4), chunk_size=2, mode=Mode.SHARED, n_slots=1)
        output = np.full(4, np.nan)
        region = self.run_shared(tmp_path, desc, jobfuncs.raise_on_odd, np.arange(4), output, 2)

        assert output[0] == 0.0 and output[2] == 2.0
        assert list(region.row_states()) == [
            RowState.STORED, RowState.SPILLED, RowState.STORED, RowState.SPILLED,
        ]
        err = read_spill(desc.work_dir, 3)
        assert isinstance(err, IterationError) and err.index == 3
        assert np.isnan(output[3])
        region.close()

    def test_rows_of_another_shape_are_spilled(self, tmp_path, make_descriptor):
        inputs = np.array([1, 0, 2, 1])
        desc = make_descriptor(inputs, chunk_size=2, mode=Mode.SHARED, n_slots=1)
        output = np.full((4, 2), np.nan)
        region = self.run_shared(tmp_path, desc, jobfuncs.varying, inputs, output, 2)

        np.testing.assert_array_equal(output[[0, 3]], [[0, 1], [0, 1]])
        # a one-element row is not broadcast over the buffer row
        assert np.isnan(output[1]).all()
        np.testing.assert_array_equal(read_spill(desc.work_dir, 1), [0])
        np.testing.assert_array_equal(read_spill(desc.work_dir, 2), [0, 1, 2])
        assert list(region.row_states()) == [
            RowState.STORED, RowState.SPILLED, RowState.SPILLED, RowState.STORED,
        ]
        region.close()

    def test_floats_are_not_truncated_into_int_buffer(self, tmp_path, make_descriptor):
        inputs = np.arange(5)
        desc = make_descriptor(inputs, chunk_size=5, mode=Mode.SHARED, n_slots=1)
        output = np.zeros(5, dtype=np.int64)
        region = self.run_shared(tmp_path, desc, jobfuncs.int_then_float, inputs, output, 5)

        np.testing.assert_array_equal(output, [0, 1, 2, 0, 0])
        assert read_spill(desc.work_dir, 3) == 1.5
        assert read_spill(desc.work_dir, 4) == 2.0
        assert (region.row_states() == [RowState.STORED] * 3 + [RowState.SPILLED] * 2).all()
        region.close()

    def test_stops_claiming_after_deadline(self, tmp_path, make_descriptor):
        inputs = np.arange(20)
        desc = make_descriptor(inputs, chunk_size=1, mode=Mode.SHARED, n_slots=1)
        region = self.make_region(tmp_path, 20, 1)
        worker = SharedWorker(desc, 0, ChunkComputer(jobfuncs.slow_square, inputs), region,
                              np.zeros(20), cancelled=lambda: False)
        worker.setup()
        count = worker.process(deadline=time.time() + 0.05)
        assert 1 <= count < 20
        assert region.pending_work()
        region.close()

    def test_stops_when_region_cancelled(self, tmp_path, make_descriptor):
        desc = make_descriptor(np.arange(4), chunk_size=1, mode=Mode.SHARED, n_slots=1)
        region = self.make_region(tmp_path, 4, 1)
        region.cancel()
        worker = SharedWorker(desc, 0, ChunkComputer(jobfuncs.square, np.arange(4)), region,
                              np.zeros(4), cancelled=lambda: False)
        worker.setup()
        assert worker.process() == 0
        assert region.next_index == 0
        region.close()


class TestCancellationWatcher:
    def test_exits_when_descriptor_removed(self, tmp_path):
        path = tmp_path / "job.job"
        path.touch()
        exited = threading.Event()
        codes = []

        def exit_fn(code):
            codes.append(code)
            exited.set()

        watcher = CancellationWatcher(path, period=0.02, exit_fn=exit_fn)
        watcher.start()
        time.sleep(0.1)
        assert not exited.is_set()
        path.unlink()
        assert exited.wait(2.0)
        assert codes == [0]
        watcher.stop()

    def test_stop(self, tmp_path):
        watcher = CancellationWatcher(tmp_path / "gone.job", period=5.0, exit_fn=Mock())
        watcher.start()
        watcher.stop()
        watcher.join(1.0)
        assert not watcher.is_alive()
        watcher.exit_fn.assert_not_called()


class TestRunWorker:
    def test_missing_descriptor(self, tmp_path):
        assert run_worker(tmp_path / "nothing.job") == 0

    def test_unreadable_descriptor(self, tmp_path):
        path = tmp_path / "broken.job"
        path.write_bytes(b"not a pickle")
        assert run_worker(path) == 1
        err = tmp_path / f"broken.job.{hostname()}.err"
        assert descriptor_mod.error_log_path(path) == err
        assert err.exists()
        assert "Traceback" in err.read_text()

    def test_shared_job_needs_slot(self, make_descriptor):
        desc = make_descriptor(np.arange(4), mode=Mode.SHARED, n_slots=1, publish=True)
        assert run_worker(desc.path) == 1
        assert desc.error_log_path().exists()

    def test_networked_job(self, make_descriptor):
        desc = make_descriptor(np.arange(7), chunk_size=2, func="tests.jobfuncs:square",
                               publish=True)
        assert main([str(desc.path), "--log-level", "WARNING"]) == 0

        store = FileChunkStore(desc.work_dir)
        assert store.completed() == {1, 2, 3, 4}
        assert store.locked() == set()
        assert store.read(4) == [36]

    def test_shared_job(self, make_descriptor):
        inputs = np.arange(8)
        desc = make_descriptor(inputs, chunk_size=3, mode=Mode.SHARED, n_slots=1,
                               output_dtype="<i8", publish=True)
        SharedRegion.create(desc.region_path, 8, 3, 1).close()
        create_output(desc.output_path, 8, (), "<i8").flush()

        assert main([str(desc.path), "--slot", "0", "--log-level", "WARNING"]) == 0

        out = open_output(desc.output_path, 8, (), "<i8", writable=False)
        np.testing.assert_array_equal(out, inputs ** 2)
        with SharedRegion.open(desc.region_path) as region:
            assert region.all_finished()
            assert region.record(0).pid > 0
            assert (region.row_states() == RowState.STORED).all()

    def test_failing_worker_writes_error_log(self, make_descriptor):
        desc = make_descriptor(np.arange(3), func="tests.jobfuncs:no_such_function",
                               publish=True)
        assert run_worker(desc.path) == 1
        assert "no_such_function" in desc.error_log_path().read_text()
