"""Integration tests running jobs with real detached worker processes."""

import time

import numpy as np
import pytest

from batch_taskr import JobController, JobEvents
from batch_taskr.helpers import pid_alive
from tests import jobfuncs
from tests.conftest import ROOT

pytestmark = pytest.mark.integration


@pytest.fixture
def run_job(tmp_path, fast_config, launched_pids):
    def make(func, inputs, **kwargs):
        events = kwargs.pop("events", None) or JobEvents()
        events.on("worker_launched", lambda worker: launched_pids.append(worker.pid))
        kwargs.setdefault("job_dir", tmp_path / "jobs")
        kwargs.setdefault("config", fast_config)
        return JobController(func, inputs, cwd=ROOT, events=events, **kwargs)

    return make


class TestModes:
    @pytest.mark.parametrize("mode", ["networked", "shared"])
    def test_same_output_as_a_plain_loop(self, run_job, mode):
        inputs = np.arange(80.0)
        controller = run_job(jobfuncs.slow_square, inputs, workers=3, mode=mode, chunk_size=2)
        out = controller.submit().result()

        np.testing.assert_array_equal(out, [jobfuncs.square(x) for x in inputs])
        assert not controller.work_dir.exists()

    @pytest.mark.parametrize("mode", ["networked", "shared"])
    def test_workers_only(self, run_job, mode):
        inputs = np.arange(12.0).reshape(4, 3)
        controller = run_job(jobfuncs.outer, inputs, workers=2, mode=mode, timeout=60.0)
        out = controller.submit().result()
        assert out.shape == (4, 3, 3)
        np.testing.assert_array_equal(out[3], np.outer(inputs[3], inputs[3]))
        assert len(controller.workers) == 2


class TestTimeouts:
    @pytest.mark.parametrize("mode", ["networked", "shared"])
    def test_hung_chunk_is_skipped(self, run_job, mode):
        inputs = np.arange(10.0)
        controller = run_job(jobfuncs.hang_on_index, inputs, workers=2, mode=mode, timeout=2.0)
        stalled = []
        controller.events.on("worker_stalled", lambda *args: stalled.append(args))
        out = controller.submit().result()

        assert np.isnan(out[jobfuncs.HANG_INDEX])
        done = np.arange(10) != jobfuncs.HANG_INDEX
        np.testing.assert_array_equal(out[done], inputs[done] * 2)
        if mode == "shared":
            assert stalled and stalled[0][2] == jobfuncs.HANG_INDEX + 1

    @pytest.mark.parametrize("mode", ["networked", "shared"])
    def test_hung_chunk_is_retried(self, run_job, tmp_path, mode):
        markers = tmp_path / "markers"
        markers.mkdir()
        inputs = np.arange(10.0)
        controller = run_job(jobfuncs.hang_once, inputs, context=str(markers), workers=2,
                             mode=mode, timeout=-2.0)
        out = controller.submit().result()

        np.testing.assert_array_equal(out, inputs * 2)
        assert (markers / "hung").exists()


class TestCancellation:
    @pytest.mark.parametrize("mode", ["networked", "shared"])
    def test_cancel_stops_workers(self, run_job, launched_pids, mode):
        controller = run_job(jobfuncs.slow_square, np.arange(2000.0), workers=2, mode=mode,
                             chunk_size=10, async_=True)
        handle = controller.submit()
        time.sleep(1.0)
        assert handle.cancel()
        out = handle.result()

        assert np.isnan(out).any()
        assert not controller.work_dir.exists()
        deadline = time.time() + 10
        while any(pid_alive(p) for p in launched_pids) and time.time() < deadline:
            time.sleep(0.1)
        assert not any(pid_alive(p) for p in launched_pids)
