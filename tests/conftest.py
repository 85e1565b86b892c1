"""Root pytest configuration for all tests."""

import pathlib

import numpy as np
import pytest

from batch_taskr import binary_store, descriptor
from batch_taskr.config import EngineConfig
from batch_taskr.descriptor import JobDescriptor
from tests import jobfuncs

ROOT = pathlib.Path(__file__).resolve().parent.parent


@pytest.fixture
def fast_config():
    """Engine config with short polling and grace periods for tests."""
    return EngineConfig(
        poll_interval=0.01,
        progress_interval=0.05,
        lock_clear_wait=0.5,
        cancel_check_period=0.1,
        startup_grace=10.0,
        stall_grace=0.2,
    )


@pytest.fixture
def make_descriptor(tmp_path, fast_config):
    """Build a job descriptor over `inputs` with its input file in place."""

    def make(inputs, chunk_size=1, publish=False, **fields):
        inputs = np.asarray(inputs)
        work_dir = tmp_path / "job"
        work_dir.mkdir(exist_ok=True)
        binary_store.write(inputs, work_dir / "input.bin")
        values = dict(
            name="job",
            func=jobfuncs.square,
            item_shape=tuple(inputs.shape[1:]),
            n=len(inputs),
            chunk_size=chunk_size,
            job_dir=tmp_path,
            work_dir=work_dir,
            cwd=ROOT,
            config=fast_config,
        )
        values.update(fields)
        desc = JobDescriptor(**values)
        if publish:
            descriptor.publish(desc)
        return desc

    return make
