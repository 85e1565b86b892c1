"""Pytest configuration for integration tests.

Workers are started as real detached processes, so they must be able to
import both ``batch_taskr`` and the test job functions on their own.
"""

import os
import time

import pytest

from batch_taskr.helpers import pid_alive
from batch_taskr.qt_compat import QT_AVAILABLE
from tests.conftest import ROOT


def pytest_collection_modifyitems(config, items):
    if QT_AVAILABLE:
        return
    skip = pytest.mark.skip(reason="starting detached workers requires Qt")
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def worker_environment(monkeypatch):
    paths = [str(ROOT / "src"), str(ROOT)]
    if os.environ.get("PYTHONPATH"):
        paths.append(os.environ["PYTHONPATH"])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))


@pytest.fixture
def launched_pids():
    """Collect worker pids from a job's events and make sure they exit."""
    pids = []
    yield pids
    deadline = time.time() + 10
    while any(pid_alive(p) for p in pids) and time.time() < deadline:
        time.sleep(0.1)
    for pid in pids:
        if pid_alive(pid):
            os.kill(pid, 9)
