"""
batch_taskr - Parallel for-loops over independently launched worker processes.

The iteration space is split into chunks which workers on this machine or
on other machines sharing a filesystem claim one at a time. The output is
the same as that of the plain loop it replaces.
"""

from .aggregate import MISSING, IterationError
from .config import EngineConfig
from .controller import JobController, JobHandle, parallel_for
from .descriptor import JobDescriptor, Mode, TimeoutPolicy
from .errors import BatchJobError, JobCancelledError, NoWorkersError
from .helpers import MultiprocessingHelper, get_logger
from .launcher import LaunchedWorker, WorkerLauncher
from .protocols import JobEvents, WorkerProtocol
from .qt_compat import QT_AVAILABLE
from .task_runner import TaskRunner

__all__ = [
    "BatchJobError",
    "EngineConfig",
    "IterationError",
    "JobCancelledError",
    "JobController",
    "JobDescriptor",
    "JobEvents",
    "JobHandle",
    "LaunchedWorker",
    "MISSING",
    "Mode",
    "MultiprocessingHelper",
    "NoWorkersError",
    "QT_AVAILABLE",
    "TaskRunner",
    "TimeoutPolicy",
    "WorkerLauncher",
    "WorkerProtocol",
    "get_logger",
    "parallel_for",
]

__version__ = "1.0.0"
