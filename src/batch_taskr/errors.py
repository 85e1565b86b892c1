"""Exceptions raised to callers of the batch job engine.

Failures of single iterations never surface here: they are recorded as
placeholders in the output. Only jobs that cannot run at all raise.
"""


class BatchJobError(RuntimeError):
    """Base class for job-level failures."""


class NoWorkersError(BatchJobError):
    """No worker process could be started and the controller will not compute."""


class JobCancelledError(BatchJobError):
    """The job was cancelled before its output was collected."""
