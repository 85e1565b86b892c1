"""Protocol definitions and base classes for job workers."""

from abc import ABC, abstractmethod

from .utils import EventEmitter


class WorkerProtocol(ABC):
    """Protocol for worker implementations."""

    @abstractmethod
    def setup(self, **kwargs):
        """Set up the worker."""
        pass

    @abstractmethod
    def process(self, **kwargs):
        """Claim and compute chunks until none are left."""
        pass

    @abstractmethod
    def cleanup(self):
        """Clean up resources."""
        pass


class JobEvents(EventEmitter):
    """Event emitter for the progress of a job, fired on the controller side.

    Events emitted:
    - 'worker_launched': When a worker process was started (payload: LaunchedWorker)
    - 'worker_stalled': When a worker missed its deadline or died (payload: host, pid, chunk index)
    - 'chunk_done': When a chunk result has been recorded (payload: chunk index)
    - 'progress': Periodically while collecting (payload: done, total, elapsed seconds)
    - 'job_finished': When the output has been assembled (payload: job name, cancelled flag)
    """

    def emit_worker_launched(self, worker):
        """Emit worker launched event."""
        self.emit("worker_launched", worker)

    def emit_worker_stalled(self, host: str, pid: int, chunk: int):
        """Emit worker stalled event."""
        self.emit("worker_stalled", host, pid, chunk)

    def emit_chunk_done(self, chunk: int):
        """Emit chunk done event."""
        self.emit("chunk_done", chunk)

    def emit_progress(self, done: int, total: int, elapsed: float):
        """Emit progress event."""
        self.emit("progress", done, total, elapsed)

    def emit_job_finished(self, name: str, cancelled: bool):
        """Emit job finished event."""
        self.emit("job_finished", name, cancelled)
