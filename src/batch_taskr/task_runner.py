"""
TaskRunner - A simplified interface for running batch jobs.

Provides a high-level API that wraps JobController and JobEvents
for easier job execution with callback-based result handling.
"""

import logging

from .controller import JobController
from .helpers import get_logger
from .protocols import JobEvents


class TaskRunner:
    """Simplified job runner with callback-based event handling."""

    def __init__(self, func, inputs, job_args=None, log_level=None, logger=None):
        """Initialize TaskRunner.

        Args:
            func: Function applied to every item of `inputs`
            inputs: Numeric array iterated over its leading axis
            job_args: Dictionary of keyword arguments for JobController
            log_level: Logging level (optional)
            logger: Custom logger instance (optional)
        """
        if logger:
            self.logger = logger
        else:
            actual_log_level = log_level if log_level is not None else logging.INFO
            self.logger = get_logger(log_level=actual_log_level)
        self.events = JobEvents()
        self.func = func
        self.inputs = inputs
        self.job_args = dict(job_args or {})
        self.handle = None
        self._results_callback = None
        self._progress_callback = None

    def on_results(self, callback):
        """Register a callback for when the job output is ready.

        Args:
            callback: Function to call with the output
        """
        self._results_callback = callback

    def on_progress(self, callback):
        """Register a callback for progress updates.

        Args:
            callback: Function to call with (progress, status) tuple
        """
        self._progress_callback = callback
        self.events.on("progress", self._handle_progress)

    def start(self):
        """Submit the job; returns its handle, or None if it could not start."""
        controller = JobController(self.func, self.inputs, events=self.events, **self.job_args)
        try:
            self.handle = controller.submit()
        except (TypeError, ValueError, RuntimeError) as e:
            self.logger.error(f"Failed to start job: {e}")
            return None
        self.logger.info(f"Job {self.handle.name} started")
        return self.handle

    def wait(self, timeout=None):
        """Block until the job is done, deliver and return its output."""
        if self.handle is None:
            raise RuntimeError("Job not started")
        output = self.handle.result(timeout)
        self._handle_results(output)
        return output

    def run(self):
        """Start the job and wait for its output."""
        if self.start() is None:
            return None
        return self.wait()

    def cancel(self):
        return self.handle.cancel() if self.handle else False

    def _handle_results(self, results):
        """Internal handler for job output."""
        if self._results_callback:
            self._results_callback(results)

    def _handle_progress(self, done, total, elapsed):
        """Internal handler for progress events."""
        if self._progress_callback:
            progress = done / total if total else 1.0
            status = "done" if done >= total else "running"
            self._progress_callback(progress, status)
