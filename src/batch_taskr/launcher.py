"""Controller-side components for starting and stopping worker processes.

Workers are independent processes: they are started detached (they
survive the controller) and talk to the job only through the shared
filesystem. Local workers are started with ``QProcess.startDetached``,
remote ones through ``ssh`` started the same way.
"""

import dataclasses
import logging
import shlex
import subprocess
import time

from .config import EngineConfig
from .descriptor import JobDescriptor
from .helpers import MultiprocessingHelper, get_logger, is_local_host, kill_local
from .protocols import JobEvents
from .qt_compat import start_detached

logger = get_logger(__name__)

WORKER_MODULE = "batch_taskr"


@dataclasses.dataclass(frozen=True)
class LaunchedWorker:
    """Handle on a started worker process."""

    host: str
    pid: int
    slot: int | None = None
    started: float = dataclasses.field(default_factory=time.time)

    @property
    def local(self) -> bool:
        return is_local_host(self.host)

    def __str__(self):
        where = self.host or "localhost"
        slot = f" slot {self.slot}" if self.slot is not None else ""
        return f"worker {self.pid or '?'}@{where}{slot}"


class WorkerLauncher:
    """Starts workers for one job."""

    def __init__(
        self,
        descriptor: JobDescriptor,
        events: JobEvents | None = None,
        config: EngineConfig | None = None,
        starter=start_detached,
        runner=subprocess.run,
    ):
        self.descriptor = descriptor
        self.events = events
        self.config = config or descriptor.config
        self.python_interpreter = MultiprocessingHelper.get_python_interpreter()
        self._start = starter
        self._run = runner

    def worker_args(self, slot=None) -> list[str]:
        """Arguments following the interpreter on the worker command line."""
        args = ["-m", WORKER_MODULE, str(self.descriptor.path)]
        if slot is not None:
            args.extend(["--slot", str(slot)])
        level = logging.getLogger("batch_taskr").getEffectiveLevel()
        args.extend(["--log-level", logging.getLevelName(level)])
        return args

    def remote_command(self, slot=None) -> str:
        cmd = " ".join(
            shlex.quote(a) for a in [self.config.remote_python, *self.worker_args(slot)]
        )
        cwd = shlex.quote(str(self.descriptor.cwd))
        return f"cd {cwd} && nohup {cmd} > /dev/null 2>&1 &"

    def launch(self, host=None, slot=None) -> LaunchedWorker | None:
        """Start one worker on `host` (None for this machine).

        Returns None if the process could not be started; the failure is
        logged and the job carries on without it.
        """
        local = is_local_host(host)
        if local:
            program, args = str(self.python_interpreter), self.worker_args(slot)
        else:
            program, args = self.config.ssh, [host, self.remote_command(slot)]

        logger.debug(f"Starting worker process: {program} {args}")
        try:
            ok, pid = self._start(program, args, str(self.descriptor.cwd))
        except (RuntimeError, OSError) as e:
            logger.error(f"Worker process failed to start on {host or 'localhost'}: {e}")
            return None
        if not ok:
            logger.error(f"Worker process failed to start on {host or 'localhost'}")
            return None

        # the pid of a remote worker is only known from the locks it takes
        worker = LaunchedWorker(host="" if local else host, pid=pid if local else 0, slot=slot)
        logger.info(f"Started {worker}")
        if self.events:
            self.events.emit_worker_launched(worker)
        return worker

    def kill(self, host, pid: int) -> bool:
        """Forcefully stop process `pid` on `host`."""
        if pid <= 0:
            return False
        if is_local_host(host):
            return kill_local(pid)
        try:
            out = self._run(
                [self.config.ssh, host, "kill", "-9", str(pid)],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Could not kill process {pid} on {host}: {e}")
            return False
        if out.returncode != 0:
            logger.error(f"Could not kill process {pid} on {host}: {out.stderr.strip()}")
            return False
        return True

    def kill_worker(self, worker: LaunchedWorker) -> bool:
        return self.kill(worker.host, worker.pid)


__all__ = ["LaunchedWorker", "WorkerLauncher", "WORKER_MODULE"]
