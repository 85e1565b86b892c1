"""The job descriptor: everything a worker needs to join a job.

The descriptor is pickled once to ``<job_dir>/<name>.job`` and never
changed afterwards. Its path is the only argument a worker process gets.
Deleting the file cancels the job.
"""

from __future__ import annotations

import dataclasses
import enum
import importlib
import pathlib
import pickle
import uuid
from typing import Any, Callable

from .config import EngineConfig
from .helpers import get_logger, hostname
from .utils import atomic_write_bytes, quiet_delete

logger = get_logger(__name__)

DESCRIPTOR_SUFFIX = ".job"


class Mode(enum.Enum):
    AUTO = "auto"
    # one machine, coordination through a memory-mapped region
    SHARED = "shared"
    # any machines sharing a filesystem, coordination through lock files
    NETWORKED = "networked"


class TimeoutPolicy(enum.Enum):
    NONE = "none"
    SKIP = "skip"
    RETRY = "retry"

    @classmethod
    def from_timeout(cls, timeout: float) -> "TimeoutPolicy":
        if not timeout:
            return cls.NONE
        return cls.SKIP if timeout > 0 else cls.RETRY


def new_job_name() -> str:
    return f"batch_job_{uuid.uuid4().hex[:12]}"


@dataclasses.dataclass(frozen=True)
class JobDescriptor:
    name: str
    func: Callable | str
    item_shape: tuple
    n: int
    chunk_size: int
    job_dir: pathlib.Path
    work_dir: pathlib.Path
    cwd: pathlib.Path
    timeout: float = 0.0
    context: Any = None
    mode: Mode = Mode.NETWORKED
    n_slots: int = 0
    output_dtype: str | None = None
    output_shape: tuple = ()
    first_index: int = 0
    config: EngineConfig = dataclasses.field(default_factory=EngineConfig)

    @property
    def path(self) -> pathlib.Path:
        return self.job_dir / f"{self.name}{DESCRIPTOR_SUFFIX}"

    @property
    def input_path(self) -> pathlib.Path:
        return self.work_dir / "input.bin"

    @property
    def region_path(self) -> pathlib.Path:
        return self.work_dir / "coord.dat"

    @property
    def output_path(self) -> pathlib.Path:
        return self.work_dir / "output.dat"

    @property
    def policy(self) -> TimeoutPolicy:
        return TimeoutPolicy.from_timeout(self.timeout)

    @property
    def n_chunks(self) -> int:
        return -(-self.n // self.chunk_size)

    def error_log_path(self, host: str | None = None) -> pathlib.Path:
        return error_log_path(self.path, host)

    def replace(self, **changes) -> "JobDescriptor":
        return dataclasses.replace(self, **changes)


def error_log_path(path, host: str | None = None) -> pathlib.Path:
    """``<descriptor path>.<host>.err``; also usable when the descriptor cannot be loaded."""
    path = pathlib.Path(path)
    return path.with_name(f"{path.name}.{host or hostname()}.err")


def publish(descriptor: JobDescriptor) -> pathlib.Path:
    """Write the descriptor atomically; workers may read it from now on."""
    data = pickle.dumps(descriptor, protocol=pickle.HIGHEST_PROTOCOL)
    atomic_write_bytes(descriptor.path, data)
    logger.debug(f"Published job descriptor {descriptor.path}")
    return descriptor.path


def load(path) -> JobDescriptor:
    with open(path, "rb") as fh:
        descriptor = pickle.load(fh)
    if not isinstance(descriptor, JobDescriptor):
        raise TypeError(f"{path} does not hold a job descriptor")
    return descriptor


def is_live(descriptor: JobDescriptor) -> bool:
    """False once the descriptor has been deleted, i.e. the job is cancelled."""
    return descriptor.path.exists()


def cancel(descriptor: JobDescriptor) -> bool:
    """Delete the descriptor. Returns True if this call removed it."""
    if not descriptor.path.exists():
        return False
    quiet_delete(descriptor.path)
    logger.info(f"Job {descriptor.name} cancelled")
    return True


def resolve_function(ref: Callable | str) -> Callable:
    """Return the callable for a function reference.

    Accepts a callable, or a ``"package.module:qualname"`` string.
    """
    if callable(ref):
        return ref
    if not isinstance(ref, str) or ":" not in ref:
        raise TypeError(f"Cannot resolve function reference {ref!r}")
    module_name, _, qualname = ref.partition(":")
    obj = importlib.import_module(module_name)
    for attr in qualname.split("."):
        obj = getattr(obj, attr)
    if not callable(obj):
        raise TypeError(f"{ref} is not callable")
    return obj


def resolve_context(context: Any) -> Any:
    """A callable context is a loader: call it to get the real context."""
    if callable(context):
        return context()
    return context


__all__ = [
    "DESCRIPTOR_SUFFIX",
    "JobDescriptor",
    "Mode",
    "TimeoutPolicy",
    "cancel",
    "error_log_path",
    "is_live",
    "load",
    "new_job_name",
    "publish",
    "resolve_context",
    "resolve_function",
]
