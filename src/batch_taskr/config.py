"""Engine tunables.

Every field can be overridden from the environment with
``BATCH_TASKR_<FIELD_NAME>`` (e.g. ``BATCH_TASKR_POLL_INTERVAL=0.1``).
The controller ships its config inside the job descriptor, so workers
always run with the controller's values.
"""

from __future__ import annotations

import dataclasses
import os

ENV_PREFIX = "BATCH_TASKR_"


@dataclasses.dataclass(frozen=True)
class EngineConfig:
    # seconds of compute each chunk should represent
    target_chunk_seconds: float = 10.0
    # a first iteration faster than this is re-measured over a burst
    probe_threshold: float = 0.5
    burst_seconds: float = 1.0
    poll_interval: float = 0.05
    progress_interval: float = 2.0
    # how long cleanup waits for cancelled workers to drop their locks
    lock_clear_wait: float = 4.0
    cancel_check_period: float = 2.0
    startup_grace: float = 60.0
    stall_grace: float = 5.0
    max_restarts: int = 8
    remote_python: str = "python3"
    ssh: str = "ssh"

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "EngineConfig":
        """Build a config from defaults, environment and explicit overrides."""
        environ = os.environ if environ is None else environ
        values = {}
        for field in dataclasses.fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            kind = type(field.default)
            try:
                values[field.name] = kind(raw)
            except ValueError as e:
                raise ValueError(
                    f"Invalid value for {ENV_PREFIX}{field.name.upper()}: {raw!r}"
                ) from e
        values.update(overrides)
        return cls(**values)

    def replace(self, **changes) -> "EngineConfig":
        return dataclasses.replace(self, **changes)


__all__ = ["EngineConfig", "ENV_PREFIX"]
