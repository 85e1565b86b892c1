"""Chunk partitioning and the timing probe that sizes chunks."""

from __future__ import annotations

import dataclasses
import math
import time
from typing import Callable, Iterator, Sequence

from .config import EngineConfig
from .helpers import get_logger

logger = get_logger(__name__)


@dataclasses.dataclass(frozen=True)
class Chunk:
    """Iterations ``[start, end)``; `index` is 1-based."""

    index: int
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end))


def chunk_count(n: int, chunk_size: int) -> int:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return -(-n // chunk_size)


def chunk_bounds(index: int, n: int, chunk_size: int) -> Chunk:
    """The `index`-th chunk (1-based) of an `n`-iteration space."""
    if not 1 <= index <= chunk_count(n, chunk_size):
        raise IndexError(f"chunk {index} outside 1..{chunk_count(n, chunk_size)}")
    start = (index - 1) * chunk_size
    return Chunk(index, start, min(start + chunk_size, n))


def chunk_of(iteration: int, chunk_size: int) -> int:
    """Chunk index holding 0-based `iteration`."""
    return iteration // chunk_size + 1


def iter_chunks(n: int, chunk_size: int) -> Iterator[Chunk]:
    for index in range(1, chunk_count(n, chunk_size) + 1):
        yield chunk_bounds(index, n, chunk_size)


def choose_chunk_size(per_iteration_seconds: float, n: int, target_seconds: float = 10.0) -> int:
    """Iterations per chunk so that a chunk takes about `target_seconds`."""
    if per_iteration_seconds <= 0:
        size = n
    else:
        size = math.floor(target_seconds / per_iteration_seconds)
    return max(min(size, n), 1)


def clamp_workers(requested: int, n: int, chunk_size: int) -> int:
    """Never run more workers than there are chunks."""
    return max(min(requested, chunk_count(n, chunk_size)), 0)


@dataclasses.dataclass
class ProbeResult:
    outputs: list
    per_iteration: float
    chunk_size: int

    @property
    def count(self) -> int:
        return len(self.outputs)


def run_probe(
    compute: Callable[[Sequence[int]], list],
    n: int,
    config: EngineConfig | None = None,
) -> ProbeResult:
    """Time the first iterations and pick a chunk size.

    Iteration 0 is timed alone. If it is too quick to measure reliably, a
    burst of further iterations worth about ``config.burst_seconds`` is run
    and the mean is used. The outputs are kept: they are the start of
    chunk 1.
    """
    config = config or EngineConfig()
    if n < 1:
        raise ValueError("cannot probe an empty iteration space")

    tic = time.perf_counter()
    outputs = compute([0])
    elapsed = time.perf_counter() - tic

    if elapsed < config.probe_threshold and n > 1:
        burst = min(math.floor(config.burst_seconds / max(elapsed, 1e-9)), n)
        if burst > 1:
            tic = time.perf_counter()
            outputs.extend(compute(range(1, burst)))
            elapsed = (time.perf_counter() - tic) / (burst - 1)

    chunk_size = choose_chunk_size(elapsed, n, config.target_chunk_seconds)
    logger.info(
        f"Probe: {len(outputs)} iteration(s), {elapsed:.3g}s each, chunk size {chunk_size}"
    )
    return ProbeResult(outputs, elapsed, chunk_size)


__all__ = [
    "Chunk",
    "ProbeResult",
    "chunk_bounds",
    "chunk_count",
    "chunk_of",
    "choose_chunk_size",
    "clamp_workers",
    "iter_chunks",
    "run_probe",
]
