"""Reassemble chunk results into the output a plain loop would give."""

from __future__ import annotations

import dataclasses
from typing import Callable

import numpy as np

from .helpers import get_logger
from .partition import iter_chunks

logger = get_logger(__name__)


class _Missing:
    """Marks an iteration whose chunk never produced a result."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


@dataclasses.dataclass(frozen=True)
class IterationError:
    """Recorded in place of an output when the function raised."""

    index: int
    exc_type: str
    traceback: str

    def __str__(self):
        return f"iteration {self.index} raised {self.exc_type}"


def assemble(n: int, chunk_size: int, read_chunk: Callable[[int], list | None]) -> list:
    """Collect per-iteration outputs in iteration order.

    `read_chunk` returns the list of outputs of a chunk, or None when the
    chunk has no result; its iterations become `MISSING`.
    """
    outputs: list = []
    if n == 0:
        return outputs
    for chunk in iter_chunks(n, chunk_size):
        result = read_chunk(chunk.index)
        if result is None:
            outputs.extend([MISSING] * len(chunk))
            continue
        if len(result) != len(chunk):
            logger.warning(
                f"Chunk {chunk.index} holds {len(result)} outputs, expected {len(chunk)}"
            )
            result = (list(result) + [MISSING] * len(chunk))[: len(chunk)]
        outputs.extend(result)
    return outputs


def _is_absent(value) -> bool:
    return value is MISSING or value is None


def _numeric_form(value):
    if isinstance(value, (bool, int, float, complex, np.number, np.bool_)):
        return np.asarray(value)
    if isinstance(value, np.ndarray) and value.dtype.kind in "biufc":
        return value
    return None


def output_spec(values: list) -> tuple[np.dtype, tuple] | None:
    """Common ``(dtype, shape)`` of numeric outputs, or None if they have none."""
    arrays = [_numeric_form(v) for v in values]
    if not arrays or any(a is None for a in arrays):
        return None
    shape = arrays[0].shape
    if any(a.shape != shape for a in arrays):
        return None
    return np.result_type(*arrays), shape


def row_fits(value, shape: tuple, dtype) -> bool:
    """True if `value` can be stored in a ``(shape, dtype)`` row unchanged.

    No broadcasting, and only casts numpy considers safe, so an int row
    never swallows a float.
    """
    array = _numeric_form(value)
    if array is None or array.shape != tuple(shape):
        return False
    return bool(np.can_cast(array.dtype, np.dtype(dtype), "safe"))


def collapse(outputs: list):
    """Turn outputs into an array when they all share a numeric shape.

    Missing iterations and `None` placeholders become NaN rows; integer and
    boolean outputs are promoted to float if any row has to be filled.
    Anything else (mixed shapes, objects, recorded errors) stays a list with
    None for each missing iteration.
    """
    if not outputs:
        return np.empty((0,))

    present = [o for o in outputs if not _is_absent(o)]
    as_list = [None if _is_absent(o) else o for o in outputs]
    if not present:
        return np.full((len(outputs),), np.nan)

    arrays = [_numeric_form(o) for o in present]
    if any(a is None for a in arrays):
        return as_list
    shape = arrays[0].shape
    if any(a.shape != shape for a in arrays):
        return as_list

    dtype = np.result_type(*arrays)
    if len(present) < len(outputs) and dtype.kind in "biu":
        dtype = np.result_type(dtype, np.float64)

    out = np.empty((len(outputs), *shape), dtype=dtype)
    it = iter(arrays)
    for row, value in enumerate(outputs):
        out[row] = np.nan if _is_absent(value) else next(it)
    return out


__all__ = ["IterationError", "MISSING", "assemble", "collapse", "output_spec", "row_fits"]
