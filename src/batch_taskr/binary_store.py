"""Flat, type-tagged array files.

Layout: ``BTSK`` magic, a little-endian header length, then a header of
``<dtype.str>;<dim0>,<dim1>,...`` padded to 8 bytes, then the raw C-order
array data. No compression.
"""

import os
import pathlib
import struct

import numpy as np

MAGIC = b"BTSK"
_LEN = struct.Struct("<I")


def num_bytes(array) -> int:
    """Size in bytes of the array's data."""
    return np.asarray(array).nbytes


def _encode_header(dtype: np.dtype, shape) -> bytes:
    text = f"{dtype.str};{','.join(str(int(d)) for d in shape)}".encode("ascii")
    pad = (-(len(MAGIC) + _LEN.size + len(text))) % 8
    return MAGIC + _LEN.pack(len(text) + pad) + text + b" " * pad


def _read_header(fh):
    magic = fh.read(len(MAGIC))
    if magic != MAGIC:
        raise ValueError(f"{getattr(fh, 'name', fh)!r} is not a batch_taskr array file")
    (length,) = _LEN.unpack(fh.read(_LEN.size))
    dtype_str, _, dims = fh.read(length).decode("ascii").strip().partition(";")
    shape = tuple(int(d) for d in dims.split(",") if d)
    return np.dtype(dtype_str), shape, len(MAGIC) + _LEN.size + length


def write(array, path) -> pathlib.Path:
    """Write a numeric array to `path`, replacing any existing file."""
    array = np.ascontiguousarray(array)
    if array.dtype.kind not in "biufc":
        raise TypeError(f"Only numeric arrays can be stored, got dtype {array.dtype}")
    path = pathlib.Path(path)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp, "wb") as fh:
        fh.write(_encode_header(array.dtype, array.shape))
        fh.write(array.tobytes(order="C"))
    os.replace(tmp, path)
    return path


def read(path, mmap: bool = False) -> np.ndarray:
    """Read an array written by `write`.

    With ``mmap=True`` the data is memory-mapped read-only instead of
    loaded, so many worker processes on one host share the page cache.
    """
    with open(path, "rb") as fh:
        dtype, shape, offset = _read_header(fh)
        count = int(np.prod(shape, dtype=np.int64)) if shape else 1
        if mmap and count > 0:
            return np.memmap(fh, dtype=dtype, mode="r", offset=offset, shape=shape)
        data = np.fromfile(fh, dtype=dtype, count=count)
    return data.reshape(shape)


__all__ = ["num_bytes", "read", "write", "MAGIC"]
