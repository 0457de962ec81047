"""
Aligned image storage and bounds-checked 2D views.

The matching kernels assume contiguous, 32-byte aligned float buffers. Callers
either hand in arrays that already satisfy that contract or let `as_aligned`
make an aligned copy.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import DTypeLike, NDArray

ALIGNMENT = 32  # bytes


def is_aligned(a: np.ndarray, alignment: int = ALIGNMENT) -> bool:
    return bool(a.flags.c_contiguous and (a.ctypes.data % alignment) == 0)


def aligned_empty(shape, dtype: DTypeLike = np.float32, alignment: int = ALIGNMENT) -> np.ndarray:
    """Uninitialized C-contiguous array whose first element sits on an `alignment`-byte boundary."""
    if alignment <= 0 or (alignment & (alignment - 1)) != 0:
        raise ValueError(f"alignment must be a positive power of two, got {alignment}")
    dtype = np.dtype(dtype)
    shape = tuple(int(s) for s in np.atleast_1d(shape))
    nbytes = int(np.prod(shape, dtype=np.int64)) * dtype.itemsize
    raw = np.empty(nbytes + alignment, dtype=np.uint8)
    offset = (-raw.ctypes.data) % alignment
    # the returned view keeps `raw` alive through .base
    return raw[offset:offset + nbytes].view(dtype).reshape(shape)


def aligned_zeros(shape, dtype: DTypeLike = np.float32, alignment: int = ALIGNMENT) -> np.ndarray:
    a = aligned_empty(shape, dtype, alignment)
    a.fill(0)
    return a


def as_aligned(a, dtype: DTypeLike = np.float32, alignment: int = ALIGNMENT) -> np.ndarray:
    """Return `a` itself if it already has the dtype and alignment, else an aligned copy."""
    arr = np.asarray(a)
    if arr.dtype == np.dtype(dtype) and is_aligned(arr, alignment):
        return arr
    out = aligned_empty(arr.shape, dtype, alignment)
    out[...] = arr
    return out


class ImageView:
    """
    Bounds-checked (row, col) access to a single-channel image.

    Patch-based code asks `has_window` before touching a neighborhood instead of
    relying on implicit out-of-bounds reads near the border.
    """

    __slots__ = ("_data", "rows", "cols")

    def __init__(self, data: NDArray) -> None:
        arr = np.asarray(data)
        if arr.ndim != 2:
            raise ValueError(f"ImageView expects a 2D array, got shape {arr.shape}")
        self._data = arr
        self.rows, self.cols = arr.shape

    @property
    def shape(self) -> tuple[int, int]:
        return self.rows, self.cols

    def __getitem__(self, rc: tuple[int, int]) -> float:
        r, c = rc
        if not (0 <= r < self.rows and 0 <= c < self.cols):
            raise IndexError(f"pixel ({r}, {c}) outside {self.rows}x{self.cols} image")
        return float(self._data[r, c])

    def has_window(self, r: int, c: int, radius: int) -> bool:
        return (radius <= r < self.rows - radius) and (radius <= c < self.cols - radius)

    def window_mask(self, radius: int) -> NDArray[np.bool_]:
        """True where a full (2*radius+1)^2 window fits inside the image."""
        m = np.zeros((self.rows, self.cols), dtype=bool)
        if self.rows > 2 * radius and self.cols > 2 * radius:
            m[radius:self.rows - radius, radius:self.cols - radius] = True
        return m
