"""
Matching-cost kernels for epipolar stereo search.

Every kernel scores a left-image patch centered at (row, col) against the right-image
patch centered at (row, col - d) with a sum of squared differences over a fixed set of
(dy, dx) taps. Costs are accumulated in float64 in pattern order, and the winning
disparity is the smallest one attaining the minimum cost. The scalar kernel walks the
same taps in the same order, so both backends make identical decisions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from stereo_odometry.buffers import ImageView
from stereo_odometry.config import KernelBackend, MatchingPattern
from stereo_odometry.geometry import F64

log = logging.getLogger(__name__)

PATTERN_RADIUS = 2

Offsets = tuple[tuple[int, int], ...]

_PATTERNS: dict[MatchingPattern, Offsets] = {
    MatchingPattern.DENSE_5X5: tuple((dy, dx) for dy in range(-2, 3) for dx in range(-2, 3)),
    MatchingPattern.DSO: ((-2, 0), (-1, -1), (-1, 1), (0, -2), (0, 0), (0, 2), (1, -1), (2, 0)),
    MatchingPattern.LINE: tuple((0, dx) for dx in range(-2, 3)),
}


def pattern_offsets(pattern: MatchingPattern | str) -> Offsets:
    return _PATTERNS[MatchingPattern(pattern)]


@dataclass(frozen=True, slots=True)
class MatchResult:
    disparity: NDArray[np.int64]  # (N,), -1 where no candidate disparity was evaluated
    cost: NDArray[F64]            # (N,), inf where no candidate disparity was evaluated


class MatchingKernel(ABC):
    def __init__(self, pattern: MatchingPattern | str = MatchingPattern.DENSE_5X5) -> None:
        self.pattern = MatchingPattern(pattern)
        self.offsets = pattern_offsets(self.pattern)
        self.radius = PATTERN_RADIUS

    def _check_centers(self, shape: tuple[int, int], rows: NDArray, cols: NDArray) -> None:
        h, w = shape
        r = self.radius
        if rows.size and (rows.min() < r or rows.max() >= h - r or cols.min() < r or cols.max() >= w - r):
            raise ValueError("every patch center needs a full window inside the left image")

    @abstractmethod
    def match(self, left, right, rows, cols, d_lo, d_hi) -> MatchResult:
        """Best disparity in [d_lo, d_hi] (inclusive, per pixel) for each (row, col)."""

    @abstractmethod
    def costs(self, left, right, rows, cols, disparities) -> NDArray[F64]:
        """SSD at one disparity per pixel; inf where the right window leaves the image."""


class VectorizedKernel(MatchingKernel):
    """
    Lane-wise evaluation: all pixels x `lanes` consecutive disparities per block.
    """

    def __init__(self, pattern: MatchingPattern | str = MatchingPattern.DENSE_5X5, lanes: int = 8) -> None:
        super().__init__(pattern)
        if lanes < 1:
            raise ValueError(f"lanes must be >= 1, got {lanes}")
        self.lanes = int(lanes)

    def _left_taps(self, left: NDArray, rows: NDArray, cols: NDArray) -> list[NDArray[F64]]:
        return [left[rows + dy, cols + dx].astype(np.float64) for dy, dx in self.offsets]

    def _ssd(self, taps: list[NDArray[F64]], right: NDArray, rows: NDArray, rc: NDArray) -> NDArray[F64]:
        # rows: (N,1), rc: (N,L) right-image patch centers (may be out of range; clipped here)
        w = right.shape[1]
        acc = np.zeros(rc.shape, dtype=np.float64)
        for (dy, dx), lv in zip(self.offsets, taps):
            c = np.clip(rc + dx, 0, w - 1)
            diff = lv.reshape(-1, 1) - right[rows + dy, c].astype(np.float64)
            acc += diff * diff
        return acc

    def match(self, left, right, rows, cols, d_lo, d_hi) -> MatchResult:
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        d_lo = np.asarray(d_lo, dtype=np.int64).ravel()
        d_hi = np.asarray(d_hi, dtype=np.int64).ravel()
        self._check_centers(left.shape, rows, cols)

        n = rows.size
        best_d = np.full(n, -1, dtype=np.int64)
        best_c = np.full(n, np.inf, dtype=np.float64)
        live = d_lo <= d_hi
        if not np.any(live):
            return MatchResult(best_d, best_c)

        w = right.shape[1]
        r = self.radius
        taps = self._left_taps(left, rows, cols)
        rows2 = rows.reshape(-1, 1)
        lane = np.arange(self.lanes, dtype=np.int64)
        idx = np.arange(n)

        for d0 in range(int(d_lo[live].min()), int(d_hi[live].max()) + 1, self.lanes):
            d = d0 + lane                          # (L,)
            rc = cols.reshape(-1, 1) - d           # (N,L)
            ok = (d >= d_lo.reshape(-1, 1)) & (d <= d_hi.reshape(-1, 1)) & (rc >= r) & (rc < w - r)
            if not ok.any():
                continue
            acc = self._ssd(taps, right, rows2, rc)
            acc[~ok] = np.inf
            j = np.argmin(acc, axis=1)             # first minimum inside the block
            blk = acc[idx, j]
            better = blk < best_c                  # strict: earlier blocks win ties
            best_c[better] = blk[better]
            best_d[better] = d[j[better]]

        return MatchResult(best_d, best_c)

    def costs(self, left, right, rows, cols, disparities) -> NDArray[F64]:
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        d = np.asarray(disparities, dtype=np.int64).ravel()
        self._check_centers(left.shape, rows, cols)
        if rows.size == 0:
            return np.zeros(0, dtype=np.float64)
        w = right.shape[1]
        rc = (cols - d).reshape(-1, 1)
        acc = self._ssd(self._left_taps(left, rows, cols), right, rows.reshape(-1, 1), rc)[:, 0]
        inside = (rc[:, 0] >= self.radius) & (rc[:, 0] < w - self.radius)
        acc[~inside] = np.inf
        return acc


class ScalarKernel(MatchingKernel):
    """Per-pixel reference implementation over bounds-checked views."""

    def _ssd(self, lv: ImageView, rv: ImageView, r: int, c: int, d: int) -> float:
        acc = 0.0
        for dy, dx in self.offsets:
            diff = lv[r + dy, c + dx] - rv[r + dy, c - d + dx]
            acc += diff * diff
        return acc

    def match(self, left, right, rows, cols, d_lo, d_hi) -> MatchResult:
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        d_lo = np.asarray(d_lo, dtype=np.int64).ravel()
        d_hi = np.asarray(d_hi, dtype=np.int64).ravel()
        self._check_centers(left.shape, rows, cols)

        lv, rv = ImageView(left), ImageView(right)
        best_d = np.full(rows.size, -1, dtype=np.int64)
        best_c = np.full(rows.size, np.inf, dtype=np.float64)
        for i in range(rows.size):
            r, c = int(rows[i]), int(cols[i])
            for d in range(int(d_lo[i]), int(d_hi[i]) + 1):
                if not rv.has_window(r, c - d, self.radius):
                    continue
                cost = self._ssd(lv, rv, r, c, d)
                if cost < best_c[i]:
                    best_c[i] = cost
                    best_d[i] = d
        return MatchResult(best_d, best_c)

    def costs(self, left, right, rows, cols, disparities) -> NDArray[F64]:
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        d = np.asarray(disparities, dtype=np.int64).ravel()
        self._check_centers(left.shape, rows, cols)
        lv, rv = ImageView(left), ImageView(right)
        out = np.full(rows.size, np.inf, dtype=np.float64)
        for i in range(rows.size):
            r, c, di = int(rows[i]), int(cols[i]), int(d[i])
            if rv.has_window(r, c - di, self.radius):
                out[i] = self._ssd(lv, rv, r, c, di)
        return out


def make_kernel(
    pattern: MatchingPattern | str = MatchingPattern.DENSE_5X5,
    backend: KernelBackend | str = KernelBackend.AUTO,
    lanes: int = 8,
) -> MatchingKernel:
    match KernelBackend(backend):
        case KernelBackend.AUTO | KernelBackend.VECTORIZED:
            return VectorizedKernel(pattern, lanes)
        case KernelBackend.SCALAR:
            return ScalarKernel(pattern)
        case _:
            raise ValueError(f"Unknown kernel backend: {backend}")


def refine_subpixel(d, c_prev, c, c_next) -> NDArray[F64]:
    """
    Parabolic refinement around an integer SSD minimum. The offset is clamped to
    +-0.5 px and only applied where both neighbors are finite and the fit is convex.
    """
    d = np.asarray(d, dtype=np.float64)
    c_prev = np.asarray(c_prev, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64)
    c_next = np.asarray(c_next, dtype=np.float64)

    ok = np.isfinite(c_prev) & np.isfinite(c_next)
    denom = np.where(ok, c_prev - 2.0 * c + c_next, 0.0)
    ok &= denom > 0.0
    num = np.where(ok, c_prev - c_next, 0.0)
    offset = 0.5 * num / np.where(ok, denom, 1.0)
    return d + np.clip(offset, -0.5, 0.5)
