"""
Epipolar stereo matching on a rectified pair: disparity, depth and validity maps.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import cv2
import numpy as np
from numpy.typing import NDArray

from stereo_odometry.buffers import ImageView, as_aligned, is_aligned
from stereo_odometry.camera import StereoRig
from stereo_odometry.config import StereoConfig
from stereo_odometry.geometry import F32
from stereo_odometry.matching import PATTERN_RADIUS, make_kernel, refine_subpixel
from stereo_odometry.status import Status

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DepthStats:
    candidates: int = 0      # pixels past the gradient test with a full window
    out_of_range: int = 0    # no admissible disparity in the search range
    rejected_cost: int = 0   # best SSD not below the cost threshold
    rejected_depth: int = 0  # refined depth left [search_min, search_max]
    valid: int = 0


@dataclass(frozen=True, slots=True)
class DepthResult:
    status: Status
    validity: NDArray[np.bool_] | None = None
    disparity: NDArray[F32] | None = None  # 0 where invalid
    depth: NDArray[F32] | None = None      # 0 where invalid
    stats: DepthStats = field(default_factory=DepthStats)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == Status.OK

    @property
    def inverse_depth(self) -> NDArray[F32] | None:
        if self.depth is None or self.validity is None:
            return None
        inv = np.zeros(self.depth.shape, dtype=np.float32)
        inv[self.validity] = 1.0 / self.depth[self.validity]
        return inv


class StereoDepthEstimator:
    """
    Alignment contract: the matching kernels read contiguous float32 buffers whose
    first element sits on a `cfg.alignment`-byte boundary. With
    `cfg.require_aligned=True` the caller must supply such buffers (see
    `buffers.aligned_empty`) and a violation is reported as INPUT_ERROR. Otherwise
    the estimator converts and copies its inputs into aligned storage itself.
    """

    def __init__(self, cfg: StereoConfig, rig: StereoRig):
        self.cfg = cfg
        self.rig = rig
        self.kernel = make_kernel(cfg.pattern, cfg.backend, cfg.lanes)
        bf = rig.focal_baseline
        self.d_min = max(int(math.ceil(bf / cfg.search_max)), 1)
        self.d_max = int(math.floor(bf / cfg.search_min))

    def _validate(self, left, right) -> str | None:
        l, r = np.asarray(left), np.asarray(right)
        if l.ndim != 2 or r.ndim != 2:
            return f"expected single-channel 2D images, got shapes {l.shape} and {r.shape}"
        if l.size == 0 or r.size == 0:
            return "empty image"
        if l.shape != r.shape:
            return f"image size mismatch: left {l.shape} vs right {r.shape}"
        if not (np.all(np.isfinite(l)) and np.all(np.isfinite(r))):
            return "image contains non-finite values"
        if self.cfg.require_aligned:
            for name, a in (("left", l), ("right", r)):
                if a.dtype != np.float32 or not is_aligned(a, self.cfg.alignment):
                    return f"{name} image is not a {self.cfg.alignment}-byte aligned float32 buffer"
        return None

    def _candidates(self, left: NDArray[F32]) -> NDArray[np.bool_]:
        gx = cv2.Sobel(left, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(left, cv2.CV_32F, 0, 1, ksize=3)
        mag = np.hypot(gx, gy)
        return (mag > self.cfg.grad_threshold) & ImageView(left).window_mask(PATTERN_RADIUS)

    def compute_depth(self, left, right) -> DepthResult:
        err = self._validate(left, right)
        if err is not None:
            log.warning("compute_depth: %s", err)
            return DepthResult(status=Status.INPUT_ERROR, message=err)

        cfg = self.cfg
        L = as_aligned(left, np.float32, cfg.alignment)
        R = as_aligned(right, np.float32, cfg.alignment)
        h, w = L.shape
        bf = self.rig.focal_baseline

        cand = self._candidates(L)
        rows, cols = np.nonzero(cand)
        d_lo = np.full(rows.shape, self.d_min, dtype=np.int64)
        d_hi = np.minimum(np.minimum(self.d_max, w - 1), cols - PATTERN_RADIUS).astype(np.int64)

        res = self.kernel.match(L, R, rows, cols, d_lo, d_hi)
        searched = res.disparity >= 0
        good = searched & (res.cost < cfg.cost_threshold)

        disp = res.disparity.astype(np.float64)
        if cfg.subpixel and np.any(good):
            gr, gc, gd = rows[good], cols[good], res.disparity[good]
            c_prev = self.kernel.costs(L, R, gr, gc, gd - 1)
            c_next = self.kernel.costs(L, R, gr, gc, gd + 1)
            # neighbors outside the admissible range do not take part in the fit
            c_prev[gd - 1 < d_lo[good]] = np.inf
            c_next[gd + 1 > d_hi[good]] = np.inf
            disp[good] = refine_subpixel(gd, c_prev, res.cost[good], c_next)

        depth = np.zeros(rows.shape, dtype=np.float64)
        depth[good] = bf / disp[good]
        in_range = good & (depth >= cfg.search_min) & (depth <= cfg.search_max)

        validity = np.zeros((h, w), dtype=bool)
        disparity = np.zeros((h, w), dtype=np.float32)
        depth_map = np.zeros((h, w), dtype=np.float32)
        validity[rows[in_range], cols[in_range]] = True
        disparity[rows[in_range], cols[in_range]] = disp[in_range]
        depth_map[rows[in_range], cols[in_range]] = depth[in_range]

        stats = DepthStats(
            candidates=int(rows.size),
            out_of_range=int(np.count_nonzero(~searched)),
            rejected_cost=int(np.count_nonzero(searched & ~good)),
            rejected_depth=int(np.count_nonzero(good & ~in_range)),
            valid=int(np.count_nonzero(in_range)),
        )
        log.info("depth: %dx%d candidates=%d valid=%d (no_range=%d cost=%d depth=%d)",
                 w, h, stats.candidates, stats.valid, stats.out_of_range, stats.rejected_cost, stats.rejected_depth)
        return DepthResult(status=Status.OK, validity=validity, disparity=disparity, depth=depth_map, stats=stats)
