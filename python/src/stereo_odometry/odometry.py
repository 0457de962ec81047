"""
Frame-to-frame stereo odometry driver.

Per frame: build the left image pyramid, solve the relative motion against the reference
frame's image and depth pyramids, chain it onto the reference's camera-to-world pose, then
let this frame become the next reference if its depth is usable. A frame with failed
depth is still tracked; the following frame is then solved against the older reference. No file I/O happens here;
callers feed rectified (left, right) pairs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from stereo_odometry.camera import StereoRig
from stereo_odometry.config import OdometryConfig
from stereo_odometry.geometry import Pose
from stereo_odometry.pyramid import DepthPyramid, ImagePyramid
from stereo_odometry.solver import PoseSolver, SolveResult
from stereo_odometry.status import Status
from stereo_odometry.stereo import DepthResult, StereoDepthEstimator

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FrameResult:
    index: int
    status: Status
    depth: DepthResult
    solve: SolveResult | None  # None while there is no reference frame
    pose: Pose                 # camera-to-world (world = first tracked frame)


@dataclass(frozen=True, slots=True)
class _Reference:
    images: ImagePyramid
    depths: DepthPyramid
    pose: Pose  # camera-to-world


class StereoOdometry:
    def __init__(self, cfg: OdometryConfig, rig: StereoRig):
        self.cfg = cfg
        self.rig = rig
        self.depth_estimator = StereoDepthEstimator(cfg.stereo, rig)
        self.solver = PoseSolver(cfg.solver, rig.left)
        self._ref: _Reference | None = None
        self._pose = Pose.I()
        self._frames: list[FrameResult] = []

    def reset(self) -> None:
        self._ref = None
        self._pose = Pose.I()
        self._frames = []

    @property
    def frames(self) -> tuple[FrameResult, ...]:
        return tuple(self._frames)

    @property
    def trajectory(self) -> list[Pose]:
        return [f.pose for f in self._frames]

    @property
    def pose(self) -> Pose:
        return self._pose

    def _record(self, fr: FrameResult) -> FrameResult:
        self._frames.append(fr)
        t = fr.pose.t
        log.info("frame %d | status=%s | valid_depth=%d | its=%d | t=(%.3f, %.3f, %.3f)",
                 fr.index, fr.status, fr.depth.stats.valid, fr.solve.iterations if fr.solve else 0,
                 t[0], t[1], t[2])
        return fr

    def process(self, left, right) -> FrameResult:
        idx = len(self._frames)
        depth = self.depth_estimator.compute_depth(left, right)
        try:
            images = ImagePyramid(self.cfg.levels, left)
        except ValueError as e:
            log.warning("frame %d: cannot build image pyramid: %s", idx, e)
            return self._record(FrameResult(idx, Status.INPUT_ERROR, depth, None, self._pose))

        ref = self._ref
        solve = None
        status = Status.OK
        if ref is not None:
            # motion already tracked since the reference (identity unless a frame was skipped)
            init = self._pose.inv() @ ref.pose
            solve = self.solver.solve(ref.images, ref.depths, images, init_pose=init)
            status = solve.status
            if solve.pose is not None:
                self._pose = ref.pose @ solve.pose.inv()
            else:
                log.warning("frame %d: pose solve failed (%s: %s), keeping previous pose",
                            idx, solve.status, solve.message)

        if depth.status == Status.OK:
            self._ref = _Reference(images=images, depths=DepthPyramid(self.cfg.levels, depth.depth, depth.validity),
                                   pose=self._pose)
        else:
            log.warning("frame %d: depth failed (%s), reference not replaced", idx, depth.status)
            if not status.is_failure:
                status = depth.status
        return self._record(FrameResult(idx, status, depth, solve, self._pose))

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for f in self._frames:
            rvec, t = f.pose.rvec_t()
            rows.append({
                "frame": f.index,
                "status": str(f.status),
                "tx": float(t[0]), "ty": float(t[1]), "tz": float(t[2]),
                "rx": float(rvec[0]), "ry": float(rvec[1]), "rz": float(rvec[2]),
                "valid_depth": f.depth.stats.valid,
                "iterations": f.solve.iterations if f.solve else 0,
                "final_cost": f.solve.final_cost if f.solve else np.nan,
            })
        cols = ["frame", "status", "tx", "ty", "tz", "rx", "ry", "rz", "valid_depth", "iterations", "final_cost"]
        return pd.DataFrame(rows, columns=cols)
