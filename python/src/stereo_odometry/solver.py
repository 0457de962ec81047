"""
Coarse-to-fine direct photometric pose solver.

Estimates the rigid motion T (X_cur = R * X_prev + t) that best explains the current
intensity pyramid given the previous intensity and depth pyramids. Each level runs a
robustified Levenberg-Marquardt loop over the 6-DoF twist (v, w) with left-multiplicative
manifold updates; the estimate of one level initializes the next finer one.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from stereo_odometry.camera import CameraModel, PinholeCamera
from stereo_odometry.config import SolverConfig
from stereo_odometry.geometry import F64, Pose
from stereo_odometry.pyramid import DepthPyramid, ImagePyramid
from stereo_odometry.robust import RobustKernel
from stereo_odometry.status import Status

log = logging.getLogger(__name__)

MIN_DEPTH = 1e-6  # transformed points closer than this count as behind the camera


@dataclass(frozen=True, slots=True)
class LevelReport:
    """
    Diagnostics of one pyramid level.

    `converged` is set when an accepted step met the precision ratio, and also when
    `max_rejections` consecutive steps were rejected. The latter case additionally sets
    `stalled`: no tried damping found a descent direction, which happens at a true
    minimum but also when the first linearization is already unusable (check
    `accepted == 0`).
    """

    level: int
    iterations: int
    accepted: int
    rejected: int
    support: int          # residuals retained at the final linearization
    initial_cost: float
    final_cost: float
    damping: float
    converged: bool
    stalled: bool = False


@dataclass(frozen=True, slots=True)
class SolveResult:
    status: Status
    pose: Pose | None = None
    levels: tuple[LevelReport, ...] = ()
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == Status.OK

    @property
    def converged(self) -> bool:
        return bool(self.levels) and all(r.converged for r in self.levels) and not self.status.is_failure

    @property
    def iterations(self) -> int:
        return sum(r.iterations for r in self.levels)

    @property
    def final_cost(self) -> float:
        return self.levels[-1].final_cost if self.levels else float("nan")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(r) for r in self.levels], columns=[f.name for f in fields(LevelReport)])


def bilinear_sample(img: NDArray, u: NDArray[F64], v: NDArray[F64]) -> NDArray[F64]:
    """Bilinear sample of a 2D image at in-bounds float coordinates u (x), v (y)."""
    h, w = img.shape
    x0 = np.clip(np.floor(u).astype(np.int64), 0, max(w - 2, 0))
    y0 = np.clip(np.floor(v).astype(np.int64), 0, max(h - 2, 0))
    x1 = np.minimum(x0 + 1, w - 1)
    y1 = np.minimum(y0 + 1, h - 1)
    ax = u - x0
    ay = v - y0
    c00 = img[y0, x0].astype(np.float64)
    c10 = img[y0, x1].astype(np.float64)
    c01 = img[y1, x0].astype(np.float64)
    c11 = img[y1, x1].astype(np.float64)
    top = c00 + ax * (c10 - c00)
    bot = c01 + ax * (c11 - c01)
    return top + ay * (bot - top)


@dataclass(frozen=True, slots=True)
class _LevelData:
    cam: PinholeCamera
    points: NDArray[F64]     # (N,3) reference points in the previous camera frame
    ref: NDArray[F64]        # (N,) reference intensities
    image: NDArray
    gx: NDArray
    gy: NDArray


@dataclass(frozen=True, slots=True)
class _Residuals:
    r: NDArray[F64]
    J: NDArray[F64] | None   # (M,6) d r / d xi

    @property
    def support(self) -> int:
        return int(self.r.size)


class PoseSolver:
    def __init__(self, cfg: SolverConfig, camera: CameraModel):
        self.cfg = cfg
        self.camera = camera
        self.kernel = RobustKernel(cfg.robust_loss, cfg.robust_param)

    # -----------------------------
    # Residuals and Jacobians
    # -----------------------------
    def _select(self, level: int, prev_images: ImagePyramid, prev_depths: DepthPyramid,
                cur_images: ImagePyramid) -> _LevelData:
        cam = self.camera.level(level)
        mask = prev_depths.validity(level)
        if self.cfg.photometric_threshold > 0.0:
            mask = mask & (prev_images.gradient_magnitude(level) > self.cfg.photometric_threshold)
        rows, cols = np.nonzero(mask)

        cap = self.cfg.max_residuals
        if cap > 0 and rows.size > cap:
            stride = int(math.ceil(rows.size / cap))
            rows, cols = rows[::stride], cols[::stride]

        depth = prev_depths.depth(level)[rows, cols].astype(np.float64)
        pts = cam.backproject(cols.astype(np.float64), rows.astype(np.float64), depth)
        ref = prev_images[level][rows, cols].astype(np.float64)
        gx, gy = cur_images.gradient(level)
        return _LevelData(cam=cam, points=pts, ref=ref, image=cur_images[level], gx=gx, gy=gy)

    @staticmethod
    def _residuals(data: _LevelData, pose: Pose, with_jacobian: bool) -> _Residuals:
        cam = data.cam
        h, w = data.image.shape
        Xc = pose.apply(data.points)
        z = Xc[:, 2]
        front = z > MIN_DEPTH
        zs = np.where(front, z, 1.0)
        u = cam.fx * Xc[:, 0] / zs + cam.cx
        v = cam.fy * Xc[:, 1] / zs + cam.cy
        keep = front & (u >= 0.0) & (u <= w - 1) & (v >= 0.0) & (v <= h - 1)

        u, v, Xc = u[keep], v[keep], Xc[keep]
        r = data.ref[keep] - bilinear_sample(data.image, u, v)
        if not with_jacobian:
            return _Residuals(r=r, J=None)

        gx = bilinear_sample(data.gx, u, v)
        gy = bilinear_sample(data.gy, u, v)
        x, y, zz = Xc[:, 0], Xc[:, 1], Xc[:, 2]
        iz = 1.0 / zz
        # image gradient chained with the projection Jacobian
        g = np.stack([gx * cam.fx * iz, gy * cam.fy * iz, -(gx * cam.fx * x + gy * cam.fy * y) * iz * iz], axis=-1)
        J = -np.hstack([g, np.cross(Xc, g)])
        return _Residuals(r=r, J=J)

    def _solve_damped(self, H: NDArray[F64], b: NDArray[F64], lam: float) -> NDArray[F64] | None:
        # Marquardt scaling plus an isotropic term at the mean curvature, so directions
        # without any gradient support are damped too
        n = H.shape[0]
        A = H + lam * (np.diag(np.diag(H)) + (np.trace(H) / n) * np.eye(n))
        try:
            with np.errstate(divide="ignore", invalid="ignore"):
                cond = np.linalg.cond(A)
            if not np.isfinite(cond) or cond > self.cfg.max_condition:
                return None
            step = np.linalg.solve(A, -b)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(step)):
            return None
        return step

    # -----------------------------
    # Main entry
    # -----------------------------
    def _check_inputs(self, prev_images: ImagePyramid, prev_depths: DepthPyramid, cur_images: ImagePyramid) -> str | None:
        n = prev_images.levels
        if prev_depths.levels != n or cur_images.levels != n:
            return f"pyramid level counts differ: {n}, {prev_depths.levels}, {cur_images.levels}"
        for lvl in range(n):
            s = prev_images.shape(lvl)
            if prev_depths.shape(lvl) != s or cur_images.shape(lvl) != s:
                return f"pyramid shapes differ at level {lvl}"
        return None

    def solve(
        self,
        prev_images: ImagePyramid,
        prev_depths: DepthPyramid,
        cur_images: ImagePyramid,
        init_pose: Pose | None = None,
    ) -> SolveResult:
        err = self._check_inputs(prev_images, prev_depths, cur_images)
        if err is not None:
            log.warning("solve: %s", err)
            return SolveResult(status=Status.INPUT_ERROR, message=err)

        cfg = self.cfg
        n_valid = prev_depths.valid_count(0)
        if n_valid < cfg.min_support:
            msg = f"only {n_valid} valid depths (< {cfg.min_support})"
            log.warning("solve: %s", msg)
            return SolveResult(status=Status.INSUFFICIENT_DATA, message=msg)

        pose = init_pose if init_pose is not None else Pose.I()
        reports: list[LevelReport] = []
        unconverged: list[int] = []

        for lvl in reversed(range(prev_images.levels)):
            data = self._select(lvl, prev_images, prev_depths, cur_images)
            lam = float(cfg.damping)
            budget = cfg.iterations_for(lvl)
            accepted = rejected = streak = iters = 0
            converged = stalled = False

            lin = self._residuals(data, pose, with_jacobian=True)
            if lin.support < cfg.min_support:
                msg = f"level {lvl}: tracking support {lin.support} < {cfg.min_support}"
                log.warning("solve: %s", msg)
                return SolveResult(status=Status.INSUFFICIENT_DATA, levels=tuple(reports), message=msg)
            scale = self.kernel.scale(lin.r)
            cost = self.kernel.cost(lin.r, scale)
            initial_cost = cost

            while iters < budget:
                iters += 1
                wts = self.kernel.weights(lin.r, scale)
                JW = lin.J * wts[:, None]
                H = JW.T @ lin.J
                b = JW.T @ lin.r

                step = self._solve_damped(H, b, lam)
                while step is None:
                    lam *= cfg.damping_increase
                    if lam > cfg.damping_max:
                        msg = f"level {lvl}: normal equations ill-conditioned at damping {lam:.3g}"
                        log.warning("solve: %s", msg)
                        return SolveResult(status=Status.NUMERICAL_ERROR, levels=tuple(reports), message=msg)
                    step = self._solve_damped(H, b, lam)

                cand = pose.retract(step)
                trial = self._residuals(data, cand, with_jacobian=False)
                new_cost = self.kernel.cost(trial.r, scale) if trial.support >= cfg.min_support else math.inf

                if new_cost < cost:
                    ratio = new_cost / cost if cost > 0.0 else 1.0
                    pose = cand
                    accepted += 1
                    streak = 0
                    lam *= cfg.damping_decrease
                    log.debug("level %d it %d: accept cost %.6g -> %.6g (lambda=%.3g, support=%d)",
                              lvl, iters, cost, new_cost, lam, trial.support)
                    lin = self._residuals(data, pose, with_jacobian=True)
                    if lin.support < cfg.min_support:
                        msg = f"level {lvl}: tracking support {lin.support} < {cfg.min_support}"
                        log.warning("solve: %s", msg)
                        return SolveResult(status=Status.INSUFFICIENT_DATA, levels=tuple(reports), message=msg)
                    scale = self.kernel.scale(lin.r)
                    cost = self.kernel.cost(lin.r, scale)
                    if ratio > cfg.precision:
                        converged = True
                        break
                else:
                    rejected += 1
                    streak += 1
                    lam *= cfg.damping_increase
                    log.debug("level %d it %d: reject cost %.6g (current %.6g, lambda=%.3g)",
                              lvl, iters, new_cost, cost, lam)
                    if streak >= cfg.max_rejections:
                        converged = stalled = True
                        break

            rep = LevelReport(
                level=lvl, iterations=iters, accepted=accepted, rejected=rejected, support=lin.support,
                initial_cost=initial_cost, final_cost=cost, damping=lam, converged=converged, stalled=stalled,
            )
            reports.append(rep)
            if not converged:
                unconverged.append(lvl)
            log.info("level %d: its=%d acc=%d rej=%d support=%d cost %.4g -> %.4g%s",
                     lvl, iters, accepted, rejected, lin.support, initial_cost, cost,
                     " (budget exhausted)" if not converged else " (stalled)" if stalled else "")

        if unconverged:
            msg = f"iteration budget exhausted at level(s) {unconverged}"
            return SolveResult(status=Status.CONVERGENCE_FAILURE, pose=pose, levels=tuple(reports), message=msg)
        return SolveResult(status=Status.OK, pose=pose, levels=tuple(reports))
