"""
Camera models consumed (read-only) by the depth estimator and the pose solver.

Both engines only need `CameraModel.level(l)` returning pinhole intrinsics for
pyramid level l, so tests can hand them a deterministic stub instead of a
calibrated camera.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Self

import numpy as np
from numpy.typing import NDArray

from stereo_odometry.geometry import F64, Mat33, Pts3, Vec3, as_f64

if TYPE_CHECKING:
    from stereo_odometry.config import CameraConfig


@dataclass(frozen=True, slots=True)
class PinholeCamera:
    fx: float
    fy: float
    cx: float
    cy: float

    def __post_init__(self) -> None:
        if not (self.fx > 0.0 and self.fy > 0.0):
            raise ValueError(f"focal lengths must be positive, got fx={self.fx}, fy={self.fy}")

    def matrix(self) -> Mat33:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    def project(self, points: Pts3) -> tuple[NDArray[F64], NDArray[F64]]:
        """Project (N,3) camera-frame points. Returns (uv (N,2), z (N,)); uv is NaN where z <= 0."""
        P = as_f64(points).reshape(-1, 3)
        z = P[:, 2]
        front = z > 0.0
        zs = np.where(front, z, 1.0)
        uv = np.stack([self.fx * P[:, 0] / zs + self.cx, self.fy * P[:, 1] / zs + self.cy], axis=-1)
        uv[~front] = np.nan
        return uv, z

    def backproject(self, u, v, depth) -> Pts3:
        u, v, depth = as_f64(u).ravel(), as_f64(v).ravel(), as_f64(depth).ravel()
        x = (u - self.cx) / self.fx * depth
        y = (v - self.cy) / self.fy * depth
        return np.stack([x, y, depth], axis=-1)


class CameraModel(Protocol):
    def level(self, level: int) -> PinholeCamera: ...


@dataclass(frozen=True, slots=True)
class CameraPyramid:
    """
    Intrinsics of a camera at every level of a 2x pyramid.

    A level-l pixel is the 2x2 average of level-(l-1) pixels, so its center sits at
    (c + 0.5) / 2^l - 0.5 in level-l coordinates.
    """
    fx: float
    fy: float
    cx: float
    cy: float

    def level(self, level: int) -> PinholeCamera:
        if level < 0:
            raise ValueError(f"pyramid level must be >= 0, got {level}")
        s = 1.0 / float(1 << level)
        return PinholeCamera(
            fx=self.fx * s,
            fy=self.fy * s,
            cx=(self.cx + 0.5) * s - 0.5,
            cy=(self.cy + 0.5) * s - 0.5,
        )

    @classmethod
    def from_matrix(cls, K: Mat33) -> Self:
        K = as_f64(K)
        return cls(fx=float(K[0, 0]), fy=float(K[1, 1]), cx=float(K[0, 2]), cy=float(K[1, 2]))


@dataclass(frozen=True, slots=True)
class StereoRig:
    """
    Fixed stereo geometry of a rectified pair: X_right = rotation * X_left + translation.
    """
    left: CameraModel
    right: CameraModel
    baseline: float  # meters
    rotation: Mat33 = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    translation: Vec3 | None = None

    def __post_init__(self) -> None:
        if not self.baseline > 0.0:
            raise ValueError(f"baseline must be positive, got {self.baseline}")
        if self.translation is None:
            object.__setattr__(self, "translation", np.array([-self.baseline, 0.0, 0.0], dtype=np.float64))

    @property
    def focal_baseline(self) -> float:
        """baseline * fx of the full-resolution left camera (disparity = focal_baseline / depth)."""
        return float(self.baseline * self.left.level(0).fx)

    @classmethod
    def from_intrinsics(cls, fx: float, fy: float, cx: float, cy: float, baseline: float) -> Self:
        cam = CameraPyramid(fx=fx, fy=fy, cx=cx, cy=cy)
        return cls(left=cam, right=cam, baseline=baseline)

    @classmethod
    def from_config(cls, cfg: "CameraConfig") -> Self:
        return cls.from_intrinsics(cfg.fx, cfg.fy, cfg.cx, cfg.cy, cfg.baseline)
