from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from stereo_odometry.camera import CameraPyramid, StereoRig
from stereo_odometry.geometry import Pose, rot_exp

W, H = 160, 120
FX = FY = 120.0
CX, CY = 79.5, 59.5

PLANE_N = np.array([0.15, -0.1, 1.0])
PLANE_D = 2.5  # n . X = d in the reference frame


def plane_texture(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    return (
        128.0
        + 30.0 * np.sin(7.0 * X + 0.3)
        + 25.0 * np.sin(5.3 * Y - 0.7)
        + 20.0 * np.sin(6.1 * X + 8.2 * Y + 1.1)
        + 15.0 * np.sin(11.3 * X - 4.7 * Y + 2.0)
    )


def render_view(pose: Pose, fx: float = FX, fy: float = FY, cx: float = CX, cy: float = CY,
                w: int = W, h: int = H, normal: np.ndarray = PLANE_N, texture=plane_texture) -> tuple[np.ndarray, np.ndarray]:
    """
    Render the textured plane seen by a camera with X_cam = R * X_ref + t.
    Returns (float32 intensity, float32 depth).
    """
    u, v = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    rays = np.stack([(u - cx) / fx, (v - cy) / fy, np.ones_like(u)], axis=-1)
    n_c = pose.R @ normal
    d_c = PLANE_D + n_c @ pose.t
    s = d_c / (rays @ n_c)
    Xc = rays * s[..., None]
    Xr = (Xc - pose.t) @ pose.R  # R^T (X_c - t), row-wise
    img = texture(Xr[..., 0], Xr[..., 1])
    return img.astype(np.float32), s.astype(np.float32)


@dataclass(frozen=True)
class PlaneScene:
    camera: CameraPyramid
    motion: Pose
    prev: np.ndarray
    prev_depth: np.ndarray
    cur: np.ndarray


@pytest.fixture
def true_motion() -> Pose:
    return Pose(rot_exp(np.array([0.01, -0.015, 0.008])), np.array([0.03, -0.02, 0.05]))


@pytest.fixture
def plane_scene(true_motion) -> PlaneScene:
    prev, depth = render_view(Pose.I())
    cur, _ = render_view(true_motion)
    return PlaneScene(
        camera=CameraPyramid(fx=FX, fy=FY, cx=CX, cy=CY),
        motion=true_motion,
        prev=prev,
        prev_depth=depth,
        cur=cur,
    )


@pytest.fixture
def plane_rig() -> StereoRig:
    return StereoRig.from_intrinsics(FX, FY, CX, CY, baseline=0.5)


def shifted_pair(w: int, h: int, d: int, seed: int = 0) -> tuple[np.ndarray, np.ndarray]:
    """Random integer texture and its copy shifted left by d pixels: right(x) = left(x + d)."""
    rng = np.random.default_rng(seed)
    left = rng.integers(0, 256, size=(h, w)).astype(np.float32)
    right = rng.integers(0, 256, size=(h, w)).astype(np.float32)
    right[:, : w - d] = left[:, d:]
    return left, right


@pytest.fixture
def shifted_rig() -> StereoRig:
    # focal_baseline = 50
    return StereoRig.from_intrinsics(100.0, 100.0, 48.0, 24.0, baseline=0.5)
