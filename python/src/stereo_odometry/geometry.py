"""
Rigid-body poses and small SO(3)/SE(3) helpers.

Conventions:
  * A Pose maps points of frame a into frame b:  X_b = R * X_a + t
  * Twists are ordered (v, w): translation part first, rotation part second.
  * Manifold updates are left-multiplicative: T <- exp(xi) * T
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Self, TypeAlias

import cv2
import numpy as np
from numpy.typing import NDArray


# -----------------------------
# Typing aliases
# -----------------------------
F64: TypeAlias = np.float64
F32: TypeAlias = np.float32
U8: TypeAlias = np.uint8

Mat33: TypeAlias = NDArray[F64]
Mat44: TypeAlias = NDArray[F64]
Vec3: TypeAlias = NDArray[F64]
Vec6: TypeAlias = NDArray[F64]
Pts3: TypeAlias = NDArray[F64]  # (N,3)


# -----------------------------
# Small numeric helpers
# -----------------------------
def as_f64(x) -> NDArray[F64]:
    return np.asarray(x, dtype=np.float64)


def skew(v: Vec3) -> Mat33:
    x, y, z = (float(c) for c in np.asarray(v).reshape(3))
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def rot_log(R: Mat33) -> Vec3:
    rvec, _ = cv2.Rodrigues(as_f64(R))
    return rvec.reshape(3).astype(np.float64, copy=False)


def rot_exp(rvec: Vec3) -> Mat33:
    R, _ = cv2.Rodrigues(as_f64(rvec).reshape(3, 1))
    return R.astype(np.float64, copy=False)


def _so3_left_jacobian(w: Vec3) -> Mat33:
    theta = float(np.linalg.norm(w))
    W = skew(w)
    if theta < 1e-9:
        return np.eye(3) + 0.5 * W
    st, ct = math.sin(theta), math.cos(theta)
    A = (1.0 - ct) / (theta * theta)
    B = (theta - st) / (theta ** 3)
    return np.eye(3) + A * W + B * (W @ W)


def project_to_so3(M: Mat33) -> Mat33:
    """Closest rotation matrix (Frobenius norm) to M."""
    U, _, Vt = np.linalg.svd(as_f64(M))
    R = U @ Vt
    if np.linalg.det(R) < 0.0:
        U[:, -1] *= -1.0
        R = U @ Vt
    return R


# -----------------------------
# Pose
# -----------------------------
@dataclass(frozen=True, slots=True, eq=False)
class Pose:
    """
    Rigid transform: X_b = R * X_a + t
    """
    R: Mat33
    t: Vec3  # (3,)

    @staticmethod
    def I() -> Self:
        return Pose(np.eye(3, dtype=np.float64), np.zeros(3, dtype=np.float64))

    def inv(self) -> Self:
        Rt = self.R.T
        return Pose(Rt, -(Rt @ self.t))

    def __matmul__(self, other: "Pose") -> "Pose":
        # (self @ other)(X) == self(other(X))
        return Pose(self.R @ other.R, (self.R @ other.t) + self.t)

    def apply(self, points: Pts3) -> Pts3:
        pts = as_f64(points).reshape(-1, 3)
        return pts @ self.R.T + self.t

    def matrix(self) -> Mat44:
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.R
        T[:3, 3] = self.t
        return T

    @staticmethod
    def from_matrix(T: Mat44) -> Self:
        T = as_f64(T)
        if T.shape not in ((4, 4), (3, 4)):
            raise ValueError(f"expected a 3x4 or 4x4 matrix, got {T.shape}")
        return Pose(T[:3, :3].copy(), T[:3, 3].copy())

    def rvec_t(self) -> tuple[Vec3, Vec3]:
        return rot_log(self.R), self.t.reshape(3).astype(np.float64, copy=False)

    @staticmethod
    def from_rvec_t(rvec: Vec3, t: Vec3) -> Self:
        return Pose(rot_exp(rvec), as_f64(t).reshape(3))

    @staticmethod
    def exp(xi: Vec6) -> Self:
        xi = as_f64(xi).reshape(6)
        v, w = xi[:3], xi[3:]
        return Pose(rot_exp(w), _so3_left_jacobian(w) @ v)

    def log(self) -> Vec6:
        w = rot_log(self.R)
        v = np.linalg.solve(_so3_left_jacobian(w), self.t)
        return np.hstack([v, w])

    def orthonormalized(self) -> Self:
        return Pose(project_to_so3(self.R), self.t.copy())

    def retract(self, xi: Vec6) -> Self:
        return (Pose.exp(xi) @ self).orthonormalized()

    def is_rigid(self, tol: float = 1e-6) -> bool:
        RtR = self.R.T @ self.R
        return bool(np.allclose(RtR, np.eye(3), atol=tol) and abs(np.linalg.det(self.R) - 1.0) < tol
                    and np.all(np.isfinite(self.t)))


# -----------------------------
# Evaluation metrics
# -----------------------------
def translation_error(a: Pose, b: Pose) -> float:
    return float(np.linalg.norm(a.t - b.t))


def rotation_error(a: Pose, b: Pose) -> float:
    """Angle (radians) of the rotation taking a.R to b.R."""
    return float(np.linalg.norm(rot_log(a.R.T @ b.R)))
