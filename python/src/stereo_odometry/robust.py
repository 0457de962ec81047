"""
Robust losses for the photometric residuals (IRLS weights and costs).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from stereo_odometry.config import RobustLoss
from stereo_odometry.geometry import F64, as_f64


@dataclass(frozen=True, slots=True)
class RobustKernel:
    """
    loss=HUBER: param is the threshold delta (intensity units).
    loss=STUDENT_T: param is the degrees of freedom nu; residuals are scaled by a
    sigma re-estimated from the residuals on every linearization.
    """
    loss: RobustLoss = RobustLoss.HUBER
    param: float = 28.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "loss", RobustLoss(self.loss))
        if self.loss != RobustLoss.NONE and not self.param > 0.0:
            raise ValueError(f"robust parameter must be positive for {self.loss}, got {self.param}")

    def scale(self, r: NDArray, iters: int = 20, tol: float = 1e-6) -> float:
        if self.loss != RobustLoss.STUDENT_T:
            return 1.0
        r2 = as_f64(r).ravel() ** 2
        if r2.size == 0:
            return 1.0
        nu = float(self.param)
        s2 = float(np.mean(r2))
        if s2 <= 0.0:
            return 1.0
        for _ in range(iters):
            new = float(np.mean(r2 * (nu + 1.0) / (nu + r2 / s2)))
            if new <= 0.0:
                break
            done = abs(new - s2) <= tol * s2
            s2 = new
            if done:
                break
        return float(np.sqrt(s2))

    def weights(self, r: NDArray, scale: float = 1.0) -> NDArray[F64]:
        a = np.abs(as_f64(r))
        match self.loss:
            case RobustLoss.NONE:
                return np.ones_like(a)
            case RobustLoss.HUBER:
                delta = float(self.param)
                return np.where(a <= delta, 1.0, delta / np.maximum(a, 1e-12))
            case RobustLoss.STUDENT_T:
                nu = float(self.param)
                return (nu + 1.0) / (nu + (a / scale) ** 2)
            case _:
                raise ValueError(f"Unknown robust loss: {self.loss}")

    def rho(self, r: NDArray, scale: float = 1.0) -> NDArray[F64]:
        a = np.abs(as_f64(r))
        match self.loss:
            case RobustLoss.NONE:
                return 0.5 * a * a
            case RobustLoss.HUBER:
                delta = float(self.param)
                return np.where(a <= delta, 0.5 * a * a, delta * (a - 0.5 * delta))
            case RobustLoss.STUDENT_T:
                nu = float(self.param)
                s2 = scale * scale
                return 0.5 * (nu + 1.0) * s2 * np.log1p(a * a / (nu * s2))
            case _:
                raise ValueError(f"Unknown robust loss: {self.loss}")

    def cost(self, r: NDArray, scale: float = 1.0) -> float:
        r = as_f64(r)
        if r.size == 0:
            return 0.0
        return float(np.mean(self.rho(r, scale)))
