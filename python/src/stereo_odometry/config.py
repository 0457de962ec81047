"""
Immutable configuration for the stereo depth estimator, the pose solver and the
frame-to-frame driver, plus the repo-level config.json layer.

Built-in defaults reproduce the offline KITTI sequence-00 setup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


# -----------------------------
# Config enums
# -----------------------------
class MatchingPattern(StrEnum):
    DENSE_5X5 = "dense_5x5"  # full 5x5 window
    DSO = "dso"              # 8-tap sparse pattern from direct sparse odometry
    LINE = "line"            # 1x5 along the epipolar line


class KernelBackend(StrEnum):
    AUTO = "auto"
    VECTORIZED = "vectorized"
    SCALAR = "scalar"        # reference implementation


class RobustLoss(StrEnum):
    NONE = "none"
    HUBER = "huber"
    STUDENT_T = "student_t"


# -----------------------------
# Config dataclasses
# -----------------------------
@dataclass(frozen=True, slots=True)
class StereoConfig:
    grad_threshold: float = 35.0     # Sobel gradient magnitude a pixel must exceed
    cost_threshold: float = 1000.0   # SSD a match must stay below
    search_min: float = 0.5          # meters
    search_max: float = 20.0         # meters
    pattern: MatchingPattern = MatchingPattern.DENSE_5X5
    backend: KernelBackend = KernelBackend.AUTO
    lanes: int = 8                   # disparities evaluated per vector block
    subpixel: bool = False           # parabolic refinement around the SSD minimum
    require_aligned: bool = False    # reject unaligned inputs instead of copying them
    alignment: int = 32              # bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "pattern", MatchingPattern(self.pattern))
        object.__setattr__(self, "backend", KernelBackend(self.backend))
        if self.grad_threshold < 0.0:
            raise ValueError(f"grad_threshold must be >= 0, got {self.grad_threshold}")
        if self.cost_threshold <= 0.0:
            raise ValueError(f"cost_threshold must be > 0, got {self.cost_threshold}")
        if not (0.0 < self.search_min < self.search_max):
            raise ValueError(f"need 0 < search_min < search_max, got [{self.search_min}, {self.search_max}]")
        if self.lanes < 1:
            raise ValueError(f"lanes must be >= 1, got {self.lanes}")
        if self.alignment <= 0 or (self.alignment & (self.alignment - 1)) != 0:
            raise ValueError(f"alignment must be a positive power of two, got {self.alignment}")


@dataclass(frozen=True, slots=True)
class SolverConfig:
    damping: float = 0.01               # initial Levenberg-Marquardt lambda
    damping_decrease: float = 0.3       # lambda factor after an accepted step
    damping_increase: float = 2.0       # lambda factor after a rejected step
    damping_max: float = 1e8            # ill-conditioned beyond this -> numerical error
    precision: float = 0.995            # stop a level once new_cost / old_cost exceeds this
    max_iterations: tuple[int, ...] = (10, 20, 30, 30)  # per level, index 0 = finest
    max_rejections: int = 5             # consecutive rejected steps that end a level
    robust_loss: RobustLoss = RobustLoss.HUBER
    robust_param: float = 28.0          # Huber delta, or Student-t degrees of freedom
    photometric_threshold: float = 0.0  # min reference gradient magnitude (0 = keep all)
    max_residuals: int = 5000           # per level cap on reference pixels (0 = unlimited)
    min_support: int = 50               # fewer retained pixels is a hard failure
    max_condition: float = 1e12

    def __post_init__(self) -> None:
        object.__setattr__(self, "robust_loss", RobustLoss(self.robust_loss))
        object.__setattr__(self, "max_iterations", tuple(int(i) for i in self.max_iterations))
        if self.damping <= 0.0 or self.damping_max <= self.damping:
            raise ValueError(f"need 0 < damping < damping_max, got {self.damping}, {self.damping_max}")
        if not (0.0 < self.damping_decrease < 1.0 < self.damping_increase):
            raise ValueError("need 0 < damping_decrease < 1 < damping_increase")
        if not (0.0 < self.precision < 1.0):
            raise ValueError(f"precision must be in (0, 1), got {self.precision}")
        if not self.max_iterations or min(self.max_iterations) < 1:
            raise ValueError(f"max_iterations must be non-empty and positive, got {self.max_iterations}")
        if self.max_rejections < 1:
            raise ValueError(f"max_rejections must be >= 1, got {self.max_rejections}")
        if self.robust_loss != RobustLoss.NONE and self.robust_param <= 0.0:
            raise ValueError(f"robust_param must be > 0 for {self.robust_loss}, got {self.robust_param}")
        if self.max_residuals < 0 or self.min_support < 1:
            raise ValueError("need max_residuals >= 0 and min_support >= 1")
        if 0 < self.max_residuals < self.min_support:
            raise ValueError(f"max_residuals {self.max_residuals} caps support below min_support {self.min_support}")
        if self.max_condition <= 1.0:
            raise ValueError(f"max_condition must be > 1, got {self.max_condition}")

    def iterations_for(self, level: int) -> int:
        its = self.max_iterations
        return its[level] if level < len(its) else its[-1]


@dataclass(frozen=True, slots=True)
class CameraConfig:
    # KITTI sequence 00, left gray camera
    fx: float = 718.856
    fy: float = 718.856
    cx: float = 607.1928
    cy: float = 185.2157
    baseline: float = 386.1448 / 718.856  # meters


@dataclass(frozen=True, slots=True)
class OdometryConfig:
    levels: int = 4
    stereo: StereoConfig = field(default_factory=StereoConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)

    def __post_init__(self) -> None:
        if self.levels < 1:
            raise ValueError(f"levels must be >= 1, got {self.levels}")


# -----------------------------
# config.json loading
# -----------------------------
def _deep_merge(a: dict, b: dict) -> dict:
    """Recursively merge dicts. Values in b win."""
    out = dict(a)
    for k, vb in b.items():
        va = out.get(k)
        if isinstance(va, dict) and isinstance(vb, dict):
            out[k] = _deep_merge(va, vb)
        else:
            out[k] = vb
    return out


def _repo_root() -> Path:
    # .../python/src/stereo_odometry/config.py -> repo root
    return Path(__file__).resolve().parents[3]


def default_config_path() -> Path:
    return _repo_root() / "config.json"


def _cfg_get(d: dict, keys: list[str], default):
    cur = d
    for k in keys:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _section(cls, data: Any, name: str):
    if not isinstance(data, dict):
        raise ValueError(f"config section '{name}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        log.warning("Ignoring unknown keys in config section '%s': %s", name, ", ".join(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def _load_config_json(path: Path) -> dict:
    if not path.exists():
        log.warning("Config file not found: %s (using built-in defaults)", path)
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Top-level JSON in {path} must be an object")
    return data


def config_from_dict(data: dict) -> OdometryConfig:
    defaults = OdometryConfig()
    return OdometryConfig(
        levels=int(_cfg_get(data, ["pyramid", "levels"], defaults.levels)),
        stereo=_section(StereoConfig, _cfg_get(data, ["stereo"], {}), "stereo"),
        solver=_section(SolverConfig, _cfg_get(data, ["solver"], {}), "solver"),
        camera=_section(CameraConfig, _cfg_get(data, ["camera"], {}), "camera"),
    )


def load_config(path: Path | str | None = None, overrides: dict | None = None) -> OdometryConfig:
    """
    Build an OdometryConfig from config.json (defaults to <repo>/config.json) with
    optional in-memory overrides merged on top.
    """
    cfg_path = Path(path) if path is not None else default_config_path()
    data = _load_config_json(cfg_path)
    if overrides:
        data = _deep_merge(data, overrides)
    return config_from_dict(data)


def setup_logging(level: str = "INFO") -> logging.Logger:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format="%(levelname)s: %(message)s")
    return logging.getLogger("stereo_odometry")
